"""CLI commands for ledger maintenance."""

import asyncio
import sys

from app.core.database import async_session_maker
from app.middleware.logging import setup_logging
from app.services import repair

COMMANDS = {
    "repair-emi-status": "Reopen installments marked paid without settlement evidence",
    "recompute-balances": "Recompute every student's balance from their payments",
    "mark-overdue": "Flag installments past their due date as overdue",
}


async def repair_emi_status() -> None:
    """Reset incorrectly settled installments."""
    async with async_session_maker() as db:
        report = await repair.repair_installment_statuses(db)

    print(f"✓ Reset {len(report.reset_installments)} installment(s)")
    for emi_id in report.reset_installments:
        print(f"  - {emi_id}")
    print(f"  Payments moved back to partial: {len(report.updated_payments)}")
    print(f"  Students recomputed: {len(report.recomputed_students)}")


async def recompute_balances() -> None:
    """Recompute every balance and list the students that had drifted."""
    async with async_session_maker() as db:
        report = await repair.recompute_all_balances(db)

    print(f"✓ Recomputed {len(report.recomputed_students)} student balance(s)")
    for student_id, (stored, recomputed) in report.drifted_students.items():
        print(f"  ! {student_id}: stored {stored}, recomputed {recomputed}")


async def mark_overdue() -> None:
    """Flag overdue installments."""
    async with async_session_maker() as db:
        report = await repair.refresh_overdue(db)

    print(f"✓ {len(report.overdue_installments)} installment(s) now overdue")
    print(f"  Students recomputed: {len(report.recomputed_students)}")


def main() -> None:
    """CLI entry point."""
    if len(sys.argv) != 2 or sys.argv[1] not in COMMANDS:
        print("Usage: python -m app.cli <command>")
        print("Commands:")
        for name, description in COMMANDS.items():
            print(f"  {name:<20} {description}")
        sys.exit(1)

    setup_logging()
    command = sys.argv[1]
    if command == "repair-emi-status":
        asyncio.run(repair_emi_status())
    elif command == "recompute-balances":
        asyncio.run(recompute_balances())
    elif command == "mark-overdue":
        asyncio.run(mark_overdue())


if __name__ == "__main__":
    main()
