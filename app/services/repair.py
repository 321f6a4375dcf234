"""Repair jobs for ledger state written before the current rules applied."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConsistencyError
from app.models.payment import EMIPayment, EMIStatus, Payment, PaymentStatus
from app.models.student import Student
from app.services.balance import apply_student_balance, mark_overdue_installments
from app.services.reconciliation import rollup_status

logger = logging.getLogger(__name__)


@dataclass
class RepairReport:
    """What a repair run changed."""

    reset_installments: list[UUID] = field(default_factory=list)
    updated_payments: list[UUID] = field(default_factory=list)
    recomputed_students: list[UUID] = field(default_factory=list)
    drifted_students: dict[UUID, tuple[Decimal, Decimal]] = field(default_factory=dict)
    overdue_installments: list[UUID] = field(default_factory=list)


async def repair_installment_statuses(db: AsyncSession) -> RepairReport:
    """
    Reopen installments marked paid without full settlement evidence.

    Parent payments and student balances of every affected installment are
    re-derived. Runs as one transaction.
    """
    report = RepairReport()
    result = await db.execute(
        select(EMIPayment).where(
            EMIPayment.status == EMIStatus.PAID,
            or_(
                EMIPayment.paid_date.is_(None),
                EMIPayment.transaction_id.is_(None),
                EMIPayment.transaction_id == "",
                EMIPayment.gateway_payment_id.is_(None),
                EMIPayment.gateway_payment_id == "",
            ),
        )
    )
    broken = list(result.scalars().all())
    logger.info("Found %d incorrectly marked installment(s)", len(broken))

    payment_ids: set[UUID] = set()
    student_ids: set[UUID] = set()
    try:
        for emi in broken:
            logger.info("Resetting installment #%s (%s) to pending", emi.installment_number, emi.id)
            emi.reset_to_pending()
            report.reset_installments.append(emi.id)
            payment_ids.add(emi.payment_id)
            student_ids.add(emi.student_id)

        for payment_id in payment_ids:
            payment = await db.get(Payment, payment_id)
            if payment is None or payment.status in (PaymentStatus.FAILED, PaymentStatus.REFUNDED):
                continue
            installments = (
                await db.execute(select(EMIPayment).where(EMIPayment.payment_id == payment_id))
            ).scalars().all()
            status = rollup_status(payment, list(installments))
            if payment.status == PaymentStatus.COMPLETED and status != PaymentStatus.COMPLETED:
                logger.info("Payment %s status completed -> %s", payment.id, status.value)
                payment.status = status
                report.updated_payments.append(payment.id)

        for student_id in student_ids:
            await apply_student_balance(db, student_id)
            report.recomputed_students.append(student_id)

        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Installment repair done: %d reset, %d payments updated, %d students recomputed",
        len(report.reset_installments),
        len(report.updated_payments),
        len(report.recomputed_students),
    )
    return report


async def recompute_all_balances(db: AsyncSession) -> RepairReport:
    """Recompute every student's balance and report the ones that had drifted."""
    report = RepairReport()
    students = (await db.execute(select(Student).order_by(Student.created_at))).scalars().all()
    try:
        for student in students:
            stored = Decimal(student.paid_amount or 0)
            balance = await apply_student_balance(db, student.id)
            report.recomputed_students.append(student.id)
            if stored != balance.paid_amount:
                error = ConsistencyError(
                    "Stored paid amount disagreed with the aggregate",
                    student_id=student.id,
                    stored=stored,
                    recomputed=balance.paid_amount,
                )
                logger.error("%s %s", error.detail, error.context)
                report.drifted_students[student.id] = (stored, balance.paid_amount)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Recomputed %d student balance(s), %d had drifted",
        len(report.recomputed_students),
        len(report.drifted_students),
    )
    return report


async def refresh_overdue(db: AsyncSession) -> RepairReport:
    """Flag installments past their due date and recompute the affected students."""
    report = RepairReport()
    try:
        changed = await mark_overdue_installments(db)
        for emi in changed:
            report.overdue_installments.append(emi.id)
        for student_id in {emi.student_id for emi in changed}:
            await apply_student_balance(db, student_id)
            report.recomputed_students.append(student_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return report
