"""Installment planner - turns a payment request into a Payment and its schedule."""

import calendar
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import PaymentValidationError
from app.models.payment import EMIPayment, EMIStatus, Payment, PaymentStatus
from app.schemas.payment import PaymentCreate
from app.services.balance import apply_student_balance
from app.services.gateway import from_minor_units, to_minor_units
from app.services.locking import lock_student, run_serialized
from app.services.sequence import INVOICE_PREFIX, PAYMENT_RECEIPT_PREFIX, next_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledInstallment:
    """One row of a computed schedule."""

    installment_number: int
    amount: Decimal
    due_date: date


def split_installments(remaining: Decimal, count: int) -> list[Decimal]:
    """
    Split ``remaining`` into ``count`` equal installments.

    Works in integer minor units; whatever does not divide evenly goes to the
    last installment, so the parts always sum to ``remaining`` exactly.
    """
    if count < 1:
        raise PaymentValidationError("installment_count must be at least 1", installment_count=count)

    total_minor = to_minor_units(remaining)
    base = total_minor // count
    if base <= 0:
        raise PaymentValidationError(
            "Remaining amount is too small for the requested number of installments",
            remaining_amount=remaining,
            installment_count=count,
        )
    last = total_minor - base * (count - 1)
    return [from_minor_units(base)] * (count - 1) + [from_minor_units(last)]


def add_months(start: date, months: int) -> date:
    """Same day ``months`` later, clamped to the end of shorter months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def project_due_dates(first_due: date, count: int) -> list[date]:
    """Monthly due dates starting at ``first_due``."""
    return [add_months(first_due, offset) for offset in range(count)]


def initial_payment_status(total: Decimal, deposit: Decimal) -> PaymentStatus:
    """Status of a newly registered payment."""
    if deposit >= total:
        return PaymentStatus.COMPLETED
    if deposit > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def build_schedule(data: PaymentCreate) -> list[ScheduledInstallment]:
    """Installment schedule for the amount left after the deposit."""
    remaining = data.total_amount - data.deposit_amount
    if remaining <= 0:
        return []

    if data.installments:
        schedule = [
            ScheduledInstallment(entry.installment_number, entry.amount, entry.due_date)
            for entry in sorted(data.installments, key=lambda e: e.installment_number)
        ]
        scheduled_total = sum((entry.amount for entry in schedule), Decimal("0"))
        if scheduled_total != remaining:
            # Accepted as given; the balance is always derived from paid installments
            logger.warning(
                "Explicit schedule for student %s sums to %s but %s remains after deposit",
                data.student_id,
                scheduled_total,
                remaining,
            )
        return schedule

    if data.due_date is None:
        raise PaymentValidationError(
            "due_date is required when an amount remains to be paid",
            total_amount=data.total_amount,
            deposit_amount=data.deposit_amount,
        )

    count = data.installment_count or 1
    amounts = split_installments(remaining, count)
    due_dates = project_due_dates(data.due_date, count)
    return [
        ScheduledInstallment(number, amount, due)
        for number, (amount, due) in enumerate(zip(amounts, due_dates), start=1)
    ]


def validate_request(data: PaymentCreate) -> None:
    """Reject requests that cannot produce a consistent ledger."""
    if data.total_amount <= 0:
        raise PaymentValidationError("total_amount must be positive", total_amount=data.total_amount)
    if data.deposit_amount < 0 or data.deposit_amount > data.total_amount:
        raise PaymentValidationError(
            "deposit_amount must be between 0 and total_amount",
            total_amount=data.total_amount,
            deposit_amount=data.deposit_amount,
        )
    if data.currency not in settings.SUPPORTED_CURRENCIES:
        raise PaymentValidationError(
            "Unsupported currency",
            currency=data.currency,
            supported=settings.SUPPORTED_CURRENCIES,
        )
    status = initial_payment_status(data.total_amount, data.deposit_amount)
    if status == PaymentStatus.PENDING and data.due_date is None and not data.installments:
        raise PaymentValidationError("due_date is required for a pending payment")


async def create_payment_plan(db: AsyncSession, data: PaymentCreate) -> Payment:
    """
    Register a fee obligation with its installment schedule.

    Every installment starts out pending, whatever deposit was collected; the
    student's balance reflects the deposit only.
    """
    validate_request(data)
    schedule = build_schedule(data)

    async def _create(session: AsyncSession) -> Payment:
        student = await lock_student(session, data.student_id)

        status = initial_payment_status(data.total_amount, data.deposit_amount)
        first_due = data.due_date or (schedule[0].due_date if schedule else None)
        payment = Payment(
            student_id=student.id,
            course_name=data.course_name,
            total_amount=data.total_amount,
            deposit_amount=data.deposit_amount,
            installment_count=len(schedule) or 1,
            currency=data.currency,
            status=status,
            due_date=first_due,
            payment_method=data.payment_method,
            notes=data.notes,
            invoice_number=await next_number(session, INVOICE_PREFIX),
        )
        payment.sync_remaining()
        if data.deposit_amount > 0:
            payment.receipt_number = await next_number(session, PAYMENT_RECEIPT_PREFIX)

        for entry in schedule:
            payment.installments.append(
                EMIPayment(
                    student_id=student.id,
                    installment_number=entry.installment_number,
                    amount=entry.amount,
                    due_date=entry.due_date,
                    currency=data.currency,
                    status=EMIStatus.PENDING,
                )
            )
        session.add(payment)

        if not student.total_fees:
            student.total_fees = data.total_amount

        await apply_student_balance(session, student.id)
        logger.info(
            "Created payment %s (%s) for student %s: total %s, deposit %s, %d installments, status %s",
            payment.id,
            payment.invoice_number,
            student.id,
            payment.total_amount,
            payment.deposit_amount,
            len(schedule),
            status.value,
        )
        return payment

    return await run_serialized(db, _create, "create payment plan")
