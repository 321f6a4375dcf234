"""Student balance aggregator.

Balances are always derived by summing every contributing record afresh.
Nothing here adds to a running total, so replayed or duplicated events cannot
double count money.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.models.payment import EMIPayment, EMIStatus, Payment, PaymentStatus
from app.models.student import EnrollmentStatus, FeeStatus, Student

logger = logging.getLogger(__name__)

OPEN_EMI_STATUSES = (EMIStatus.PENDING, EMIStatus.OVERDUE)


@dataclass(frozen=True)
class StudentBalance:
    """Aggregated fee balance of one student."""

    student_id: UUID
    total_fees: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    fee_status: FeeStatus
    enrollment_status: EnrollmentStatus
    next_payment_due: date | None


def derive_fee_status(paid: Decimal, remaining: Decimal, has_overdue: bool, has_open: bool = False) -> FeeStatus:
    """
    Fee status from the aggregated amounts.

    A student with installments still pending or overdue is never complete,
    even when the recorded fees are already covered.
    """
    if remaining <= 0 and paid > 0 and not has_open:
        return FeeStatus.COMPLETE
    if paid > 0:
        return FeeStatus.PARTIAL
    if has_overdue:
        return FeeStatus.OVERDUE
    return FeeStatus.PENDING


def derive_enrollment_status(current: EnrollmentStatus, fee_status: FeeStatus) -> EnrollmentStatus:
    """
    Full settlement makes a student ``active``; nothing else changes enrollment.

    Inactive, graduated and dropped students keep their status.
    """
    if current in (EnrollmentStatus.INACTIVE, EnrollmentStatus.GRADUATED, EnrollmentStatus.DROPPED):
        return EnrollmentStatus(current)
    if fee_status == FeeStatus.COMPLETE:
        return EnrollmentStatus.ACTIVE
    return EnrollmentStatus(current)


async def get_student(db: AsyncSession, student_id: UUID, for_update: bool = False) -> Student:
    """Load a student or raise NotFoundError."""
    query = select(Student).where(Student.id == student_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    student = result.scalar_one_or_none()
    if student is None:
        raise NotFoundError("Student not found", student_id=student_id)
    return student


async def sum_deposits(db: AsyncSession, student_id: UUID) -> Decimal:
    """Deposits of every non-failed payment of the student."""
    result = await db.execute(
        select(func.coalesce(func.sum(Payment.deposit_amount), 0)).where(
            Payment.student_id == student_id,
            Payment.status != PaymentStatus.FAILED,
        )
    )
    return Decimal(result.scalar() or 0)


async def sum_paid_installments(db: AsyncSession, student_id: UUID) -> Decimal:
    """Amounts of every paid installment of the student, across all payments."""
    result = await db.execute(
        select(func.coalesce(func.sum(EMIPayment.amount), 0)).where(
            EMIPayment.student_id == student_id,
            EMIPayment.status == EMIStatus.PAID,
        )
    )
    return Decimal(result.scalar() or 0)


async def recompute_student_balance(db: AsyncSession, student_id: UUID) -> StudentBalance:
    """Derive a student's balance from scratch without writing anything."""
    # Pending ORM changes must be visible to the aggregate queries
    await db.flush()
    student = await get_student(db, student_id)

    paid = (await sum_deposits(db, student_id) + await sum_paid_installments(db, student_id)).quantize(
        Decimal("0.01")
    )
    total_fees = Decimal(student.total_fees or 0)
    remaining = total_fees - paid

    open_result = await db.execute(
        select(
            func.min(EMIPayment.due_date),
            func.coalesce(func.sum(case((EMIPayment.status == EMIStatus.OVERDUE, 1), else_=0)), 0),
            func.count(EMIPayment.id),
        ).where(
            EMIPayment.student_id == student_id,
            EMIPayment.status.in_(OPEN_EMI_STATUSES),
        )
    )
    next_due, overdue_count, open_count = open_result.one()
    if remaining < 0 and open_count:
        logger.warning(
            "Student %s paid %s against fees of %s with installments still open",
            student_id,
            paid,
            total_fees,
        )

    fee_status = derive_fee_status(paid, remaining, bool(overdue_count), bool(open_count))

    return StudentBalance(
        student_id=student_id,
        total_fees=total_fees,
        paid_amount=paid,
        remaining_amount=remaining,
        fee_status=fee_status,
        enrollment_status=derive_enrollment_status(student.status, fee_status),
        next_payment_due=next_due,
    )


async def apply_student_balance(db: AsyncSession, student_id: UUID) -> StudentBalance:
    """Recompute the balance and write it to the student row. Does not commit."""
    balance = await recompute_student_balance(db, student_id)
    student = await get_student(db, student_id)

    if student.fee_status != balance.fee_status:
        logger.info(
            "Student %s fee status %s -> %s",
            student_id,
            student.fee_status,
            balance.fee_status.value,
        )

    student.paid_amount = balance.paid_amount
    student.remaining_amount = balance.remaining_amount
    student.fee_status = balance.fee_status
    student.status = balance.enrollment_status
    student.next_payment_due = balance.next_payment_due
    return balance


async def mark_overdue_installments(
    db: AsyncSession,
    today: date | None = None,
    student_id: UUID | None = None,
) -> list[EMIPayment]:
    """Move pending installments past their due date to overdue. Does not commit."""
    today = today or date.today()
    query = select(EMIPayment).where(
        EMIPayment.status == EMIStatus.PENDING,
        EMIPayment.due_date < today,
    )
    if student_id is not None:
        query = query.where(EMIPayment.student_id == student_id)
    result = await db.execute(query)

    changed = [emi for emi in result.scalars().all() if emi.refresh_overdue(today)]
    for emi in changed:
        logger.info("Installment %s of payment %s is overdue", emi.installment_number, emi.payment_id)
    return changed
