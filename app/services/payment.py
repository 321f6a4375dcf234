"""Payment service - read-side queries for payments and installments."""

from datetime import date
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import EMIPayment, EMIStatus, Payment, PaymentStatus


async def get_payment_by_id(db: AsyncSession, payment_id: UUID) -> Payment | None:
    """Get payment by ID with its installments."""
    result = await db.execute(
        select(Payment)
        .where(Payment.id == payment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_payments(
    db: AsyncSession,
    student_id: UUID | None = None,
    status: PaymentStatus | None = None,
    due_date_from: date | None = None,
    due_date_to: date | None = None,
    skip: int = 0,
    limit: int = 100,
) -> tuple[list[Payment], int]:
    """Get payments with filters."""
    query = select(Payment)

    # Apply filters
    if student_id:
        query = query.where(Payment.student_id == student_id)
    if status:
        query = query.where(Payment.status == status)
    if due_date_from:
        query = query.where(Payment.due_date >= due_date_from)
    if due_date_to:
        query = query.where(Payment.due_date <= due_date_to)

    # Count total
    count_query = select(func.count()).select_from(query.subquery())
    total_result = await db.execute(count_query)
    total = total_result.scalar() or 0

    # Apply pagination and ordering
    query = query.order_by(Payment.created_at.desc()).offset(skip).limit(limit)

    result = await db.execute(query)
    payments = list(result.scalars().all())

    return payments, total


async def get_installment_by_id(db: AsyncSession, emi_payment_id: UUID) -> EMIPayment | None:
    """Get installment by ID."""
    result = await db.execute(
        select(EMIPayment)
        .where(EMIPayment.id == emi_payment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_installments(
    db: AsyncSession,
    payment_id: UUID | None = None,
    student_id: UUID | None = None,
    status: EMIStatus | None = None,
) -> list[EMIPayment]:
    """Get installments, ordered by due date."""
    query = select(EMIPayment)
    if payment_id:
        query = query.where(EMIPayment.payment_id == payment_id)
    if student_id:
        query = query.where(EMIPayment.student_id == student_id)
    if status:
        query = query.where(EMIPayment.status == status)
    query = query.order_by(EMIPayment.due_date, EMIPayment.installment_number)

    result = await db.execute(query)
    return list(result.scalars().all())
