"""Student service - registration and balance queries."""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.models.student import EnrollmentStatus, FeeStatus, Student
from app.schemas.student import StudentCreate
from app.services.balance import StudentBalance, apply_student_balance
from app.services.gateway import PaymentGateway, SavedPaymentMethod
from app.services.locking import lock_student, run_serialized

logger = logging.getLogger(__name__)


async def get_student_by_id(db: AsyncSession, student_id: UUID) -> Student | None:
    """Get student by ID."""
    result = await db.execute(select(Student).where(Student.id == student_id))
    return result.scalar_one_or_none()


async def create_student(db: AsyncSession, student_data: StudentCreate) -> Student:
    """Register a new student with an empty balance."""
    student = Student(
        name=student_data.name,
        phone=student_data.phone,
        email=student_data.email,
        total_fees=student_data.total_fees,
        paid_amount=0,
        remaining_amount=student_data.total_fees,
        fee_status=FeeStatus.PENDING,
        status=EnrollmentStatus.PENDING,
    )
    db.add(student)
    await db.commit()
    await db.refresh(student)
    logger.info("Registered student %s", student.id)
    return student


async def recompute_balance(db: AsyncSession, student_id: UUID) -> StudentBalance:
    """Recompute and store a student's balance."""

    async def _apply(session: AsyncSession) -> StudentBalance:
        await lock_student(session, student_id)
        return await apply_student_balance(session, student_id)

    return await run_serialized(db, _apply, "balance recompute")


async def get_payment_methods(
    db: AsyncSession,
    gateway: PaymentGateway,
    student_id: UUID,
) -> tuple[str, list[SavedPaymentMethod]]:
    """Saved cards of a student, registering them as a gateway customer on first use."""
    student = await get_student_by_id(db, student_id)
    if student is None:
        raise NotFoundError("Student not found", student_id=student_id)

    customer_id = student.stripe_customer_id
    if not customer_id:
        created = await gateway.create_customer(
            student.name,
            student.email,
            student.phone,
            {"studentId": str(student.id)},
        )

        async def _record(session: AsyncSession) -> str:
            locked = await lock_student(session, student_id)
            if locked.stripe_customer_id:
                logger.warning(
                    "Student %s already has customer %s, discarding %s",
                    student_id,
                    locked.stripe_customer_id,
                    created,
                )
                return locked.stripe_customer_id
            locked.stripe_customer_id = created
            return created

        customer_id = await run_serialized(db, _record, "record gateway customer")
        logger.info("Student %s registered as gateway customer %s", student_id, customer_id)

    return customer_id, await gateway.list_payment_methods(customer_id)
