"""Student model - the long-lived aggregate that owns fee balances."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import BaseModel


class FeeStatus(str, Enum):
    """Aggregate fee state of a student."""

    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETE = "complete"
    OVERDUE = "overdue"


class EnrollmentStatus(str, Enum):
    """Enrollment state, partly driven by fee state."""

    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    GRADUATED = "graduated"
    DROPPED = "dropped"


class Student(BaseModel):
    """Student with denormalized fee balance fields."""

    __tablename__ = "students"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50))
    email: Mapped[str | None] = mapped_column(String(200))
    stripe_customer_id: Mapped[str | None] = mapped_column(String(100))

    # Balance fields, written only by the balance aggregator
    total_fees: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0"),
        server_default="0",
        nullable=False,
    )
    paid_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0"),
        server_default="0",
        nullable=False,
    )
    remaining_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0"),
        server_default="0",
        nullable=False,
    )
    fee_status: Mapped[FeeStatus] = mapped_column(
        String(20),
        default=FeeStatus.PENDING,
        server_default="pending",
        nullable=False,
    )
    status: Mapped[EnrollmentStatus] = mapped_column(
        String(20),
        default=EnrollmentStatus.PENDING,
        server_default="pending",
        nullable=False,
    )
    next_payment_due: Mapped[date | None] = mapped_column(Date)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id, "eager_defaults": True}

    def __repr__(self) -> str:
        return f"<Student(id={self.id}, name={self.name}, fee_status={self.fee_status})>"
