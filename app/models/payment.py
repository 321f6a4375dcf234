"""Payment and EMIPayment models."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import BaseModel
from app.core.exceptions import ConsistencyError


class PaymentStatus(str, Enum):
    """Lifecycle of a fee obligation."""

    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PROCESSING = "processing"


class EMIStatus(str, Enum):
    """Lifecycle of a single installment."""

    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    PROCESSING = "processing"


class PaymentMethod(str, Enum):
    """How money was received."""

    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    ONLINE = "online"


class GatewayProvider(str, Enum):
    """Online payment providers."""

    STRIPE = "stripe"
    RAZORPAY = "razorpay"
    PAYPAL = "paypal"


class Payment(BaseModel):
    """One purchase obligation of a student for one course or fee."""

    __tablename__ = "payments"

    student_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("students.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    course_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Amounts
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0"),
        server_default="0",
        nullable=False,
    )
    remaining_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    installment_count: Mapped[int] = mapped_column(
        Integer,
        default=1,
        server_default="1",
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(String(3), default="INR", server_default="INR")

    status: Mapped[PaymentStatus] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING,
        server_default="pending",
        nullable=False,
        index=True,
    )
    due_date: Mapped[date | None] = mapped_column(Date)
    paid_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    invoice_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    receipt_number: Mapped[str | None] = mapped_column(String(20), unique=True)

    payment_method: Mapped[PaymentMethod | None] = mapped_column(String(20))
    transaction_id: Mapped[str | None] = mapped_column(String(255))

    # Gateway
    gateway_provider: Mapped[GatewayProvider | None] = mapped_column(String(20))
    gateway_payment_id: Mapped[str | None] = mapped_column(String(255), index=True)
    gateway_response: Mapped[str | None] = mapped_column(Text)

    notes: Mapped[str | None] = mapped_column(Text)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    installments: Mapped[list["EMIPayment"]] = relationship(
        "EMIPayment",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="EMIPayment.installment_number",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version_id, "eager_defaults": True}

    def sync_remaining(self) -> None:
        """Keep remaining_amount derived from total and deposit."""
        self.remaining_amount = Decimal(self.total_amount) - Decimal(self.deposit_amount or 0)

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, invoice={self.invoice_number}, status={self.status})>"


class EMIPayment(BaseModel):
    """One scheduled installment belonging to exactly one Payment."""

    __tablename__ = "emi_payments"
    __table_args__ = (
        UniqueConstraint("payment_id", "installment_number", name="uq_emi_payment_installment"),
    )

    payment_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Denormalized from the parent payment
    student_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("students.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    late_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0"),
        server_default="0",
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(String(3), default="INR", server_default="INR")

    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[EMIStatus] = mapped_column(
        String(20),
        default=EMIStatus.PENDING,
        server_default="pending",
        nullable=False,
        index=True,
    )

    payment_method: Mapped[PaymentMethod | None] = mapped_column(String(20))
    transaction_id: Mapped[str | None] = mapped_column(String(255))
    receipt_number: Mapped[str | None] = mapped_column(String(20), unique=True)

    # Gateway
    gateway_provider: Mapped[GatewayProvider | None] = mapped_column(String(20))
    gateway_payment_id: Mapped[str | None] = mapped_column(String(255), index=True)
    gateway_response: Mapped[str | None] = mapped_column(Text)

    notes: Mapped[str | None] = mapped_column(Text)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    payment: Mapped["Payment"] = relationship("Payment", back_populates="installments")

    __mapper_args__ = {"version_id_col": version_id, "eager_defaults": True}

    @property
    def has_settlement_evidence(self) -> bool:
        """Paid date, transaction id and gateway payment id are all present."""
        return bool(self.paid_date and self.transaction_id and self.gateway_payment_id)

    @property
    def is_open(self) -> bool:
        """Still expecting money."""
        return self.status in (EMIStatus.PENDING, EMIStatus.OVERDUE)

    def mark_paid(
        self,
        paid_date: datetime,
        transaction_id: str,
        gateway_payment_id: str,
        payment_method: PaymentMethod = PaymentMethod.ONLINE,
    ) -> None:
        """Settle the installment. All three pieces of evidence are required together."""
        if not (paid_date and transaction_id and gateway_payment_id):
            raise ConsistencyError(
                "Installment cannot be marked paid without paid date, transaction id and gateway payment id",
                emi_payment_id=self.id,
                paid_date=paid_date,
                transaction_id=transaction_id,
                gateway_payment_id=gateway_payment_id,
            )
        self.paid_date = paid_date
        self.transaction_id = transaction_id
        self.gateway_payment_id = gateway_payment_id
        self.payment_method = payment_method
        self.status = EMIStatus.PAID

    def reset_to_pending(self) -> None:
        """Drop any settlement evidence and reopen the installment."""
        self.status = EMIStatus.PENDING
        self.paid_date = None
        self.transaction_id = None
        self.gateway_payment_id = None

    def refresh_overdue(self, today: date) -> bool:
        """Move a pending installment to overdue once its due date has passed."""
        if self.status == EMIStatus.PENDING and today > self.due_date:
            self.status = EMIStatus.OVERDUE
            return True
        return False

    def __repr__(self) -> str:
        return (
            f"<EMIPayment(id={self.id}, payment={self.payment_id}, "
            f"number={self.installment_number}, status={self.status})>"
        )


@event.listens_for(Payment, "before_insert")
@event.listens_for(Payment, "before_update")
def _payment_before_flush(mapper, connection, target: Payment) -> None:
    target.sync_remaining()
    if target.status == PaymentStatus.PENDING and target.due_date is None:
        raise ConsistencyError(
            "Pending payment requires a due date",
            payment_id=target.id,
        )


@event.listens_for(EMIPayment, "before_insert")
@event.listens_for(EMIPayment, "before_update")
def _emi_before_flush(mapper, connection, target: EMIPayment) -> None:
    if target.status == EMIStatus.PAID and not target.has_settlement_evidence:
        raise ConsistencyError(
            "Paid installment is missing settlement evidence",
            emi_payment_id=target.id,
            installment_number=target.installment_number,
        )
