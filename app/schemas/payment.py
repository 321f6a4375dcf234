"""Payment and installment schemas."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.payment import EMIStatus, GatewayProvider, PaymentMethod, PaymentStatus
from app.schemas.validators import CurrencyCode


class InstallmentEntry(BaseModel):
    """One explicitly scheduled installment."""

    installment_number: int = Field(..., ge=1)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    due_date: date


class PaymentCreate(BaseModel):
    """
    Schema for registering a fee obligation.

    Either ``installments`` (explicit schedule) or ``installment_count`` with a
    base ``due_date`` (monthly projection) may be given, not both.
    """

    student_id: UUID
    course_name: str = Field(..., min_length=1, max_length=200)
    total_amount: Decimal = Field(..., gt=0, decimal_places=2)
    deposit_amount: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    installment_count: int | None = Field(default=None, ge=1, le=120)
    installments: list[InstallmentEntry] | None = None
    due_date: date | None = None
    payment_method: PaymentMethod | None = None
    currency: CurrencyCode = "INR"
    notes: str | None = None

    @model_validator(mode="after")
    def validate_amounts(self) -> "PaymentCreate":
        """Deposit cannot exceed total."""
        if self.deposit_amount > self.total_amount:
            raise ValueError("deposit_amount cannot exceed total_amount")
        return self

    @model_validator(mode="after")
    def validate_schedule(self) -> "PaymentCreate":
        """Only one way of describing the schedule."""
        if self.installments is not None and self.installment_count is not None:
            raise ValueError("Provide either installments or installment_count, not both")
        if self.installments:
            numbers = [entry.installment_number for entry in self.installments]
            if len(numbers) != len(set(numbers)):
                raise ValueError("installment_number must be unique")
        return self


class PaymentStatusUpdate(BaseModel):
    """Administrative status edit."""

    status: PaymentStatus
    note: str | None = None


class EMIPaymentResponse(BaseModel):
    """Installment response schema."""

    id: UUID
    payment_id: UUID
    student_id: UUID
    installment_number: int
    amount: Decimal
    late_fee: Decimal
    currency: str
    due_date: date
    paid_date: datetime | None
    status: EMIStatus
    payment_method: PaymentMethod | None
    transaction_id: str | None
    receipt_number: str | None
    gateway_provider: GatewayProvider | None
    gateway_payment_id: str | None
    notes: str | None

    model_config = ConfigDict(from_attributes=True)


class PaymentResponse(BaseModel):
    """Payment response schema."""

    id: UUID
    student_id: UUID
    course_name: str
    total_amount: Decimal
    deposit_amount: Decimal
    remaining_amount: Decimal
    installment_count: int
    currency: str
    status: PaymentStatus
    due_date: date | None
    paid_date: datetime | None
    invoice_number: str
    receipt_number: str | None
    payment_method: PaymentMethod | None
    transaction_id: str | None
    gateway_provider: GatewayProvider | None
    gateway_payment_id: str | None
    notes: str | None
    installments: list[EMIPaymentResponse] = []
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentListResponse(BaseModel):
    """Schema for paginated payment list."""

    items: list[PaymentResponse]
    total: int
    skip: int
    limit: int


class ManualConfirmationRequest(BaseModel):
    """Administrator confirmation of a payment collected out of band or stuck at the gateway."""

    payment_id: UUID | None = None
    emi_payment_id: UUID | None = None
    gateway_payment_id: str = Field(..., min_length=1, max_length=255)
    force_override: bool = False

    @model_validator(mode="after")
    def validate_target(self) -> "ManualConfirmationRequest":
        """Exactly one target."""
        if (self.payment_id is None) == (self.emi_payment_id is None):
            raise ValueError("Provide exactly one of payment_id or emi_payment_id")
        return self


class IntentCreateRequest(BaseModel):
    """Request to start collecting money online."""

    currency: CurrencyCode | None = None


class IntentResponse(BaseModel):
    """Client-side details of a created gateway intent."""

    intent_id: str
    client_secret: str
    amount: Decimal
    currency: str
    publishable_key: str
    payment_id: UUID | None = None
    emi_payment_id: UUID | None = None


class ReconciliationResponse(BaseModel):
    """Result of applying a payment event."""

    outcome: str
    payment: PaymentResponse | None = None
    emi_payment: EMIPaymentResponse | None = None


class WebhookAck(BaseModel):
    """Acknowledgement returned to the gateway."""

    received: bool = True
    event_type: str
    outcome: str
