"""Student schemas."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.student import EnrollmentStatus, FeeStatus
from app.schemas.validators import PhoneNumber


class StudentCreate(BaseModel):
    """Schema for registering a student with the fee ledger."""

    name: str = Field(..., min_length=1, max_length=200)
    phone: PhoneNumber | None = None
    email: str | None = Field(None, max_length=200)
    total_fees: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)


class StudentResponse(BaseModel):
    """Student response schema."""

    id: UUID
    name: str
    phone: str | None
    email: str | None
    total_fees: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    fee_status: FeeStatus
    status: EnrollmentStatus
    next_payment_due: date | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StudentBalanceResponse(BaseModel):
    """Freshly aggregated balance of a student."""

    student_id: UUID
    total_fees: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    fee_status: FeeStatus
    enrollment_status: EnrollmentStatus
    next_payment_due: date | None


class SavedPaymentMethodResponse(BaseModel):
    """A card saved with the payment gateway."""

    id: str
    type: str
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None

    model_config = ConfigDict(from_attributes=True)


class PaymentMethodListResponse(BaseModel):
    """Saved payment methods of a student's gateway customer."""

    customer_id: str
    payment_methods: list[SavedPaymentMethodResponse]
