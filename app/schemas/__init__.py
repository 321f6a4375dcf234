"""Pydantic schemas."""

from app.schemas.payment import (
    EMIPaymentResponse,
    InstallmentEntry,
    IntentCreateRequest,
    IntentResponse,
    ManualConfirmationRequest,
    PaymentCreate,
    PaymentListResponse,
    PaymentResponse,
    PaymentStatusUpdate,
    ReconciliationResponse,
    WebhookAck,
)
from app.schemas.student import (
    PaymentMethodListResponse,
    SavedPaymentMethodResponse,
    StudentBalanceResponse,
    StudentCreate,
    StudentResponse,
)

__all__ = [
    # Payment
    "EMIPaymentResponse",
    "InstallmentEntry",
    "IntentCreateRequest",
    "IntentResponse",
    "ManualConfirmationRequest",
    "PaymentCreate",
    "PaymentListResponse",
    "PaymentResponse",
    "PaymentStatusUpdate",
    "ReconciliationResponse",
    "WebhookAck",
    # Student
    "PaymentMethodListResponse",
    "SavedPaymentMethodResponse",
    "StudentBalanceResponse",
    "StudentCreate",
    "StudentResponse",
]
