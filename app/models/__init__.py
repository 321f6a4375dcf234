# Database models

from app.models.student import EnrollmentStatus, FeeStatus, Student
from app.models.payment import (
    EMIPayment,
    EMIStatus,
    GatewayProvider,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from app.models.sequence import SequenceCounter

__all__ = [
    "Student",
    "FeeStatus",
    "EnrollmentStatus",
    "Payment",
    "PaymentStatus",
    "PaymentMethod",
    "GatewayProvider",
    "EMIPayment",
    "EMIStatus",
    "SequenceCounter",
]
