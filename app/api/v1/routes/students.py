"""Student routes."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from app.core.deps import DbSession, Gateway
from app.schemas.student import (
    PaymentMethodListResponse,
    SavedPaymentMethodResponse,
    StudentBalanceResponse,
    StudentCreate,
    StudentResponse,
)
from app.services import student as student_service
from app.services.balance import StudentBalance, recompute_student_balance

router = APIRouter(prefix="/students", tags=["Students"])


def _balance_response(balance: StudentBalance) -> StudentBalanceResponse:
    return StudentBalanceResponse(
        student_id=balance.student_id,
        total_fees=balance.total_fees,
        paid_amount=balance.paid_amount,
        remaining_amount=balance.remaining_amount,
        fee_status=balance.fee_status,
        enrollment_status=balance.enrollment_status,
        next_payment_due=balance.next_payment_due,
    )


@router.post("", response_model=StudentResponse, status_code=status.HTTP_201_CREATED)
async def create_student(student_data: StudentCreate, db: DbSession) -> StudentResponse:
    """Register a student with the fee ledger."""
    student = await student_service.create_student(db, student_data)
    return StudentResponse.model_validate(student)


@router.get("/{student_id}", response_model=StudentResponse)
async def get_student(student_id: UUID, db: DbSession) -> StudentResponse:
    """Get a student with the stored balance fields."""
    student = await student_service.get_student_by_id(db, student_id)
    if not student:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Student not found",
        )
    return StudentResponse.model_validate(student)


@router.get("/{student_id}/balance", response_model=StudentBalanceResponse)
async def get_student_balance(student_id: UUID, db: DbSession) -> StudentBalanceResponse:
    """Aggregate the student's balance from their payments without storing it."""
    balance = await recompute_student_balance(db, student_id)
    return _balance_response(balance)


@router.post("/{student_id}/recompute", response_model=StudentBalanceResponse)
async def recompute_student(student_id: UUID, db: DbSession) -> StudentBalanceResponse:
    """Recompute and store the student's balance."""
    balance = await student_service.recompute_balance(db, student_id)
    return _balance_response(balance)


@router.get("/{student_id}/payment-methods", response_model=PaymentMethodListResponse)
async def list_payment_methods(student_id: UUID, db: DbSession, gateway: Gateway) -> PaymentMethodListResponse:
    """List the student's saved cards, creating their gateway customer if needed."""
    customer_id, methods = await student_service.get_payment_methods(db, gateway, student_id)
    return PaymentMethodListResponse(
        customer_id=customer_id,
        payment_methods=[SavedPaymentMethodResponse.model_validate(method) for method in methods],
    )
