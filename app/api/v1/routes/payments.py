"""Payment routes."""

from dataclasses import asdict
from datetime import date
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from app.core.deps import DbSession, Gateway
from app.models.payment import PaymentStatus
from app.schemas.payment import (
    EMIPaymentResponse,
    IntentCreateRequest,
    IntentResponse,
    ManualConfirmationRequest,
    PaymentCreate,
    PaymentListResponse,
    PaymentResponse,
    PaymentStatusUpdate,
    ReconciliationResponse,
)
from app.services import payment as payment_service
from app.services import planner
from app.services import reconciliation
from app.services.reconciliation import IntentPurpose, ReconciliationResult

router = APIRouter(prefix="/payments", tags=["Payments"])


async def build_reconciliation_response(db, result: ReconciliationResult) -> ReconciliationResponse:
    """Reload touched entities and wrap them in a response."""
    payment = None
    emi_payment = None
    if result.payment is not None:
        payment = await payment_service.get_payment_by_id(db, result.payment.id)
    if result.emi_payment is not None:
        emi_payment = await payment_service.get_installment_by_id(db, result.emi_payment.id)
    return ReconciliationResponse(
        outcome=result.outcome.value,
        payment=PaymentResponse.model_validate(payment) if payment else None,
        emi_payment=EMIPaymentResponse.model_validate(emi_payment) if emi_payment else None,
    )


@router.get("", response_model=PaymentListResponse)
async def list_payments(
    db: DbSession,
    student_id: UUID | None = Query(None, description="Filter by student ID"),
    payment_status: PaymentStatus | None = Query(None, alias="status", description="Filter by status"),
    due_date_from: date | None = Query(None, description="Filter by due date from"),
    due_date_to: date | None = Query(None, description="Filter by due date to"),
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(100, ge=1, le=1000, description="Max number of records"),
) -> PaymentListResponse:
    """
    List payments with optional filters.

    - **student_id**: Filter by student
    - **status**: Filter by payment status
    - **due_date_from/to**: Filter by due date range
    """
    payments, total = await payment_service.get_payments(
        db,
        student_id=student_id,
        status=payment_status,
        due_date_from=due_date_from,
        due_date_to=due_date_to,
        skip=skip,
        limit=limit,
    )
    return PaymentListResponse(
        items=[PaymentResponse.model_validate(p) for p in payments],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(payment_data: PaymentCreate, db: DbSession) -> PaymentResponse:
    """
    Register a fee obligation and its installment schedule.

    The payment status is derived from the deposit:
    - **completed**: deposit covers the total
    - **partial**: some deposit collected
    - **pending**: no deposit

    All installments start out pending.
    """
    payment = await planner.create_payment_plan(db, payment_data)
    payment = await payment_service.get_payment_by_id(db, payment.id)
    return PaymentResponse.model_validate(payment)


@router.post("/confirm", response_model=ReconciliationResponse)
async def confirm_payment(
    request: ManualConfirmationRequest,
    db: DbSession,
    gateway: Gateway,
) -> ReconciliationResponse:
    """
    Manually confirm a payment or installment against the gateway.

    Rejected unless the gateway reports the intent as succeeded.
    **force_override** lets an installment be settled while a deposit
    transaction is still in progress.
    """
    result = await reconciliation.confirm_manually(
        db,
        gateway,
        request.gateway_payment_id,
        payment_id=request.payment_id,
        emi_payment_id=request.emi_payment_id,
        force_override=request.force_override,
    )
    return await build_reconciliation_response(db, result)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: UUID, db: DbSession) -> PaymentResponse:
    """Get a payment by ID."""
    payment = await payment_service.get_payment_by_id(db, payment_id)
    if not payment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment not found",
        )
    return PaymentResponse.model_validate(payment)


@router.get("/{payment_id}/installments", response_model=list[EMIPaymentResponse])
async def get_payment_installments(payment_id: UUID, db: DbSession) -> list[EMIPaymentResponse]:
    """Get the installment schedule of a payment."""
    payment = await payment_service.get_payment_by_id(db, payment_id)
    if not payment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment not found",
        )
    installments = await payment_service.get_installments(db, payment_id=payment_id)
    return [EMIPaymentResponse.model_validate(emi) for emi in installments]


@router.patch("/{payment_id}/status", response_model=ReconciliationResponse)
async def update_payment_status(
    payment_id: UUID,
    status_data: PaymentStatusUpdate,
    db: DbSession,
) -> ReconciliationResponse:
    """Administrative status edit (failed, refunded, ...). The student balance is recomputed."""
    result = await reconciliation.update_payment_status(
        db,
        payment_id,
        status_data.status,
        note=status_data.note,
    )
    return await build_reconciliation_response(db, result)


@router.post("/{payment_id}/intent", response_model=IntentResponse)
async def create_payment_intent(
    payment_id: UUID,
    db: DbSession,
    gateway: Gateway,
    intent_data: IntentCreateRequest | None = None,
    purpose: IntentPurpose = Query(IntentPurpose.BALANCE, description="deposit or balance"),
) -> IntentResponse:
    """Start collecting the deposit or the outstanding balance of a payment online."""
    intent = await reconciliation.begin_intent(
        db,
        gateway,
        payment_id=payment_id,
        purpose=purpose,
        currency=intent_data.currency if intent_data else None,
    )
    return IntentResponse(**asdict(intent))


@router.delete("/{payment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment(payment_id: UUID, db: DbSession) -> None:
    """
    Delete a payment.

    Its installments are deleted with it and the student's balance is
    recomputed without it.
    """
    await reconciliation.delete_payment(db, payment_id)
