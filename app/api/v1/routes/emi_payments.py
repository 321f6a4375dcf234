"""Installment routes."""

from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from app.api.v1.routes.payments import build_reconciliation_response
from app.core.deps import DbSession, Gateway
from app.schemas.payment import (
    EMIPaymentResponse,
    IntentCreateRequest,
    IntentResponse,
    ReconciliationResponse,
)
from app.services import payment as payment_service
from app.services import reconciliation

router = APIRouter(prefix="/emi-payments", tags=["Installments"])


class CancelRequest(BaseModel):
    """Reason recorded on a cancelled installment."""

    reason: str | None = None


@router.get("/{emi_payment_id}", response_model=EMIPaymentResponse)
async def get_installment(emi_payment_id: UUID, db: DbSession) -> EMIPaymentResponse:
    """Get an installment by ID."""
    emi = await payment_service.get_installment_by_id(db, emi_payment_id)
    if not emi:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Installment not found",
        )
    return EMIPaymentResponse.model_validate(emi)


@router.post("/{emi_payment_id}/intent", response_model=IntentResponse)
async def create_installment_intent(
    emi_payment_id: UUID,
    db: DbSession,
    gateway: Gateway,
    intent_data: IntentCreateRequest | None = None,
) -> IntentResponse:
    """Start collecting one installment online."""
    intent = await reconciliation.begin_intent(
        db,
        gateway,
        emi_payment_id=emi_payment_id,
        currency=intent_data.currency if intent_data else None,
    )
    return IntentResponse(**asdict(intent))


@router.post("/{emi_payment_id}/cancel", response_model=ReconciliationResponse)
async def cancel_installment(
    emi_payment_id: UUID,
    db: DbSession,
    cancel_data: CancelRequest | None = None,
) -> ReconciliationResponse:
    """Cancel a pending or overdue installment."""
    result = await reconciliation.cancel_installment(
        db,
        emi_payment_id,
        reason=cancel_data.reason if cancel_data else None,
    )
    return await build_reconciliation_response(db, result)
