"""Reconciliation engine.

Applies gateway events and administrator actions to a Payment, its
installments and the owning Student as one serialized transaction. Every
algorithm here is safe to replay: balances are recomputed from scratch and
receipt numbers are only assigned when absent.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidStateError, NotFoundError, PaymentValidationError
from app.models.payment import (
    EMIPayment,
    EMIStatus,
    GatewayProvider,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from app.services.balance import StudentBalance, apply_student_balance
from app.services.gateway import (
    EVENT_INTENT_FAILED,
    EVENT_INTENT_SUCCEEDED,
    GatewayEvent,
    PaymentGateway,
    from_minor_units,
    to_minor_units,
)
from app.services.locking import lock_student, run_serialized
from app.services.resolver import installment_chain, payment_chain
from app.services.sequence import EMI_RECEIPT_PREFIX, PAYMENT_RECEIPT_PREFIX, next_number

logger = logging.getLogger(__name__)

OPEN_STATUSES = (EMIStatus.PENDING, EMIStatus.OVERDUE, EMIStatus.PROCESSING)


class AmountClass(str, Enum):
    """What a payment-level amount pays for."""

    DEPOSIT = "deposit"
    FULL = "full"
    OTHER = "other"


class Outcome(str, Enum):
    """What applying an event did."""

    DEPOSIT_CONFIRMED = "deposit_confirmed"
    PAYMENT_SETTLED = "payment_settled"
    PARTIAL_APPLIED = "partial_applied"
    INSTALLMENT_PAID = "installment_paid"
    DUPLICATE = "duplicate"
    FAILURE_RECORDED = "failure_recorded"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"
    STATUS_UPDATED = "status_updated"
    INSTALLMENT_CANCELLED = "installment_cancelled"
    PAYMENT_DELETED = "payment_deleted"


class IntentPurpose(str, Enum):
    """What an online payment for a Payment is collecting."""

    DEPOSIT = "deposit"
    BALANCE = "balance"


@dataclass(frozen=True)
class PaymentEvent:
    """A success or failure notice, normalized from a webhook or a manual confirmation."""

    gateway_payment_id: str
    amount: Decimal | None = None
    payment_id: UUID | None = None
    emi_payment_id: UUID | None = None
    student_id: UUID | None = None
    provider: GatewayProvider = GatewayProvider.STRIPE
    raw: str | None = None
    failure_message: str | None = None
    purpose: str | None = None

    @classmethod
    def from_intent(cls, intent: dict[str, Any], provider: GatewayProvider = GatewayProvider.STRIPE) -> "PaymentEvent":
        metadata = intent.get("metadata") or {}
        amount = intent.get("amount_received") or intent.get("amount")
        error = intent.get("last_payment_error") or {}
        return cls(
            gateway_payment_id=str(intent.get("id", "")),
            amount=from_minor_units(amount) if amount is not None else None,
            payment_id=_parse_uuid(metadata.get("paymentId"), "paymentId"),
            emi_payment_id=_parse_uuid(metadata.get("emiPaymentId"), "emiPaymentId"),
            student_id=_parse_uuid(metadata.get("studentId"), "studentId"),
            provider=provider,
            raw=json.dumps(intent, default=str),
            failure_message=error.get("message") if isinstance(error, dict) else None,
            purpose=metadata.get("purpose"),
        )


@dataclass
class ReconciliationResult:
    """Entities touched by one reconciliation and what happened to them."""

    outcome: Outcome
    payment: Payment | None = None
    emi_payment: EMIPayment | None = None
    balance: StudentBalance | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IntentResult:
    """Client-side details of a created gateway intent."""

    intent_id: str
    client_secret: str
    amount: Decimal
    currency: str
    publishable_key: str
    payment_id: UUID | None = None
    emi_payment_id: UUID | None = None


def _parse_uuid(value: Any, name: str) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        logger.warning("Ignoring malformed %s in gateway metadata: %r", name, value)
        return None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _close(a: Decimal, b: Decimal) -> bool:
    return abs(Decimal(a) - Decimal(b)) <= settings.AMOUNT_TOLERANCE


def applied_amount(payment: Payment, installments: list[EMIPayment]) -> Decimal:
    """Money actually applied to a payment: deposit plus paid installments."""
    paid = sum((emi.amount for emi in installments if emi.status == EMIStatus.PAID), Decimal("0"))
    return Decimal(payment.deposit_amount) + paid


def outstanding_amount(installments: list[EMIPayment]) -> Decimal:
    """Sum of installments still expecting money."""
    return sum((emi.amount for emi in installments if emi.status in OPEN_STATUSES), Decimal("0"))


def rollup_status(payment: Payment, installments: list[EMIPayment]) -> PaymentStatus:
    """
    Payment status implied by its installments.

    Completed once nothing is open and either the money covers the total or
    every scheduled installment was paid.
    """
    applied = applied_amount(payment, installments)
    open_count = sum(1 for emi in installments if emi.status in OPEN_STATUSES)
    all_paid = bool(installments) and all(emi.status == EMIStatus.PAID for emi in installments)
    if open_count == 0 and (applied >= Decimal(payment.total_amount) - settings.AMOUNT_TOLERANCE or all_paid):
        return PaymentStatus.COMPLETED
    if applied > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def classify_amount(
    payment: Payment,
    installments: list[EMIPayment],
    amount: Decimal | None,
    purpose: str | None = None,
) -> AmountClass:
    """
    Classify a payment-level amount as deposit only, full settlement or other.

    An amount equal to the deposit is the deposit only, even when it also
    equals the outstanding balance, unless the intent was created to collect
    the balance.
    """
    if amount is None:
        return AmountClass.OTHER
    deposit = Decimal(payment.deposit_amount)
    outstanding = outstanding_amount(installments)
    matches_deposit = deposit > 0 and _close(amount, deposit)
    matches_full = _close(amount, payment.total_amount) or (outstanding > 0 and _close(amount, outstanding))

    if matches_deposit and not (matches_full and purpose == IntentPurpose.BALANCE):
        return AmountClass.DEPOSIT
    if matches_full:
        return AmountClass.FULL
    return AmountClass.OTHER


async def _reload_payment(db: AsyncSession, payment_id: UUID) -> Payment:
    result = await db.execute(
        select(Payment)
        .where(Payment.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found", payment_id=payment_id)
    return payment


async def _reload_installments(db: AsyncSession, payment_id: UUID) -> list[EMIPayment]:
    result = await db.execute(
        select(EMIPayment)
        .where(EMIPayment.payment_id == payment_id)
        .order_by(EMIPayment.installment_number)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def _set_payment_status(payment: Payment, status: PaymentStatus) -> None:
    if payment.status != status:
        logger.info("Payment %s status %s -> %s", payment.id, payment.status, status.value)
    payment.status = status


async def _settle_installment(
    db: AsyncSession,
    emi: EMIPayment,
    event: PaymentEvent,
    paid_at: datetime,
) -> None:
    previous = emi.status
    emi.mark_paid(paid_at, event.gateway_payment_id, event.gateway_payment_id, PaymentMethod.ONLINE)
    emi.gateway_provider = event.provider
    if not emi.receipt_number:
        emi.receipt_number = await next_number(db, EMI_RECEIPT_PREFIX)
    logger.info(
        "Installment %s (#%s of payment %s) %s -> paid, receipt %s",
        emi.id,
        emi.installment_number,
        emi.payment_id,
        previous,
        emi.receipt_number,
    )


def _reset_for_deposit(installments: list[EMIPayment], event: PaymentEvent, today: date) -> int:
    """
    Reopen installments touched by a deposit-only event.

    Only installments settled with full evidence by a different gateway
    payment are left alone; everything else loses any partial evidence.
    """
    reset = 0
    for emi in installments:
        if emi.status == EMIStatus.CANCELLED:
            continue
        if (
            emi.status == EMIStatus.PAID
            and emi.has_settlement_evidence
            and emi.gateway_payment_id != event.gateway_payment_id
        ):
            logger.debug("Keeping installment %s settled by %s", emi.id, emi.gateway_payment_id)
            continue
        if emi.status != EMIStatus.PENDING or emi.paid_date or emi.transaction_id or emi.gateway_payment_id:
            reset += 1
        emi.reset_to_pending()
        emi.refresh_overdue(today)
    if reset:
        logger.warning("Deposit event %s reopened %d installment(s)", event.gateway_payment_id, reset)
    return reset


async def apply_payment_success(
    db: AsyncSession,
    event: PaymentEvent,
    explicit_payment_id: UUID | None = None,
) -> ReconciliationResult:
    """Apply a success event that pays a Payment (deposit, full or other amount)."""

    async def _apply(session: AsyncSession) -> ReconciliationResult:
        resolved = await payment_chain(
            session,
            explicit_id=explicit_payment_id,
            gateway_payment_id=event.gateway_payment_id,
            metadata_payment_id=event.payment_id,
            student_id=event.student_id,
        ).resolve()
        await lock_student(session, resolved.student_id)
        payment = await _reload_payment(session, resolved.id)
        installments = await _reload_installments(session, payment.id)

        if payment.transaction_id and payment.transaction_id == event.gateway_payment_id:
            logger.info("Payment %s already reconciled with %s", payment.id, event.gateway_payment_id)
            balance = await apply_student_balance(session, payment.student_id)
            return ReconciliationResult(Outcome.DUPLICATE, payment=payment, balance=balance)

        if payment.status == PaymentStatus.REFUNDED:
            raise InvalidStateError(
                "Cannot apply money to a refunded payment",
                payment_id=payment.id,
                status=payment.status,
                gateway_payment_id=event.gateway_payment_id,
            )

        kind = classify_amount(payment, installments, event.amount, event.purpose)
        paid_at = _now()
        details: dict[str, Any] = {"classification": kind.value}

        if kind == AmountClass.DEPOSIT:
            details["reset_installments"] = _reset_for_deposit(installments, event, paid_at.date())
            outcome = Outcome.DEPOSIT_CONFIRMED
        elif kind == AmountClass.FULL:
            for emi in installments:
                if emi.status in OPEN_STATUSES:
                    await _settle_installment(session, emi, event, paid_at)
            outcome = Outcome.PAYMENT_SETTLED
        else:
            remaining = Decimal(event.amount or 0)
            settled = 0
            for emi in installments:
                if emi.status not in OPEN_STATUSES:
                    continue
                if remaining + settings.AMOUNT_TOLERANCE < Decimal(emi.amount):
                    break
                await _settle_installment(session, emi, event, paid_at)
                remaining -= Decimal(emi.amount)
                settled += 1
            if remaining > settings.AMOUNT_TOLERANCE:
                logger.warning(
                    "Payment %s: %s of %s from %s could not be matched to an installment",
                    payment.id,
                    remaining,
                    event.amount,
                    event.gateway_payment_id,
                )
            details.update(settled_installments=settled, unapplied_amount=str(remaining))
            outcome = Outcome.PARTIAL_APPLIED

        payment.gateway_payment_id = event.gateway_payment_id
        payment.gateway_provider = event.provider
        payment.gateway_response = event.raw
        payment.transaction_id = event.gateway_payment_id
        payment.paid_date = paid_at
        if payment.payment_method is None:
            payment.payment_method = PaymentMethod.ONLINE
        if not payment.receipt_number:
            payment.receipt_number = await next_number(session, PAYMENT_RECEIPT_PREFIX)

        _set_payment_status(payment, rollup_status(payment, installments))
        balance = await apply_student_balance(session, payment.student_id)
        return ReconciliationResult(outcome, payment=payment, balance=balance, details=details)

    return await run_serialized(db, _apply, "payment success")


async def apply_installment_success(
    db: AsyncSession,
    event: PaymentEvent,
    explicit_emi_payment_id: UUID | None = None,
    force_override: bool = False,
) -> ReconciliationResult:
    """Apply a success event that settles one installment."""

    async def _apply(session: AsyncSession) -> ReconciliationResult:
        resolved = await installment_chain(
            session,
            explicit_id=explicit_emi_payment_id,
            metadata_emi_payment_id=event.emi_payment_id,
            gateway_payment_id=event.gateway_payment_id,
            student_id=event.student_id,
        ).resolve()
        await lock_student(session, resolved.student_id)
        payment = await _reload_payment(session, resolved.payment_id)
        installments = await _reload_installments(session, payment.id)
        emi = next(item for item in installments if item.id == resolved.id)

        if emi.status == EMIStatus.PAID:
            if emi.gateway_payment_id == event.gateway_payment_id:
                logger.info("Installment %s already settled by %s", emi.id, event.gateway_payment_id)
                balance = await apply_student_balance(session, emi.student_id)
                return ReconciliationResult(Outcome.DUPLICATE, payment=payment, emi_payment=emi, balance=balance)
            raise InvalidStateError(
                "Installment already settled by another transaction",
                emi_payment_id=emi.id,
                status=emi.status,
                settled_by=emi.gateway_payment_id,
                gateway_payment_id=event.gateway_payment_id,
            )
        if emi.status == EMIStatus.CANCELLED:
            raise InvalidStateError(
                "Cannot settle a cancelled installment",
                emi_payment_id=emi.id,
                status=emi.status,
            )
        if payment.status == PaymentStatus.REFUNDED:
            raise InvalidStateError(
                "Cannot settle an installment of a refunded payment",
                payment_id=payment.id,
                status=payment.status,
            )
        if payment.status == PaymentStatus.PROCESSING:
            if not force_override:
                raise InvalidStateError(
                    "Installment update blocked while a deposit transaction is in progress",
                    payment_id=payment.id,
                    emi_payment_id=emi.id,
                    status=payment.status,
                )
            logger.warning(
                "Deposit lock on payment %s overridden to settle installment %s",
                payment.id,
                emi.id,
            )

        if event.amount is not None and not _close(event.amount, Decimal(emi.amount) + Decimal(emi.late_fee or 0)):
            logger.warning(
                "Installment %s due %s but %s received from %s",
                emi.id,
                emi.amount,
                event.amount,
                event.gateway_payment_id,
            )

        await _settle_installment(session, emi, event, _now())
        emi.gateway_response = event.raw

        _set_payment_status(payment, rollup_status(payment, installments))
        balance = await apply_student_balance(session, emi.student_id)
        return ReconciliationResult(Outcome.INSTALLMENT_PAID, payment=payment, emi_payment=emi, balance=balance)

    return await run_serialized(db, _apply, "installment success")


async def apply_failure(db: AsyncSession, event: PaymentEvent) -> ReconciliationResult:
    """Record diagnostic details of a failed attempt. Never changes a status."""

    async def _apply(session: AsyncSession) -> ReconciliationResult:
        emi = await installment_chain(
            session,
            metadata_emi_payment_id=event.emi_payment_id,
            gateway_payment_id=event.gateway_payment_id,
        ).resolve_optional()
        payment = None
        if emi is None:
            payment = await payment_chain(
                session,
                gateway_payment_id=event.gateway_payment_id,
                metadata_payment_id=event.payment_id,
            ).resolve_optional()

        target = emi or payment
        if target is None:
            logger.warning("Failure event %s matched no payment", event.gateway_payment_id)
            return ReconciliationResult(Outcome.UNMATCHED)

        await lock_student(session, target.student_id)
        message = event.failure_message or "Unknown error"
        target.gateway_response = event.raw
        if emi is not None:
            emi.notes = f"Payment failed: {message}"
        logger.info(
            "Recorded failed attempt %s on %s %s: %s",
            event.gateway_payment_id,
            type(target).__name__,
            target.id,
            message,
        )
        return ReconciliationResult(Outcome.FAILURE_RECORDED, payment=payment, emi_payment=emi)

    return await run_serialized(db, _apply, "payment failure")


async def _targets_installment(db: AsyncSession, event: PaymentEvent) -> bool:
    """Decide whether a success event settles an installment or a payment."""
    if event.emi_payment_id is not None:
        return True
    if event.payment_id is not None:
        return False
    by_payment = await payment_chain(db, gateway_payment_id=event.gateway_payment_id).resolve_optional()
    if by_payment is not None:
        return False
    by_installment = await installment_chain(db, gateway_payment_id=event.gateway_payment_id).resolve_optional()
    return by_installment is not None


async def handle_gateway_event(db: AsyncSession, gateway_event: GatewayEvent) -> ReconciliationResult:
    """Dispatch a verified webhook event."""
    if gateway_event.type not in (EVENT_INTENT_SUCCEEDED, EVENT_INTENT_FAILED):
        logger.info("Unhandled event type %s", gateway_event.type)
        return ReconciliationResult(Outcome.IGNORED)

    event = PaymentEvent.from_intent(gateway_event.intent)
    if not event.gateway_payment_id:
        raise PaymentValidationError("Event carries no payment intent id", event_type=gateway_event.type)

    if gateway_event.type == EVENT_INTENT_FAILED:
        return await apply_failure(db, event)
    if await _targets_installment(db, event):
        return await apply_installment_success(db, event)
    return await apply_payment_success(db, event)


async def confirm_manually(
    db: AsyncSession,
    gateway: PaymentGateway,
    gateway_payment_id: str,
    payment_id: UUID | None = None,
    emi_payment_id: UUID | None = None,
    force_override: bool = False,
) -> ReconciliationResult:
    """
    Apply a payment an administrator vouches for, after checking the gateway.

    The intent must have succeeded; anything else is rejected immediately
    rather than queued.
    """
    if (payment_id is None) == (emi_payment_id is None):
        raise PaymentValidationError(
            "Provide exactly one of payment_id or emi_payment_id",
            payment_id=payment_id,
            emi_payment_id=emi_payment_id,
        )

    intent = await gateway.retrieve_intent(gateway_payment_id)
    if not intent.succeeded:
        raise InvalidStateError(
            "Gateway payment has not succeeded",
            gateway_payment_id=gateway_payment_id,
            status=intent.status,
        )

    event = PaymentEvent.from_intent(
        {
            "id": intent.id,
            "amount": intent.amount,
            "status": intent.status,
            "currency": intent.currency,
            "metadata": intent.metadata,
        },
        provider=gateway.provider,
    )
    logger.info(
        "Manual confirmation of %s for %s",
        gateway_payment_id,
        f"installment {emi_payment_id}" if emi_payment_id else f"payment {payment_id}",
    )
    if emi_payment_id is not None:
        return await apply_installment_success(
            db,
            event,
            explicit_emi_payment_id=emi_payment_id,
            force_override=force_override,
        )
    return await apply_payment_success(db, event, explicit_payment_id=payment_id)


async def begin_intent(
    db: AsyncSession,
    gateway: PaymentGateway,
    payment_id: UUID | None = None,
    emi_payment_id: UUID | None = None,
    purpose: IntentPurpose = IntentPurpose.BALANCE,
    currency: str | None = None,
) -> IntentResult:
    """
    Create a gateway intent for a payment or an installment.

    A deposit intent puts the payment in ``processing`` until the gateway
    reports back; installment updates are refused meanwhile.
    """
    if (payment_id is None) == (emi_payment_id is None):
        raise PaymentValidationError("Provide exactly one of payment_id or emi_payment_id")

    emi: EMIPayment | None = None
    if emi_payment_id is not None:
        emi = await db.get(EMIPayment, emi_payment_id)
        if emi is None:
            raise NotFoundError("EMIPayment not found", emi_payment_id=emi_payment_id)
        if emi.status not in (EMIStatus.PENDING, EMIStatus.OVERDUE):
            raise InvalidStateError("Installment is not open", emi_payment_id=emi.id, status=emi.status)
        payment_id = emi.payment_id

    payment = await db.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found", payment_id=payment_id)
    if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
        raise InvalidStateError("Payment is closed", payment_id=payment.id, status=payment.status)

    currency = (currency or payment.currency or settings.DEFAULT_CURRENCY).upper()
    if currency not in settings.SUPPORTED_CURRENCIES:
        raise PaymentValidationError("Unsupported currency", currency=currency)

    metadata = {"studentId": str(payment.student_id), "paymentId": str(payment.id)}
    if emi is not None:
        amount = Decimal(emi.amount) + Decimal(emi.late_fee or 0)
        metadata.update(emiPaymentId=str(emi.id), installmentNumber=str(emi.installment_number))
        description = f"EMI Payment #{emi.installment_number} for {payment.course_name}"
    elif purpose == IntentPurpose.DEPOSIT:
        amount = Decimal(payment.deposit_amount)
        metadata.update(invoiceNumber=payment.invoice_number, purpose=purpose.value)
        description = f"Deposit for {payment.course_name}"
    else:
        amount = outstanding_amount(list(payment.installments)) or Decimal(payment.remaining_amount)
        metadata.update(invoiceNumber=payment.invoice_number, purpose=purpose.value)
        description = f"Payment for {payment.course_name}"

    if amount <= 0:
        raise InvalidStateError("Nothing to collect", payment_id=payment.id, amount=amount)

    intent = await gateway.create_intent(to_minor_units(amount), currency, metadata, description)

    async def _record(session: AsyncSession) -> None:
        await lock_student(session, payment.student_id)
        if emi is not None:
            target = next(item for item in await _reload_installments(session, payment.id) if item.id == emi.id)
            target.gateway_payment_id = intent.id
            target.gateway_provider = gateway.provider
            return
        fresh = await _reload_payment(session, payment.id)
        fresh.gateway_payment_id = intent.id
        fresh.gateway_provider = gateway.provider
        if purpose == IntentPurpose.DEPOSIT:
            _set_payment_status(fresh, PaymentStatus.PROCESSING)

    await run_serialized(db, _record, "record intent")
    logger.info("Intent %s created for %s %s", intent.id, amount, currency)
    return IntentResult(
        intent_id=intent.id,
        client_secret=intent.client_secret or "",
        amount=amount,
        currency=currency,
        publishable_key=gateway.publishable_key,
        payment_id=payment.id,
        emi_payment_id=emi.id if emi is not None else None,
    )


async def update_payment_status(
    db: AsyncSession,
    payment_id: UUID,
    status: PaymentStatus,
    note: str | None = None,
) -> ReconciliationResult:
    """Administrative status edit, followed by a balance recompute."""

    async def _apply(session: AsyncSession) -> ReconciliationResult:
        found = await session.get(Payment, payment_id)
        if found is None:
            raise NotFoundError("Payment not found", payment_id=payment_id)
        await lock_student(session, found.student_id)
        payment = await _reload_payment(session, payment_id)
        installments = await _reload_installments(session, payment.id)

        if status == PaymentStatus.PENDING and payment.due_date is None:
            raise PaymentValidationError("due_date is required for a pending payment", payment_id=payment.id)
        if status == PaymentStatus.COMPLETED and rollup_status(payment, installments) != PaymentStatus.COMPLETED:
            raise InvalidStateError(
                "Payment cannot be completed while money is outstanding",
                payment_id=payment.id,
                status=payment.status,
                applied_amount=applied_amount(payment, installments),
                total_amount=payment.total_amount,
            )
        if status == PaymentStatus.PROCESSING and payment.status not in (PaymentStatus.PENDING, PaymentStatus.PARTIAL):
            raise InvalidStateError(
                "Only open payments can be put in processing",
                payment_id=payment.id,
                status=payment.status,
            )

        _set_payment_status(payment, status)
        if note:
            payment.notes = f"{payment.notes}\n{note}" if payment.notes else note
        balance = await apply_student_balance(session, payment.student_id)
        return ReconciliationResult(Outcome.STATUS_UPDATED, payment=payment, balance=balance)

    return await run_serialized(db, _apply, "payment status update")


async def cancel_installment(
    db: AsyncSession,
    emi_payment_id: UUID,
    reason: str | None = None,
) -> ReconciliationResult:
    """Cancel an open installment."""

    async def _apply(session: AsyncSession) -> ReconciliationResult:
        found = await session.get(EMIPayment, emi_payment_id)
        if found is None:
            raise NotFoundError("EMIPayment not found", emi_payment_id=emi_payment_id)
        await lock_student(session, found.student_id)
        payment = await _reload_payment(session, found.payment_id)
        installments = await _reload_installments(session, payment.id)
        emi = next(item for item in installments if item.id == emi_payment_id)

        if emi.status not in (EMIStatus.PENDING, EMIStatus.OVERDUE):
            raise InvalidStateError(
                "Only pending or overdue installments can be cancelled",
                emi_payment_id=emi.id,
                status=emi.status,
            )
        emi.status = EMIStatus.CANCELLED
        if reason:
            emi.notes = reason
        logger.info("Installment %s of payment %s cancelled", emi.installment_number, payment.id)

        if payment.status not in (PaymentStatus.FAILED, PaymentStatus.REFUNDED, PaymentStatus.PROCESSING):
            _set_payment_status(payment, rollup_status(payment, installments))
        balance = await apply_student_balance(session, emi.student_id)
        return ReconciliationResult(Outcome.INSTALLMENT_CANCELLED, payment=payment, emi_payment=emi, balance=balance)

    return await run_serialized(db, _apply, "installment cancellation")


async def delete_payment(db: AsyncSession, payment_id: UUID) -> ReconciliationResult:
    """Delete a payment with its installments and reverse its effect on the student."""

    async def _apply(session: AsyncSession) -> ReconciliationResult:
        found = await session.get(Payment, payment_id)
        if found is None:
            raise NotFoundError("Payment not found", payment_id=payment_id)
        student = await lock_student(session, found.student_id)
        payment = await _reload_payment(session, payment_id)
        await _reload_installments(session, payment.id)

        await session.delete(payment)
        await session.flush()

        remaining = await session.execute(
            select(Payment.id).where(Payment.student_id == student.id).limit(1)
        )
        if remaining.scalar_one_or_none() is None:
            student.total_fees = Decimal("0")

        balance = await apply_student_balance(session, student.id)
        logger.info("Deleted payment %s (%s) of student %s", payment.id, payment.invoice_number, student.id)
        return ReconciliationResult(Outcome.PAYMENT_DELETED, balance=balance, details={"payment_id": str(payment_id)})

    return await run_serialized(db, _apply, "payment deletion")
