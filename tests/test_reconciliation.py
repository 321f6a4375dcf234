"""Tests for the reconciliation engine."""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    ConsistencyError,
    InvalidStateError,
    NotFoundError,
    PaymentValidationError,
)
from app.models.payment import EMIPayment, EMIStatus, Payment, PaymentStatus
from app.models.student import EnrollmentStatus, FeeStatus, Student
from app.services import reconciliation
from app.services.gateway import EVENT_INTENT_FAILED
from app.services.reconciliation import (
    AmountClass,
    IntentPurpose,
    Outcome,
    PaymentEvent,
    classify_amount,
    rollup_status,
)
from tests.conftest import FakeGateway, intent_payload, reload, test_session_maker, webhook_event


async def installments_of(db: AsyncSession, payment_id) -> list[EMIPayment]:
    """Installments of a payment in schedule order, freshly loaded."""
    result = await db.execute(
        select(EMIPayment)
        .where(EMIPayment.payment_id == payment_id)
        .order_by(EMIPayment.installment_number)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def metadata_for(payment: Payment, emi: EMIPayment | None = None) -> dict[str, str]:
    """Gateway metadata as attached when an intent is created."""
    metadata = {"studentId": str(payment.student_id), "paymentId": str(payment.id)}
    if emi is not None:
        metadata["emiPaymentId"] = str(emi.id)
    return metadata


class TestClassifyAmount:
    """Tests for deposit / full / other classification."""

    def _payment(self, status: PaymentStatus = PaymentStatus.PARTIAL) -> tuple[Payment, list[EMIPayment]]:
        payment = Payment(
            total_amount=Decimal("10000"),
            deposit_amount=Decimal("3000"),
            status=status,
        )
        installments = [
            EMIPayment(installment_number=n, amount=amount, status=EMIStatus.PENDING)
            for n, amount in enumerate(
                [Decimal("2333.33"), Decimal("2333.33"), Decimal("2333.34")], start=1
            )
        ]
        return payment, installments

    def test_deposit_amount(self):
        """Test an amount equal to the deposit."""
        payment, installments = self._payment()
        assert classify_amount(payment, installments, Decimal("3000")) == AmountClass.DEPOSIT

    def test_within_tolerance(self):
        """Test amounts within one paisa still match."""
        payment, installments = self._payment()
        assert classify_amount(payment, installments, Decimal("2999.99")) == AmountClass.DEPOSIT

    def test_outstanding_amount_is_full(self):
        """Test the outstanding balance settles everything."""
        payment, installments = self._payment()
        assert classify_amount(payment, installments, Decimal("7000")) == AmountClass.FULL

    def test_total_amount_is_full(self):
        """Test the total amount settles everything."""
        payment, installments = self._payment()
        assert classify_amount(payment, installments, Decimal("10000")) == AmountClass.FULL

    def test_other_amount(self):
        """Test an amount matching neither."""
        payment, installments = self._payment()
        assert classify_amount(payment, installments, Decimal("2333.33")) == AmountClass.OTHER

    def test_missing_amount(self):
        """Test an event without an amount."""
        payment, installments = self._payment()
        assert classify_amount(payment, installments, None) == AmountClass.OTHER

    def test_deposit_equal_to_outstanding(self):
        """Test an amount equal to both deposit and outstanding balance counts as deposit only."""
        payment = Payment(
            total_amount=Decimal("6000"), deposit_amount=Decimal("3000"), status=PaymentStatus.PARTIAL
        )
        installments = [EMIPayment(installment_number=1, amount=Decimal("3000"), status=EMIStatus.PENDING)]

        assert classify_amount(payment, installments, Decimal("3000")) == AmountClass.DEPOSIT
        assert classify_amount(payment, installments, Decimal("3000"), "deposit") == AmountClass.DEPOSIT

    def test_balance_intent_equal_to_deposit(self):
        """Test a balance intent for the deposit-sized remainder settles the installments."""
        payment = Payment(
            total_amount=Decimal("6000"), deposit_amount=Decimal("3000"), status=PaymentStatus.PARTIAL
        )
        installments = [EMIPayment(installment_number=1, amount=Decimal("3000"), status=EMIStatus.PENDING)]

        assert classify_amount(payment, installments, Decimal("3000"), "balance") == AmountClass.FULL


class TestRollupStatus:
    """Tests for deriving a payment's status from its installments."""

    def test_all_paid_completes(self):
        """Test a payment whose installments are all paid is completed."""
        payment = Payment(total_amount=Decimal("1000"), deposit_amount=Decimal("0"))
        installments = [
            EMIPayment(installment_number=1, amount=Decimal("500"), status=EMIStatus.PAID),
            EMIPayment(installment_number=2, amount=Decimal("500"), status=EMIStatus.PAID),
        ]
        assert rollup_status(payment, installments) == PaymentStatus.COMPLETED

    def test_open_installment_keeps_partial(self):
        """Test one open installment prevents completion."""
        payment = Payment(total_amount=Decimal("1000"), deposit_amount=Decimal("0"))
        installments = [
            EMIPayment(installment_number=1, amount=Decimal("500"), status=EMIStatus.PAID),
            EMIPayment(installment_number=2, amount=Decimal("500"), status=EMIStatus.OVERDUE),
        ]
        assert rollup_status(payment, installments) == PaymentStatus.PARTIAL

    def test_nothing_applied_is_pending(self):
        """Test a payment with no money applied stays pending."""
        payment = Payment(total_amount=Decimal("1000"), deposit_amount=Decimal("0"))
        installments = [EMIPayment(installment_number=1, amount=Decimal("1000"), status=EMIStatus.PENDING)]
        assert rollup_status(payment, installments) == PaymentStatus.PENDING

    def test_cancelled_installment_blocks_completion(self):
        """Test a cancelled installment does not count as money received."""
        payment = Payment(total_amount=Decimal("1000"), deposit_amount=Decimal("0"))
        installments = [
            EMIPayment(installment_number=1, amount=Decimal("500"), status=EMIStatus.PAID),
            EMIPayment(installment_number=2, amount=Decimal("500"), status=EMIStatus.CANCELLED),
        ]
        assert rollup_status(payment, installments) == PaymentStatus.PARTIAL


class TestPaymentSuccess:
    """Tests for success events against a payment."""

    async def test_deposit_event(self, db: AsyncSession, student: Student, make_payment):
        """Test a deposit-only event leaves every installment pending."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        event = PaymentEvent.from_intent(intent_payload("pi_deposit", Decimal("3000"), metadata_for(payment)))

        result = await reconciliation.apply_payment_success(db, event)

        assert result.outcome == Outcome.DEPOSIT_CONFIRMED
        assert result.payment.status == PaymentStatus.PARTIAL
        assert result.payment.transaction_id == "pi_deposit"
        assert result.payment.receipt_number == "RCP000001"
        installments = await installments_of(db, payment.id)
        assert [emi.status for emi in installments] == [EMIStatus.PENDING] * 3
        assert result.balance.paid_amount == Decimal("3000")
        assert result.balance.fee_status == FeeStatus.PARTIAL

    async def test_deposit_event_resets_partial_evidence(
        self, db: AsyncSession, student: Student, make_payment
    ):
        """Test a deposit event reopens touched installments but keeps fully settled ones."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        first, second, _ = await installments_of(db, payment.id)
        first.status = EMIStatus.PROCESSING
        first.gateway_payment_id = "pi_deposit"
        second.mark_paid(datetime.now(timezone.utc), "pi_other", "pi_other")
        await db.commit()

        event = PaymentEvent.from_intent(intent_payload("pi_deposit", Decimal("3000"), metadata_for(payment)))
        result = await reconciliation.apply_payment_success(db, event)

        assert result.outcome == Outcome.DEPOSIT_CONFIRMED
        assert result.details["reset_installments"] == 1
        first, second, third = await installments_of(db, payment.id)
        assert first.status == EMIStatus.PENDING
        assert first.gateway_payment_id is None
        assert second.status == EMIStatus.PAID
        assert second.gateway_payment_id == "pi_other"
        assert third.status == EMIStatus.PENDING
        assert result.balance.paid_amount == Decimal("5333.33")

    async def test_deposit_sized_event_does_not_settle_installments(
        self, db: AsyncSession, student: Student, make_payment
    ):
        """Test a deposit-sized amount equal to the only installment leaves it pending."""
        payment = await make_payment(total="6000", deposit="3000", installment_count=1)
        event = PaymentEvent.from_intent(intent_payload("pi_deposit", Decimal("3000"), {"paymentId": str(payment.id)}))

        result = await reconciliation.apply_payment_success(db, event)

        assert result.outcome == Outcome.DEPOSIT_CONFIRMED
        assert result.details["classification"] == "deposit"
        installments = await installments_of(db, payment.id)
        assert [emi.status for emi in installments] == [EMIStatus.PENDING]
        assert result.payment.status == PaymentStatus.PARTIAL
        assert result.balance.paid_amount == Decimal("3000")
        assert result.balance.fee_status == FeeStatus.PARTIAL

    async def test_balance_intent_settles_deposit_sized_remainder(
        self, db: AsyncSession, student: Student, make_payment
    ):
        """Test a balance intent whose amount equals the deposit settles the installment."""
        payment = await make_payment(total="6000", deposit="3000", installment_count=1)
        metadata = {"paymentId": str(payment.id), "purpose": "balance"}
        event = PaymentEvent.from_intent(intent_payload("pi_balance", Decimal("3000"), metadata))

        result = await reconciliation.apply_payment_success(db, event)

        assert event.purpose == "balance"
        assert result.outcome == Outcome.PAYMENT_SETTLED
        installments = await installments_of(db, payment.id)
        assert [emi.status for emi in installments] == [EMIStatus.PAID]
        assert result.balance.paid_amount == Decimal("6000")
        assert result.balance.fee_status == FeeStatus.COMPLETE

    async def test_replayed_deposit_is_duplicate(self, db: AsyncSession, student: Student, make_payment):
        """Test the same gateway payment applied twice changes nothing."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        event = PaymentEvent.from_intent(intent_payload("pi_deposit", Decimal("3000"), metadata_for(payment)))

        first = await reconciliation.apply_payment_success(db, event)
        receipt = first.payment.receipt_number
        second = await reconciliation.apply_payment_success(db, event)

        assert second.outcome == Outcome.DUPLICATE
        assert second.payment.receipt_number == receipt
        assert second.balance.paid_amount == first.balance.paid_amount

    async def test_full_settlement(self, db: AsyncSession, student: Student, make_payment):
        """Test the outstanding balance settles every installment and completes the student."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        event = PaymentEvent.from_intent(intent_payload("pi_full", Decimal("7000"), metadata_for(payment)))

        result = await reconciliation.apply_payment_success(db, event)

        assert result.outcome == Outcome.PAYMENT_SETTLED
        assert result.payment.status == PaymentStatus.COMPLETED
        installments = await installments_of(db, payment.id)
        for emi in installments:
            assert emi.status == EMIStatus.PAID
            assert emi.paid_date is not None
            assert emi.transaction_id == "pi_full"
            assert emi.gateway_payment_id == "pi_full"
        assert [emi.receipt_number for emi in installments] == ["EMI000001", "EMI000002", "EMI000003"]

        student = await reload(db, Student, student.id)
        assert student.paid_amount == Decimal("10000")
        assert student.remaining_amount == Decimal("0")
        assert student.fee_status == FeeStatus.COMPLETE
        assert student.status == EnrollmentStatus.ACTIVE
        assert student.next_payment_due is None

    async def test_other_amount_settles_in_order(self, db: AsyncSession, student: Student, make_payment):
        """Test an amount covering one installment settles the earliest one."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        event = PaymentEvent.from_intent(intent_payload("pi_one", Decimal("2333.33"), metadata_for(payment)))

        result = await reconciliation.apply_payment_success(db, event)

        assert result.outcome == Outcome.PARTIAL_APPLIED
        assert result.details["settled_installments"] == 1
        installments = await installments_of(db, payment.id)
        assert [emi.status for emi in installments] == [EMIStatus.PAID, EMIStatus.PENDING, EMIStatus.PENDING]
        assert result.payment.status == PaymentStatus.PARTIAL

    async def test_refunded_payment_rejected(self, db: AsyncSession, student: Student, make_payment):
        """Test money cannot be applied to a refunded payment."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        payment_id = payment.id
        await reconciliation.update_payment_status(db, payment_id, PaymentStatus.REFUNDED)
        event = PaymentEvent.from_intent(intent_payload("pi_late", Decimal("7000"), metadata_for(payment)))

        with pytest.raises(InvalidStateError):
            await reconciliation.apply_payment_success(db, event)

        payment = await reload(db, Payment, payment_id)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.transaction_id is None

    async def test_unmatched_event(self, db: AsyncSession, student: Student, make_payment):
        """Test an event that matches nothing reports the keys it tried."""
        await make_payment()
        event = PaymentEvent.from_intent(intent_payload("pi_unknown", Decimal("100")))

        with pytest.raises(NotFoundError) as exc_info:
            await reconciliation.apply_payment_success(db, event)
        assert exc_info.value.context["attempted"] == {"gateway_payment_id": "pi_unknown"}

    async def test_fallback_to_student(
        self, db: AsyncSession, student: Student, make_payment, caplog: pytest.LogCaptureFixture
    ):
        """Test an event carrying only the student id resolves to their open payment with a warning."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        event = PaymentEvent.from_intent(
            intent_payload("pi_orphan", Decimal("7000"), {"studentId": str(student.id)})
        )

        with caplog.at_level(logging.WARNING, logger="app.services.resolver"):
            result = await reconciliation.apply_payment_success(db, event)

        assert result.payment.id == payment.id
        assert result.outcome == Outcome.PAYMENT_SETTLED
        assert "fallback" in caplog.text


class TestInstallmentSuccess:
    """Tests for success events against one installment."""

    async def test_installment_paid(self, db: AsyncSession, student: Student, make_payment):
        """Test settling one installment."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        first, _, _ = await installments_of(db, payment.id)
        event = PaymentEvent.from_intent(
            intent_payload("pi_emi_1", Decimal("2333.33"), metadata_for(payment, first))
        )

        result = await reconciliation.apply_installment_success(db, event)

        assert result.outcome == Outcome.INSTALLMENT_PAID
        assert result.emi_payment.id == first.id
        assert result.emi_payment.status == EMIStatus.PAID
        assert result.emi_payment.has_settlement_evidence
        assert result.emi_payment.receipt_number == "EMI000001"
        assert result.payment.status == PaymentStatus.PARTIAL
        assert result.balance.paid_amount == Decimal("5333.33")

    async def test_replayed_installment_is_duplicate(self, db: AsyncSession, student: Student, make_payment):
        """Test a replayed installment event keeps a single receipt and balance."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        first, _, _ = await installments_of(db, payment.id)
        event = PaymentEvent.from_intent(
            intent_payload("pi_emi_1", Decimal("2333.33"), metadata_for(payment, first))
        )

        await reconciliation.apply_installment_success(db, event)
        replay = await reconciliation.apply_installment_success(db, event)

        assert replay.outcome == Outcome.DUPLICATE
        assert replay.emi_payment.receipt_number == "EMI000001"
        assert replay.balance.paid_amount == Decimal("5333.33")

    async def test_settled_by_other_transaction(self, db: AsyncSession, student: Student, make_payment):
        """Test an installment paid by another gateway payment is not paid twice."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        first, _, _ = await installments_of(db, payment.id)
        metadata = metadata_for(payment, first)
        await reconciliation.apply_installment_success(
            db, PaymentEvent.from_intent(intent_payload("pi_a", Decimal("2333.33"), metadata))
        )

        with pytest.raises(InvalidStateError):
            await reconciliation.apply_installment_success(
                db, PaymentEvent.from_intent(intent_payload("pi_b", Decimal("2333.33"), metadata))
            )

    async def test_all_installments_complete_payment(
        self, db: AsyncSession, student: Student, make_payment
    ):
        """Test the payment completes once its last installment is paid."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        installments = await installments_of(db, payment.id)

        statuses = []
        for number, emi in enumerate(installments, start=1):
            event = PaymentEvent.from_intent(
                intent_payload(f"pi_emi_{number}", emi.amount, metadata_for(payment, emi))
            )
            result = await reconciliation.apply_installment_success(db, event)
            statuses.append(result.payment.status)

        assert statuses == [
            PaymentStatus.PARTIAL,
            PaymentStatus.PARTIAL,
            PaymentStatus.COMPLETED,
        ]
        assert result.balance.fee_status == FeeStatus.COMPLETE
        assert result.balance.enrollment_status == EnrollmentStatus.ACTIVE

    async def test_deposit_lock(self, db: AsyncSession, student: Student, make_payment):
        """Test installments cannot be settled while a deposit is processing unless overridden."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        payment_id = payment.id
        first, _, _ = await installments_of(db, payment_id)
        first_id = first.id
        event = PaymentEvent.from_intent(
            intent_payload("pi_emi_1", Decimal("2333.33"), metadata_for(payment, first))
        )
        await reconciliation.update_payment_status(db, payment_id, PaymentStatus.PROCESSING)

        with pytest.raises(InvalidStateError) as exc_info:
            await reconciliation.apply_installment_success(db, event)
        assert exc_info.value.context["status"] == PaymentStatus.PROCESSING

        emi = await reload(db, EMIPayment, first_id)
        assert emi.status == EMIStatus.PENDING

        result = await reconciliation.apply_installment_success(db, event, force_override=True)
        assert result.emi_payment.status == EMIStatus.PAID

    async def test_cancelled_installment_rejected(self, db: AsyncSession, student: Student, make_payment):
        """Test a cancelled installment cannot be settled."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        _, _, third = await installments_of(db, payment.id)
        await reconciliation.cancel_installment(db, third.id, reason="Scholarship")
        event = PaymentEvent.from_intent(
            intent_payload("pi_emi_3", Decimal("2333.34"), metadata_for(payment, third))
        )

        with pytest.raises(InvalidStateError):
            await reconciliation.apply_installment_success(db, event)


class TestConcurrentDelivery:
    """Tests for the same event arriving on two connections at once."""

    async def test_same_installment_settled_once(self, db: AsyncSession, student: Student, make_payment):
        """Test two simultaneous deliveries settle the installment once with one receipt."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        first, _, _ = await installments_of(db, payment.id)
        event = PaymentEvent.from_intent(
            intent_payload("pi_emi_1", Decimal("2333.33"), metadata_for(payment, first))
        )

        async def deliver():
            async with test_session_maker() as session:
                return await reconciliation.apply_installment_success(session, event)

        results = await asyncio.gather(deliver(), deliver())

        assert sorted(result.outcome for result in results) == sorted([Outcome.INSTALLMENT_PAID, Outcome.DUPLICATE])
        assert [result.balance.paid_amount for result in results] == [Decimal("5333.33")] * 2

        emi = await reload(db, EMIPayment, first.id)
        assert emi.status == EMIStatus.PAID
        assert emi.receipt_number == "EMI000001"
        receipts = await db.scalar(
            select(func.count()).select_from(EMIPayment).where(EMIPayment.receipt_number.is_not(None))
        )
        assert receipts == 1
        student = await reload(db, Student, student.id)
        assert student.paid_amount == Decimal("5333.33")
        assert student.fee_status == FeeStatus.PARTIAL


class TestFailure:
    """Tests for failure events."""

    async def test_failure_records_details_only(self, db: AsyncSession, student: Student, make_payment):
        """Test a failed attempt is recorded without touching any status."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        first, _, _ = await installments_of(db, payment.id)
        intent = intent_payload(
            "pi_declined",
            Decimal("2333.33"),
            metadata_for(payment, first),
            status="requires_payment_method",
            error_message="Your card was declined.",
        )

        result = await reconciliation.handle_gateway_event(db, webhook_event(intent, EVENT_INTENT_FAILED))

        assert result.outcome == Outcome.FAILURE_RECORDED
        emi = await reload(db, EMIPayment, first.id)
        assert emi.status == EMIStatus.PENDING
        assert emi.notes == "Payment failed: Your card was declined."
        assert "pi_declined" in emi.gateway_response
        payment = await reload(db, Payment, payment.id)
        assert payment.status == PaymentStatus.PARTIAL

    async def test_unmatched_failure(self, db: AsyncSession, student: Student):
        """Test a failure for an unknown intent is acknowledged without changes."""
        intent = intent_payload("pi_nobody", Decimal("10"), status="canceled")
        result = await reconciliation.handle_gateway_event(db, webhook_event(intent, EVENT_INTENT_FAILED))
        assert result.outcome == Outcome.UNMATCHED


class TestHandleGatewayEvent:
    """Tests for webhook dispatch."""

    async def test_unhandled_type_ignored(self, db: AsyncSession, student: Student):
        """Test event types other than success and failure are ignored."""
        intent = intent_payload("pi_x", Decimal("10"))
        result = await reconciliation.handle_gateway_event(db, webhook_event(intent, "charge.refunded"))
        assert result.outcome == Outcome.IGNORED

    async def test_routes_to_installment(self, db: AsyncSession, student: Student, make_payment):
        """Test metadata naming an installment settles that installment."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        _, second, _ = await installments_of(db, payment.id)
        intent = intent_payload("pi_emi_2", Decimal("2333.33"), metadata_for(payment, second))

        result = await reconciliation.handle_gateway_event(db, webhook_event(intent))

        assert result.outcome == Outcome.INSTALLMENT_PAID
        assert result.emi_payment.id == second.id

    async def test_routes_by_recorded_intent(
        self, db: AsyncSession, student: Student, make_payment, fake_gateway: FakeGateway
    ):
        """Test an event without metadata is matched through the intent recorded on an installment."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        first, _, _ = await installments_of(db, payment.id)
        intent = await reconciliation.begin_intent(db, fake_gateway, emi_payment_id=first.id)

        result = await reconciliation.handle_gateway_event(
            db, webhook_event(intent_payload(intent.intent_id, Decimal("2333.33")))
        )

        assert result.outcome == Outcome.INSTALLMENT_PAID
        assert result.emi_payment.id == first.id


class TestBeginIntent:
    """Tests for starting an online payment."""

    async def test_deposit_intent_sets_processing(
        self, db: AsyncSession, student: Student, make_payment, fake_gateway: FakeGateway
    ):
        """Test a deposit intent puts the payment in processing until the gateway reports back."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)

        intent = await reconciliation.begin_intent(
            db, fake_gateway, payment_id=payment.id, purpose=IntentPurpose.DEPOSIT
        )

        assert intent.amount == Decimal("3000")
        assert intent.publishable_key == "pk_test_fake"
        assert fake_gateway.created[0].amount == 300000
        assert fake_gateway.created[0].metadata["paymentId"] == str(payment.id)
        payment = await reload(db, Payment, payment.id)
        assert payment.status == PaymentStatus.PROCESSING
        assert payment.gateway_payment_id == intent.intent_id

        result = await reconciliation.handle_gateway_event(
            db,
            webhook_event(intent_payload(intent.intent_id, Decimal("3000"), fake_gateway.created[0].metadata)),
        )
        assert result.outcome == Outcome.DEPOSIT_CONFIRMED
        assert result.payment.status == PaymentStatus.PARTIAL

    async def test_installment_intent(
        self, db: AsyncSession, student: Student, make_payment, fake_gateway: FakeGateway
    ):
        """Test an installment intent charges the installment amount."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        _, _, third = await installments_of(db, payment.id)

        intent = await reconciliation.begin_intent(db, fake_gateway, emi_payment_id=third.id)

        assert intent.amount == Decimal("2333.34")
        assert intent.emi_payment_id == third.id
        assert fake_gateway.created[0].metadata["emiPaymentId"] == str(third.id)
        emi = await reload(db, EMIPayment, third.id)
        assert emi.gateway_payment_id == intent.intent_id
        assert emi.status == EMIStatus.PENDING

    async def test_closed_payment_rejected(
        self, db: AsyncSession, student: Student, make_payment, fake_gateway: FakeGateway
    ):
        """Test no intent is created for a completed payment."""
        payment = await make_payment(total="5000", deposit="5000", installment_count=None)
        with pytest.raises(InvalidStateError):
            await reconciliation.begin_intent(db, fake_gateway, payment_id=payment.id)
        assert fake_gateway.created == []


class TestManualConfirmation:
    """Tests for administrator confirmation."""

    async def test_confirm_succeeded_intent(
        self, db: AsyncSession, student: Student, make_payment, fake_gateway: FakeGateway
    ):
        """Test a succeeded intent is applied to the named installment."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        first, _, _ = await installments_of(db, payment.id)
        fake_gateway.add_intent("pi_manual", Decimal("2333.33"))

        result = await reconciliation.confirm_manually(db, fake_gateway, "pi_manual", emi_payment_id=first.id)

        assert result.outcome == Outcome.INSTALLMENT_PAID
        assert result.emi_payment.transaction_id == "pi_manual"

    async def test_not_succeeded_rejected(
        self, db: AsyncSession, student: Student, make_payment, fake_gateway: FakeGateway
    ):
        """Test an intent that has not succeeded is refused."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        payment_id = payment.id
        fake_gateway.add_intent("pi_pending", Decimal("7000"), status="processing")

        with pytest.raises(InvalidStateError):
            await reconciliation.confirm_manually(db, fake_gateway, "pi_pending", payment_id=payment_id)

        payment = await reload(db, Payment, payment_id)
        assert payment.transaction_id is None

    async def test_requires_one_target(self, db: AsyncSession, fake_gateway: FakeGateway):
        """Test exactly one of payment or installment must be named."""
        with pytest.raises(PaymentValidationError):
            await reconciliation.confirm_manually(db, fake_gateway, "pi_x")


class TestAdministrativeActions:
    """Tests for status edits, cancellation and deletion."""

    async def test_failed_payment_excluded_from_balance(
        self, db: AsyncSession, student: Student, make_payment
    ):
        """Test marking a payment failed removes its deposit from the balance."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)

        result = await reconciliation.update_payment_status(
            db, payment.id, PaymentStatus.FAILED, note="Cheque bounced"
        )

        assert result.outcome == Outcome.STATUS_UPDATED
        assert result.payment.notes == "Cheque bounced"
        assert result.balance.paid_amount == Decimal("0")
        assert result.balance.fee_status == FeeStatus.PENDING

    async def test_cannot_complete_with_money_outstanding(
        self, db: AsyncSession, student: Student, make_payment
    ):
        """Test a payment cannot be marked completed by hand while installments are open."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        with pytest.raises(InvalidStateError):
            await reconciliation.update_payment_status(db, payment.id, PaymentStatus.COMPLETED)

    async def test_cancel_installment(self, db: AsyncSession, student: Student, make_payment):
        """Test cancelling an open installment."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        _, _, third = await installments_of(db, payment.id)

        result = await reconciliation.cancel_installment(db, third.id, reason="Scholarship")

        assert result.outcome == Outcome.INSTALLMENT_CANCELLED
        assert result.emi_payment.status == EMIStatus.CANCELLED
        assert result.emi_payment.notes == "Scholarship"
        assert result.payment.status == PaymentStatus.PARTIAL

    async def test_cancel_paid_installment_rejected(
        self, db: AsyncSession, student: Student, make_payment
    ):
        """Test a paid installment cannot be cancelled."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        first, _, _ = await installments_of(db, payment.id)
        first_id = first.id
        await reconciliation.apply_installment_success(
            db,
            PaymentEvent.from_intent(intent_payload("pi_emi_1", Decimal("2333.33"), metadata_for(payment, first))),
        )

        with pytest.raises(InvalidStateError):
            await reconciliation.cancel_installment(db, first_id)

    async def test_delete_last_payment(self, db: AsyncSession, student: Student, make_payment):
        """Test deleting a student's only payment clears their fees."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        payment_id = payment.id

        result = await reconciliation.delete_payment(db, payment_id)

        assert result.outcome == Outcome.PAYMENT_DELETED
        assert result.balance.total_fees == Decimal("0")
        assert result.balance.paid_amount == Decimal("0")
        assert await db.get(Payment, payment_id) is None
        assert await installments_of(db, payment_id) == []

    async def test_delete_missing_payment(self, db: AsyncSession):
        """Test deleting an unknown payment."""
        with pytest.raises(NotFoundError):
            await reconciliation.delete_payment(db, uuid4())


class TestSettlementEvidence:
    """Tests for the paid-installment evidence guard."""

    async def test_mark_paid_requires_all_evidence(self, db: AsyncSession, student: Student, make_payment):
        """Test an installment cannot be marked paid with missing evidence."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        first, _, _ = await installments_of(db, payment.id)

        with pytest.raises(ConsistencyError):
            first.mark_paid(datetime.now(timezone.utc), "pi_x", None)
        assert first.status == EMIStatus.PENDING

    async def test_flush_rejects_paid_without_evidence(
        self, db: AsyncSession, student: Student, make_payment
    ):
        """Test a paid status set directly is refused at write time."""
        payment = await make_payment(total="10000", deposit="3000", installment_count=3)
        first, _, _ = await installments_of(db, payment.id)
        first_id = first.id

        first.status = EMIStatus.PAID
        with pytest.raises(ConsistencyError):
            await db.flush()
        await db.rollback()

        emi = await reload(db, EMIPayment, first_id)
        assert emi.status == EMIStatus.PENDING
