"""Payment gateway adapter.

The reconciliation core talks to the gateway only through ``PaymentGateway``.
Amounts cross this boundary in minor currency units (paisa, cents).
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe

from app.core.config import settings
from app.core.exceptions import GatewayError, GatewaySignatureError
from app.models.payment import GatewayProvider

logger = logging.getLogger(__name__)

INTENT_SUCCEEDED = "succeeded"
EVENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_INTENT_FAILED = "payment_intent.payment_failed"

MINOR_UNITS = Decimal(100)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to integer minor units."""
    return int((Decimal(amount) * MINOR_UNITS).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    """Convert integer minor units back to a two-place major-unit amount."""
    return (Decimal(int(amount)) / MINOR_UNITS).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class GatewayIntent:
    """Provider-side attempt to collect money."""

    id: str
    status: str
    amount: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)
    client_secret: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == INTENT_SUCCEEDED


@dataclass(frozen=True)
class GatewayEvent:
    """A verified webhook event."""

    type: str
    data: dict[str, Any]
    id: str | None = None

    @property
    def intent(self) -> dict[str, Any]:
        return self.data.get("object", {})


@dataclass(frozen=True)
class SavedPaymentMethod:
    """A card the customer saved with the provider."""

    id: str
    type: str
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None


class PaymentGateway(ABC):
    """Narrow interface the reconciliation core uses to reach the provider."""

    provider: GatewayProvider
    publishable_key: str = ""

    @abstractmethod
    async def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        description: str | None = None,
    ) -> GatewayIntent:
        """Create an intent for ``amount`` minor units."""

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        """Fetch the current state of an intent."""

    @abstractmethod
    async def create_customer(
        self,
        name: str,
        email: str | None,
        phone: str | None,
        metadata: dict[str, str],
    ) -> str:
        """Register a customer and return the provider's customer id."""

    @abstractmethod
    async def list_payment_methods(self, customer_id: str, method_type: str = "card") -> list[SavedPaymentMethod]:
        """Payment methods saved for a customer."""

    @abstractmethod
    def verify_and_parse_event(
        self,
        raw_body: bytes,
        signature_header: str | None,
        webhook_secret: str,
    ) -> GatewayEvent:
        """Verify a webhook signature and parse the event. Raises GatewaySignatureError."""


def parse_event(raw_body: bytes) -> GatewayEvent:
    """Parse a webhook body into a GatewayEvent of plain dicts."""
    try:
        body = json.loads(raw_body)
    except ValueError:
        raise GatewaySignatureError("Webhook body is not valid JSON")
    if not isinstance(body, dict) or "type" not in body:
        raise GatewaySignatureError("Webhook body has no event type")
    return GatewayEvent(type=body["type"], data=body.get("data") or {}, id=body.get("id"))


def construct_event(
    raw_body: bytes,
    signature_header: str | None,
    webhook_secret: str,
    tolerance: int,
) -> GatewayEvent:
    """Check the Stripe-Signature header with the Stripe SDK and parse the body."""
    if not webhook_secret:
        raise GatewaySignatureError("Webhook secret is not configured")
    if not signature_header:
        raise GatewaySignatureError("Missing signature header")

    try:
        stripe.Webhook.construct_event(raw_body, signature_header, webhook_secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as e:
        raise GatewaySignatureError("Signature verification failed", reason=str(e)) from e
    except ValueError as e:
        raise GatewaySignatureError("Webhook body is not valid JSON") from e

    # The ledger stores intents as JSON, so it gets plain dicts, not StripeObjects
    return parse_event(raw_body)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    value = getattr(obj, name, None)
    return default if value is None else value


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents, Customers and PaymentMethods through the Stripe SDK."""

    provider = GatewayProvider.STRIPE

    def __init__(
        self,
        secret_key: str,
        publishable_key: str = "",
        api_version: str | None = None,
        max_network_retries: int = 0,
        webhook_tolerance: int = 300,
    ) -> None:
        self.secret_key = secret_key
        self.publishable_key = publishable_key
        self.api_version = api_version
        self.max_network_retries = max_network_retries
        self.webhook_tolerance = webhook_tolerance

    def _options(self) -> dict[str, Any]:
        """Request options passed with every SDK call."""
        if not self.secret_key:
            logger.error("Stripe secret key not configured")
            raise GatewayError("Payment gateway is not properly configured")
        options: dict[str, Any] = {
            "api_key": self.secret_key,
            "max_network_retries": self.max_network_retries,
        }
        if self.api_version:
            options["stripe_version"] = self.api_version
        return options

    @staticmethod
    def _error(action: str, e: stripe.StripeError) -> GatewayError:
        message = e.user_message or str(e) or "Unknown error"
        logger.error("Stripe %s failed: %s", action, message)
        if isinstance(e, stripe.APIConnectionError):
            return GatewayError("Payment service connection error", action=action, reason=message)
        return GatewayError(
            f"Gateway request failed: {message}",
            action=action,
            status=e.http_status,
            code=e.code,
        )

    @staticmethod
    def _to_intent(intent: Any) -> GatewayIntent:
        metadata = _field(intent, "metadata", {})
        return GatewayIntent(
            id=intent.id,
            status=_field(intent, "status", ""),
            amount=int(_field(intent, "amount_received") or _field(intent, "amount", 0)),
            currency=str(_field(intent, "currency", "")).upper(),
            metadata={str(key): str(value) for key, value in metadata.items()},
            client_secret=_field(intent, "client_secret"),
        )

    async def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        description: str | None = None,
    ) -> GatewayIntent:
        params: dict[str, Any] = {"amount": amount, "currency": currency.lower(), "metadata": metadata}
        if description:
            params["description"] = description
        try:
            intent = await stripe.PaymentIntent.create_async(**params, **self._options())
        except stripe.StripeError as e:
            raise self._error("create payment intent", e) from e
        result = self._to_intent(intent)
        logger.info("Created Stripe intent %s for %s %s", result.id, amount, currency)
        return result

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        try:
            intent = await stripe.PaymentIntent.retrieve_async(intent_id, **self._options())
        except stripe.StripeError as e:
            raise self._error("retrieve payment intent", e) from e
        return self._to_intent(intent)

    async def create_customer(
        self,
        name: str,
        email: str | None,
        phone: str | None,
        metadata: dict[str, str],
    ) -> str:
        params: dict[str, Any] = {"name": name, "metadata": metadata}
        if email:
            params["email"] = email
        if phone:
            params["phone"] = phone
        try:
            customer = await stripe.Customer.create_async(**params, **self._options())
        except stripe.StripeError as e:
            raise self._error("create customer", e) from e
        logger.info("Created Stripe customer %s", customer.id)
        return customer.id

    async def list_payment_methods(self, customer_id: str, method_type: str = "card") -> list[SavedPaymentMethod]:
        try:
            methods = await stripe.PaymentMethod.list_async(
                customer=customer_id,
                type=method_type,
                **self._options(),
            )
        except stripe.StripeError as e:
            raise self._error("list payment methods", e) from e

        saved = []
        for method in methods.data:
            card = _field(method, "card")
            saved.append(
                SavedPaymentMethod(
                    id=method.id,
                    type=_field(method, "type", method_type),
                    brand=_field(card, "brand"),
                    last4=_field(card, "last4"),
                    exp_month=_field(card, "exp_month"),
                    exp_year=_field(card, "exp_year"),
                )
            )
        return saved

    def verify_and_parse_event(
        self,
        raw_body: bytes,
        signature_header: str | None,
        webhook_secret: str,
    ) -> GatewayEvent:
        return construct_event(raw_body, signature_header, webhook_secret, self.webhook_tolerance)


def get_stripe_gateway() -> StripeGateway:
    """Build the gateway from settings."""
    return StripeGateway(
        secret_key=settings.STRIPE_SECRET_KEY,
        publishable_key=settings.STRIPE_PUBLISHABLE_KEY,
        api_version=settings.STRIPE_API_VERSION or None,
        max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
        webhook_tolerance=settings.WEBHOOK_TOLERANCE_SECONDS,
    )
