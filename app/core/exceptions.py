"""Domain error taxonomy for the reconciliation core.

Every error carries a ``context`` dict with the ids and values involved so a
support desk can diagnose a failure from the response alone.
"""

from typing import Any


class LedgerError(Exception):
    """Base class for all fee ledger errors."""

    status_code: int = 500
    error: str = "ledger_error"

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = {key: _jsonable(value) for key, value in context.items()}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error, "detail": self.detail, "context": self.context}


class NotFoundError(LedgerError):
    """Lookup failed, including after the resolver fallback chain."""

    status_code = 404
    error = "not_found"


class InvalidStateError(LedgerError):
    """Operation not allowed in the entity's current state."""

    status_code = 400
    error = "invalid_state"


class PaymentValidationError(LedgerError):
    """Input rejected before any write."""

    status_code = 422
    error = "validation_error"


class GatewayError(LedgerError):
    """Payment gateway unreachable or returned an error."""

    status_code = 502
    error = "gateway_error"


class GatewaySignatureError(GatewayError):
    """Webhook signature could not be verified."""

    status_code = 400
    error = "invalid_signature"


class ConsistencyError(LedgerError):
    """Stored ledger state disagrees with what the ledger rules require."""

    status_code = 500
    error = "consistency_error"


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if hasattr(value, "value"):
        return value.value
    return str(value)
