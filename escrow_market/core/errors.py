"""Error kinds raised by the escrow core."""
from typing import Any, Dict


class MarketError(Exception):
    """Base exception for escrow core errors."""

    kind = "error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class NotFound(MarketError):
    """Missing listing, order, payout, dispute or user."""

    kind = "not_found"


class Forbidden(MarketError):
    """Role or ownership violation."""

    kind = "forbidden"


class InvalidState(MarketError):
    """Operation not legal for the current status."""

    kind = "invalid_state"


class Conflict(MarketError):
    """Duplicate dispute or payload."""

    kind = "conflict"


class InvalidAmount(MarketError):
    kind = "invalid_amount"


class SignatureInvalid(MarketError):
    """Webhook authenticity check failed."""

    kind = "signature_invalid"


class AlreadyProcessed(MarketError):
    """
    Idempotent no-op.

    Callers surface this as success, never as an error.
    """

    kind = "already_processed"


class Unavailable(MarketError):
    """Listing is not available for new orders."""

    kind = "unavailable"


class SelfTrade(MarketError):
    """Buyer and seller are the same user."""

    kind = "self_trade"
