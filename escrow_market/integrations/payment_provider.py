"""
Payment provider boundary.

The escrow core talks to the external payment processor only through
``PaymentProvider``. The Stripe adapter lives in ``stripe_client``.
"""
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

PAYMENT_SUCCEEDED = "payment_intent.succeeded"


class ProviderError(Exception):
    """Raised when the payment provider rejects or cannot serve a request."""

    pass


@dataclass(frozen=True)
class PaymentIntent:
    """Result of creating a payment intent."""

    provider_ref: str
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class ProviderEvent:
    """A verified inbound webhook event."""

    id: str
    type: str
    provider_ref: Optional[str] = None
    order_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class TransferResult:
    """Outcome of an outbound money movement (transfer or refund)."""

    success: bool
    provider_ref: Optional[str] = None
    error: Optional[str] = None


class PaymentProvider(ABC):
    """Abstract payment processor used by the escrow engines."""

    name: str = "provider"

    @abstractmethod
    async def create_intent(
        self, amount_cents: int, currency: str, order_id: uuid.UUID
    ) -> PaymentIntent:
        """Create a payment intent for an order."""

    @abstractmethod
    def parse_event(self, raw_body: bytes, signature: str) -> ProviderEvent:
        """
        Verify a webhook delivery and decode it.

        Raises:
            SignatureInvalid: If the signature does not match the raw body
        """

    @abstractmethod
    async def transfer(
        self,
        destination: str,
        amount_cents: int,
        currency: str,
        order_id: uuid.UUID,
    ) -> TransferResult:
        """Move settled funds to a seller account. Failures are returned, not raised."""

    @abstractmethod
    async def refund(self, provider_ref: str, order_id: uuid.UUID) -> TransferResult:
        """Refund a captured payment in full. Failures are returned, not raised."""
