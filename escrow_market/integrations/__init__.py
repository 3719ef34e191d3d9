"""Payment provider integrations."""
from .payment_provider import (
    PAYMENT_SUCCEEDED,
    PaymentIntent,
    PaymentProvider,
    ProviderError,
    ProviderEvent,
    TransferResult,
)

__all__ = [
    "PAYMENT_SUCCEEDED",
    "PaymentIntent",
    "PaymentProvider",
    "ProviderError",
    "ProviderEvent",
    "TransferResult",
]
