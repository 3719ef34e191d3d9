"""
FastAPI dependencies: caller identity and service wiring.

Services are cheap to build and hold no request state, so they are created
per request from the shared provider. Tests override ``get_provider``.
"""
import uuid
from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status

from escrow_market.config import get_settings
from escrow_market.core.authorization import Principal
from escrow_market.core.cart import CartStore
from escrow_market.core.catalog import CatalogService
from escrow_market.core.disputes import DisputeEngine
from escrow_market.core.order_lifecycle import OrderLifecycleEngine
from escrow_market.core.payouts import PayoutEngine
from escrow_market.core.reconciliation import ReconciliationLedger
from escrow_market.core.reviews import ReviewService
from escrow_market.core.vault import SecurePayloadVault
from escrow_market.database.connection import get_session_factory
from escrow_market.database.models import UserRole
from escrow_market.integrations.payment_provider import PaymentProvider
from escrow_market.integrations.webhook_handler import WebhookHandler
from escrow_market.workers.expiry_sweeper import ExpirySweeper


def get_principal(request: Request) -> Principal:
    """
    Caller identity resolved upstream and forwarded in headers.

    Raises:
        HTTPException: 401 if the headers are missing or malformed
    """
    settings = get_settings()
    raw_id = request.headers.get(settings.user_id_header)
    raw_role = request.headers.get(settings.user_role_header)
    if not raw_id or not raw_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller identity"
        )
    try:
        return Principal(user_id=uuid.UUID(raw_id), role=UserRole(raw_role.lower()))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Malformed caller identity"
        )


@lru_cache()
def build_provider() -> PaymentProvider:
    """Process-wide payment provider (keeps one circuit breaker)."""
    from escrow_market.integrations.stripe_client import StripeClient

    return StripeClient()


def get_catalog() -> CatalogService:
    return CatalogService()


def build_lifecycle() -> OrderLifecycleEngine:
    return OrderLifecycleEngine(build_provider())


def get_provider() -> PaymentProvider:
    return build_provider()


def get_lifecycle(
    provider: PaymentProvider = Depends(get_provider),
    catalog: CatalogService = Depends(get_catalog),
) -> OrderLifecycleEngine:
    return OrderLifecycleEngine(provider, catalog=catalog)


def get_webhook_handler(
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
) -> WebhookHandler:
    return WebhookHandler(lifecycle)


def get_dispute_engine(
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
) -> DisputeEngine:
    return DisputeEngine(lifecycle)


def get_payout_engine() -> PayoutEngine:
    return PayoutEngine()


def get_vault() -> SecurePayloadVault:
    return SecurePayloadVault()


def get_cart(lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)) -> CartStore:
    return CartStore(lifecycle)


def get_ledger() -> ReconciliationLedger:
    return ReconciliationLedger()


def get_review_service() -> ReviewService:
    return ReviewService()


def get_sweeper(lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)) -> ExpirySweeper:
    return ExpirySweeper(lifecycle, session_factory=get_session_factory())
