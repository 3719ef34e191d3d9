"""
Pytest configuration and fixtures.
"""
import base64
import hashlib
import hmac
import json
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncGenerator, List, Optional, Tuple

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("VAULT_MASTER_KEY", base64.b64encode(b"k" * 32).decode("ascii"))
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("SWEEPER_ENABLED", "false")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from escrow_market.config import Settings, get_settings
from escrow_market.core.authorization import Principal
from escrow_market.core.order_lifecycle import OrderLifecycleEngine
from escrow_market.database.connection import make_session_factory
from escrow_market.database.models import Base, Listing, ListingStatus, Order, User, UserRole
from escrow_market.integrations.payment_provider import (
    PAYMENT_SUCCEEDED,
    PaymentIntent,
    TransferResult,
)
from escrow_market.integrations.stripe_client import StripeClient


class FakeProvider(StripeClient):
    """
    Stripe client with outbound calls replaced by in-memory records.

    Webhook verification is inherited, so tests sign events the way Stripe does.
    """

    name = "fake"

    def __init__(self, settings: Optional[Settings] = None) -> None:
        super().__init__(settings)
        self.intents: List[Tuple[int, str, uuid.UUID]] = []
        self.transfers: List[Tuple[str, int, str, uuid.UUID]] = []
        self.refunds: List[Tuple[str, uuid.UUID]] = []
        self.fail_transfers = False
        self.fail_refunds = False

    async def create_intent(
        self, amount_cents: int, currency: str, order_id: uuid.UUID
    ) -> PaymentIntent:
        self.intents.append((amount_cents, currency, order_id))
        ref = f"pi_{uuid.uuid4().hex[:24]}"
        return PaymentIntent(provider_ref=ref, client_secret=f"{ref}_secret_test")

    async def transfer(
        self, destination: str, amount_cents: int, currency: str, order_id: uuid.UUID
    ) -> TransferResult:
        self.transfers.append((destination, amount_cents, currency, order_id))
        if self.fail_transfers:
            return TransferResult(success=False, error="transfer declined")
        return TransferResult(success=True, provider_ref=f"tr_{uuid.uuid4().hex[:24]}")

    async def refund(self, provider_ref: str, order_id: uuid.UUID) -> TransferResult:
        self.refunds.append((provider_ref, order_id))
        if self.fail_refunds:
            return TransferResult(success=False, error="refund declined")
        return TransferResult(success=True, provider_ref=f"re_{uuid.uuid4().hex[:24]}")


def sign_payload(payload: str, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(
    order_id: Optional[uuid.UUID],
    provider_ref: str,
    event_id: Optional[str] = None,
    event_type: str = PAYMENT_SUCCEEDED,
) -> str:
    """Serialized Stripe-style event for a PaymentIntent."""
    metadata = {"order_id": str(order_id)} if order_id else {}
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "data": {"object": {"id": provider_ref, "object": "payment_intent", "metadata": metadata}},
        }
    )


@dataclass
class Market:
    """Seeded participants and one available listing."""

    buyer: Principal
    seller: Principal
    admin: Principal
    stranger: Principal
    listing_id: uuid.UUID


@pytest.fixture
def test_settings() -> Settings:
    """Settings loaded from the test environment."""
    return get_settings()


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine so separate sessions share one database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def provider(test_settings: Settings) -> FakeProvider:
    return FakeProvider(test_settings)


@pytest.fixture
def lifecycle(provider: FakeProvider, test_settings: Settings) -> OrderLifecycleEngine:
    return OrderLifecycleEngine(provider, settings=test_settings)


async def add_user(
    session_factory: async_sessionmaker[AsyncSession],
    role: UserRole,
    payout_account_ref: Optional[str] = None,
) -> Principal:
    user_id = uuid.uuid4()
    async with session_factory() as db:
        db.add(
            User(
                id=user_id,
                email=f"{user_id.hex[:12]}@example.com",
                role=role,
                payout_account_ref=payout_account_ref,
            )
        )
        await db.commit()
    return Principal(user_id=user_id, role=role)


async def add_listing(
    session_factory: async_sessionmaker[AsyncSession],
    seller: Principal,
    price_cents: int = 1999,
    status: ListingStatus = ListingStatus.AVAILABLE,
) -> uuid.UUID:
    listing_id = uuid.uuid4()
    async with session_factory() as db:
        db.add(
            Listing(
                id=listing_id,
                seller_id=seller.user_id,
                title="Premium streaming account",
                price_cents=price_cents,
                currency="USD",
                status=status,
            )
        )
        await db.commit()
    return listing_id


async def fetch(session_factory: async_sessionmaker[AsyncSession], model: Any, ident: Any) -> Any:
    """Load a row in a fresh session, bypassing any identity map."""
    async with session_factory() as db:
        return await db.get(model, ident)


@pytest_asyncio.fixture
async def market(session_factory: async_sessionmaker[AsyncSession]) -> Market:
    buyer = await add_user(session_factory, UserRole.BUYER)
    seller = await add_user(session_factory, UserRole.SELLER, payout_account_ref="acct_seller_test")
    admin = await add_user(session_factory, UserRole.ADMIN)
    stranger = await add_user(session_factory, UserRole.BUYER)
    listing_id = await add_listing(session_factory, seller)
    return Market(buyer=buyer, seller=seller, admin=admin, stranger=stranger, listing_id=listing_id)


async def create_paid_order(
    lifecycle: OrderLifecycleEngine,
    session_factory: async_sessionmaker[AsyncSession],
    listing_id: uuid.UUID,
    buyer: Principal,
) -> Order:
    """Create an order and confirm its payment."""
    async with session_factory() as db:
        created = await lifecycle.create_order(db, listing_id, buyer)
    async with session_factory() as db:
        return await lifecycle.confirm_payment(
            db, f"evt_{uuid.uuid4().hex[:24]}", order_id=created.order.id
        )
