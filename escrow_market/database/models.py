"""SQLAlchemy ledger models for the escrow market."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timestamp column that always binds and returns aware UTC datetimes."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


JSONType = JSON().with_variant(JSONB(), "postgresql")


class UserRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class ListingStatus(str, Enum):
    AVAILABLE = "available"
    SOLD = "sold"
    DELISTED = "delisted"


class OrderStatus(str, Enum):
    """
    Order lifecycle states.

    State machine:
    PENDING → PAID → DELIVERED → COMPLETE
               ↓         ↓
               DISPUTED ─┴→ COMPLETE | REFUNDED
    """

    PENDING = "pending"
    PAID = "paid"
    DELIVERED = "delivered"
    DISPUTED = "disputed"
    COMPLETE = "complete"
    REFUNDED = "refunded"


class TransactionStatus(str, Enum):
    INITIATED = "initiated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DisputeStatus(str, Enum):
    OPEN = "open"
    RESOLVED_BUYER = "resolved_buyer"
    RESOLVED_SELLER = "resolved_seller"
    REFUNDED = "refunded"


class PayoutStatus(str, Enum):
    REQUESTED = "requested"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class TransferStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReconciliationKind(str, Enum):
    DOUBLE_SALE = "double_sale"
    TRANSFER_FAILED = "transfer_failed"
    REFUND_FAILED = "refund_failed"
    UNMATCHED_PAYMENT = "unmatched_payment"


class ReconciliationState(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


def _enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """
    Marketplace participants as resolved by the identity service.

    The core only reads this table: existence checks and the connected
    account that settlement transfers are sent to.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    role: Mapped[UserRole] = mapped_column(_enum(UserRole, "user_role"), nullable=False)
    payout_account_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, role={self.role})>"


class Listing(Base):
    """Seller-owned sellable unit."""

    __tablename__ = "listings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[ListingStatus] = mapped_column(
        _enum(ListingStatus, "listing_status"),
        nullable=False,
        default=ListingStatus.AVAILABLE,
        index=True,
    )
    has_secure_payload: Mapped[bool] = mapped_column(nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("price_cents > 0", name="listing_positive_price"),
        CheckConstraint("length(currency) = 3", name="listing_valid_currency"),
    )

    def __repr__(self) -> str:
        return f"<Listing(id={self.id}, seller_id={self.seller_id}, status={self.status})>"


class SecurePayload(Base):
    """
    Encrypted credential blob for a listing.

    The data key is random per write and stored wrapped by the vault master key.
    """

    __tablename__ = "listing_secure_payloads"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id"), nullable=False, unique=True
    )
    cipher_text: Mapped[str] = mapped_column(Text, nullable=False)
    nonce: Mapped[str] = mapped_column(String(64), nullable=False)
    wrapped_key: Mapped[str] = mapped_column(String(128), nullable=False)
    key_nonce: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Order(Base):
    """
    Central ledger entity.

    Mutated only by the lifecycle engine, the dispute engine and the
    expiry sweeper. Never deleted.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id"), nullable=False, index=True
    )
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.PENDING
    )
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("total_cents > 0", name="order_positive_total"),
        Index("idx_orders_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, buyer_id={self.buyer_id}, "
            f"total={self.total_cents}, status={self.status})>"
        )


class Transaction(Base):
    """
    Append-only payment record, many per order.

    Moved to a terminal status exactly once by the webhook path.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_ref: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        _enum(TransactionStatus, "transaction_status"),
        nullable=False,
        default=TransactionStatus.INITIATED,
    )
    provider_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, order_id={self.order_id}, "
            f"ref={self.provider_ref}, status={self.status})>"
        )


class Dispute(Base):
    """At most one per order; resolved only by an admin."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, unique=True
    )
    opener_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DisputeStatus] = mapped_column(
        _enum(DisputeStatus, "dispute_status"), nullable=False, default=DisputeStatus.OPEN
    )
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class Payout(Base):
    """Seller-initiated withdrawal request."""

    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(
        _enum(PayoutStatus, "payout_status"), nullable=False, default=PayoutStatus.REQUESTED
    )
    provider_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="payout_positive_amount"),
        Index("idx_payouts_seller_status", "seller_id", "status"),
    )


class SettlementTransfer(Base):
    """One row per transfer attempt made when an order settles."""

    __tablename__ = "settlement_transfers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    seller_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    gross_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    net_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[TransferStatus] = mapped_column(
        _enum(TransferStatus, "transfer_status"), nullable=False
    )
    provider_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class ReconciliationEvent(Base):
    """
    Operational queue for anomalies that need out-of-band handling.

    Double sales, failed settlement transfers and failed refunds land here
    instead of being dropped.
    """

    __tablename__ = "reconciliation_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[ReconciliationKind] = mapped_column(
        _enum(ReconciliationKind, "reconciliation_kind"), nullable=False, index=True
    )
    order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    listing_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[ReconciliationState] = mapped_column(
        _enum(ReconciliationState, "reconciliation_state"),
        nullable=False,
        default=ReconciliationState.OPEN,
        index=True,
    )
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<ReconciliationEvent(id={self.id}, kind={self.kind}, status={self.status})>"


class CartItem(Base):
    """Single-item cart, keyed by buyer."""

    __tablename__ = "cart_items"

    buyer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), primary_key=True)
    listing_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("listings.id"), nullable=False)
    added_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)



class Review(Base):
    """Buyer feedback on a delivered or completed order, one per order."""

    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, unique=True
    )
    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    buyer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="review_rating_range"),
    )

    def __repr__(self) -> str:
        return f"<Review(id={self.id}, order_id={self.order_id}, rating={self.rating})>"
