"""
Order lifecycle engine.

Owns the order state machine and every transition that money depends on:
1. Order creation with a payment intent
2. Idempotent payment confirmation from webhooks
3. Delivery acknowledgment and credential disclosure
4. Settlement with the seller transfer
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_market.config import Settings, get_settings
from escrow_market.core.authorization import Action, Principal, Resource, authorize
from escrow_market.core.catalog import CatalogService
from escrow_market.core.errors import (
    AlreadyProcessed,
    InvalidState,
    NotFound,
    SelfTrade,
    Unavailable,
)
from escrow_market.core.reconciliation import ReconciliationLedger
from escrow_market.core.vault import SecurePayloadVault
from escrow_market.database.models import (
    Dispute,
    Listing,
    ListingStatus,
    Order,
    OrderStatus,
    ReconciliationKind,
    SettlementTransfer,
    Transaction,
    TransactionStatus,
    TransferStatus,
    User,
    utcnow,
)
from escrow_market.integrations.payment_provider import PaymentProvider, ProviderError
from escrow_market.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID}),
    OrderStatus.PAID: frozenset({OrderStatus.DELIVERED, OrderStatus.DISPUTED, OrderStatus.COMPLETE}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.DISPUTED, OrderStatus.COMPLETE}),
    OrderStatus.DISPUTED: frozenset({OrderStatus.COMPLETE, OrderStatus.REFUNDED}),
    OrderStatus.COMPLETE: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

DISCLOSURE_STATES = frozenset({OrderStatus.PAID, OrderStatus.DELIVERED, OrderStatus.COMPLETE})
SETTLEABLE_STATES = frozenset({OrderStatus.PAID, OrderStatus.DELIVERED})

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[current]


def transition(order: Order, target: OrderStatus) -> None:
    """
    Move an order along one edge of the state graph.

    Raises:
        InvalidState: If the edge is not in ``ORDER_TRANSITIONS``
    """
    current = order.status
    if not can_transition(current, target):
        raise InvalidState(
            f"Order cannot move from {current.value} to {target.value}",
            order_id=str(order.id),
        )
    order.status = target
    metrics.record_transition(current.value, target.value)
    logger.info(
        "order_transitioned",
        order_id=str(order.id),
        from_status=current.value,
        to_status=target.value,
    )


def platform_fee(total_cents: int, fee_bps: int) -> int:
    """Platform fee in integer minor units, rounded down."""
    return total_cents * fee_bps // 10_000


@dataclass
class CreatedOrder:
    """A new pending order and the secret the client uses to pay it."""

    order: Order
    client_secret: Optional[str]


@dataclass
class OrderPage:
    """One page of a participant's orders, newest first."""

    items: List[Order]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.page_size)


@dataclass
class OrderView:
    """Order as shown to a participant, with credentials when disclosed."""

    order: Order
    credentials: Optional[str]


async def _lock_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    result = await db.execute(select(Order).where(Order.id == order_id).with_for_update())
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    return order


async def _listing_seller(db: AsyncSession, listing_id: uuid.UUID) -> uuid.UUID:
    result = await db.execute(select(Listing.seller_id).where(Listing.id == listing_id))
    return result.scalar_one()


class OrderLifecycleEngine:
    """
    Escrow state machine over orders.

    Every status change goes through ``transition``; every mutating method
    runs in one database transaction with its guarded rows locked.
    """

    def __init__(
        self,
        provider: PaymentProvider,
        vault: Optional[SecurePayloadVault] = None,
        ledger: Optional[ReconciliationLedger] = None,
        settings: Optional[Settings] = None,
        catalog: Optional[CatalogService] = None,
    ):
        """
        Initialize the lifecycle engine.

        Args:
            provider: Payment provider used for intents and transfers
            vault: Secure payload vault used for disclosure
            ledger: Reconciliation ledger for anomalies
            settings: Optional settings override
            catalog: Listing reads for new orders
        """
        self.settings = settings or get_settings()
        self.provider = provider
        self.vault = vault or SecurePayloadVault(self.settings.master_key_bytes)
        self.ledger = ledger or ReconciliationLedger()
        self.catalog = catalog or CatalogService()

    async def create_order(
        self, db: AsyncSession, listing_id: uuid.UUID, principal: Principal
    ) -> CreatedOrder:
        """
        Create a pending order for a listing and open a payment intent.

        Competing pending orders on one listing are allowed; the first
        confirmed payment sells the listing.

        Raises:
            Forbidden: If the caller may not buy
            NotFound: If the listing does not exist
            Unavailable: If the listing is not available
            SelfTrade: If the caller is the listing's seller
        """
        authorize(principal, Action.CREATE_ORDER, listing_id=str(listing_id))

        listing = await self.catalog.get_listing(db, listing_id)
        if listing is None:
            raise NotFound(f"Listing {listing_id} not found")
        if listing.status != ListingStatus.AVAILABLE:
            raise Unavailable("Listing is not available")
        if listing.seller_id == principal.user_id:
            raise SelfTrade("Cannot buy your own listing")

        order = Order(
            buyer_id=principal.user_id,
            listing_id=listing.id,
            total_cents=listing.price_cents,
            currency=listing.currency,
            status=OrderStatus.PENDING,
        )
        db.add(order)
        await db.flush()

        try:
            intent = await self.provider.create_intent(
                listing.price_cents, listing.currency, order.id
            )
        except Exception:
            await db.rollback()
            logger.error(
                "payment_intent_failed",
                listing_id=str(listing_id),
                buyer_id=str(principal.user_id),
                exc_info=True,
            )
            raise

        db.add(
            Transaction(
                order_id=order.id,
                provider=self.provider.name,
                provider_ref=intent.provider_ref,
                amount_cents=order.total_cents,
                status=TransactionStatus.INITIATED,
            )
        )
        await db.commit()

        metrics.record_order_created(order.currency)
        logger.info(
            "order_created",
            order_id=str(order.id),
            listing_id=str(listing.id),
            buyer_id=str(principal.user_id),
            total_cents=order.total_cents,
            provider_ref=intent.provider_ref,
        )
        return CreatedOrder(order=order, client_secret=intent.client_secret)

    async def _lock_transaction(
        self,
        db: AsyncSession,
        order_id: Optional[uuid.UUID],
        provider_ref: Optional[str],
    ) -> Optional[Transaction]:
        stmt = select(Transaction).with_for_update()
        if provider_ref is not None:
            stmt = stmt.where(Transaction.provider_ref == provider_ref)
        elif order_id is not None:
            stmt = stmt.where(Transaction.order_id == order_id).order_by(
                Transaction.created_at.desc()
            )
        else:
            return None
        result = await db.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def confirm_payment(
        self,
        db: AsyncSession,
        provider_event_id: str,
        order_id: Optional[uuid.UUID] = None,
        provider_ref: Optional[str] = None,
    ) -> Order:
        """
        Apply a successful payment exactly once.

        Within one transaction: the transaction row becomes ``succeeded``,
        the order becomes ``paid``, the listing becomes ``sold`` and the
        buyer verification window starts.

        Args:
            db: Database session
            provider_event_id: Webhook event id
            order_id: Order from the intent metadata (optional if provider_ref given)
            provider_ref: Provider payment reference

        Returns:
            Order: The paid order

        Raises:
            NotFound: If neither the order nor the transaction can be found
            AlreadyProcessed: If the transaction already succeeded
        """
        txn = await self._lock_transaction(db, order_id, provider_ref)
        if order_id is None:
            if txn is None:
                raise NotFound(f"No transaction for provider reference {provider_ref}")
            order_id = txn.order_id
        elif txn is not None and txn.order_id != order_id:
            raise NotFound(
                f"Provider reference {provider_ref} does not belong to order {order_id}"
            )

        order = await _lock_order(db, order_id)

        if txn is None:
            if provider_ref is None:
                raise NotFound(f"No transaction for order {order_id}")
            txn = Transaction(
                order_id=order.id,
                provider=self.provider.name,
                provider_ref=provider_ref,
                amount_cents=order.total_cents,
                status=TransactionStatus.INITIATED,
            )
            db.add(txn)

        if txn.status == TransactionStatus.SUCCEEDED:
            logger.info(
                "payment_already_confirmed",
                order_id=str(order.id),
                provider_event_id=provider_event_id,
                original_event_id=txn.provider_event_id,
            )
            raise AlreadyProcessed("Payment already confirmed", order_id=str(order.id))

        txn.status = TransactionStatus.SUCCEEDED
        txn.provider_event_id = provider_event_id

        if order.status != OrderStatus.PENDING:
            await self.ledger.record(
                db,
                ReconciliationKind.UNMATCHED_PAYMENT,
                order_id=order.id,
                listing_id=order.listing_id,
                details={
                    "order_status": order.status.value,
                    "provider_ref": txn.provider_ref,
                    "provider_event_id": provider_event_id,
                },
            )
            await db.commit()
            logger.warning(
                "payment_for_non_pending_order",
                order_id=str(order.id),
                order_status=order.status.value,
            )
            return order

        result = await db.execute(
            select(Listing).where(Listing.id == order.listing_id).with_for_update()
        )
        listing = result.scalar_one()

        if listing.status == ListingStatus.SOLD:
            await self.ledger.record(
                db,
                ReconciliationKind.DOUBLE_SALE,
                order_id=order.id,
                listing_id=listing.id,
                details={
                    "provider_ref": txn.provider_ref,
                    "provider_event_id": provider_event_id,
                    "total_cents": order.total_cents,
                },
            )
            metrics.record_double_sale()
            logger.warning(
                "double_sale_detected",
                order_id=str(order.id),
                listing_id=str(listing.id),
            )

        listing.status = ListingStatus.SOLD
        transition(order, OrderStatus.PAID)
        order.expires_at = utcnow() + timedelta(
            hours=self.settings.buyer_verification_window_hours
        )
        await db.commit()

        logger.info(
            "payment_confirmed",
            order_id=str(order.id),
            listing_id=str(listing.id),
            provider_event_id=provider_event_id,
            expires_at=order.expires_at.isoformat(),
        )
        return order

    async def acknowledge_delivery(
        self, db: AsyncSession, order_id: uuid.UUID, principal: Principal
    ) -> Order:
        """
        Buyer confirms the credentials work; the dispute window starts now.

        Raises:
            NotFound: If the order does not exist
            Forbidden: If the caller is not the buyer
            InvalidState: If the order is not ``paid``
        """
        order = await _lock_order(db, order_id)
        authorize(
            principal,
            Action.ACKNOWLEDGE_DELIVERY,
            Resource(buyer_id=order.buyer_id),
            order_id=str(order_id),
        )
        if order.status != OrderStatus.PAID:
            raise InvalidState(
                f"Cannot acknowledge delivery of a {order.status.value} order",
                order_id=str(order_id),
            )

        transition(order, OrderStatus.DELIVERED)
        order.expires_at = utcnow() + timedelta(hours=self.settings.dispute_window_hours)
        await db.commit()

        logger.info(
            "delivery_acknowledged",
            order_id=str(order_id),
            expires_at=order.expires_at.isoformat(),
        )
        return order

    async def disclosed_credentials(
        self, db: AsyncSession, order_id: uuid.UUID, principal: Principal
    ) -> Optional[str]:
        """
        Credentials for the buyer of a paid order, otherwise None.

        Withheld state is reported as absence, never as an error, so the
        response does not reveal why.
        """
        order = await db.get(Order, order_id)
        if order is None:
            return None
        if principal.user_id != order.buyer_id:
            return None
        if order.status not in DISCLOSURE_STATES:
            return None
        return await self.vault.reveal(db, order.listing_id)

    async def get_order(
        self, db: AsyncSession, order_id: uuid.UUID, principal: Principal
    ) -> OrderView:
        """
        Fetch an order for a participant or admin.

        Raises:
            NotFound: If the order does not exist
            Forbidden: If the caller is not the buyer, seller or an admin
        """
        order = await db.get(Order, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")

        seller_id = await _listing_seller(db, order.listing_id)
        authorize(
            principal,
            Action.VIEW_ORDER,
            Resource(buyer_id=order.buyer_id, seller_id=seller_id),
            order_id=str(order_id),
        )
        credentials = await self.disclosed_credentials(db, order_id, principal)
        return OrderView(order=order, credentials=credentials)

    async def list_orders(
        self,
        db: AsyncSession,
        principal: Principal,
        status: Optional[OrderStatus] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> OrderPage:
        """
        Orders the caller bought, or that were placed on the caller's listings.

        Credentials are never attached here; they are served per order.

        Raises:
            Forbidden: If the caller is an admin
        """
        authorize(principal, Action.LIST_OWN_ORDERS)
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        condition = or_(
            Order.buyer_id == principal.user_id, Listing.seller_id == principal.user_id
        )
        if status is not None:
            condition = and_(condition, Order.status == OrderStatus(status))

        total = (
            await db.execute(
                select(func.count(Order.id))
                .select_from(Order)
                .join(Listing, Order.listing_id == Listing.id)
                .where(condition)
            )
        ).scalar_one()
        result = await db.execute(
            select(Order)
            .join(Listing, Order.listing_id == Listing.id)
            .where(condition)
            .order_by(Order.created_at.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        )
        return OrderPage(
            items=list(result.scalars().all()),
            total=int(total),
            page=page,
            page_size=page_size,
        )

    async def settle(
        self, db: AsyncSession, order_id: uuid.UUID, now: Optional[datetime] = None
    ) -> bool:
        """
        Complete an expired order and pay the seller.

        The dispute check, state check and ``complete`` transition share one
        transaction with the order row locked. Returns False without
        changing anything when the order is not settleable.
        """
        now = now or utcnow()
        order = await _lock_order(db, order_id)

        dispute = await db.execute(select(Dispute.id).where(Dispute.order_id == order_id))
        if dispute.first() is not None:
            await db.rollback()
            logger.info("settlement_skipped_disputed", order_id=str(order_id))
            return False
        if order.status not in SETTLEABLE_STATES:
            await db.rollback()
            return False
        if order.expires_at is None or order.expires_at > now:
            await db.rollback()
            return False

        transition(order, OrderStatus.COMPLETE)
        await db.commit()

        logger.info("order_settled", order_id=str(order_id))
        await self.release_funds(db, order)
        return True

    async def release_funds(self, db: AsyncSession, order: Order) -> SettlementTransfer:
        """
        Transfer ``total - fee`` for a completed order to its seller.

        Runs after the ``complete`` commit. The attempt is recorded either
        way; a failure is queued for reconciliation and never reverts the
        order.
        """
        seller_id = await _listing_seller(db, order.listing_id)
        seller = await db.get(User, seller_id)
        fee = platform_fee(order.total_cents, self.settings.platform_fee_bps)
        net = order.total_cents - fee

        destination = seller.payout_account_ref if seller is not None else None
        if destination is None:
            succeeded, provider_ref, error = False, None, "seller has no payout account"
        else:
            try:
                result = await self.provider.transfer(destination, net, order.currency, order.id)
                succeeded, provider_ref, error = result.success, result.provider_ref, result.error
            except ProviderError as e:
                succeeded, provider_ref, error = False, None, str(e)
            except Exception as e:
                logger.error(
                    "settlement_transfer_error", order_id=str(order.id), exc_info=True
                )
                succeeded, provider_ref, error = False, None, f"{type(e).__name__}: {e}"

        record = SettlementTransfer(
            order_id=order.id,
            seller_id=seller_id,
            gross_cents=order.total_cents,
            fee_cents=fee,
            net_cents=net,
            status=TransferStatus.SUCCEEDED if succeeded else TransferStatus.FAILED,
            provider_ref=provider_ref,
            error=error,
        )
        db.add(record)

        if succeeded:
            logger.info(
                "settlement_transfer_succeeded",
                order_id=str(order.id),
                net_cents=net,
                fee_cents=fee,
                provider_ref=provider_ref,
            )
        else:
            await self.ledger.record(
                db,
                ReconciliationKind.TRANSFER_FAILED,
                order_id=order.id,
                listing_id=order.listing_id,
                details={"net_cents": net, "error": error},
            )
            logger.error(
                "settlement_transfer_failed",
                order_id=str(order.id),
                net_cents=net,
                error=error,
            )

        await db.commit()
        metrics.record_settlement_transfer(record.status.value, net)
        return record
