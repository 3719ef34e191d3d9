"""
Dispute resolution engine.

A dispute freezes an order out of automatic settlement until an admin
decides who gets the money.
"""
import uuid
from enum import Enum
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_market.core.authorization import Action, Principal, Resource, authorize
from escrow_market.core.errors import Conflict, InvalidState, NotFound
from escrow_market.core.order_lifecycle import OrderLifecycleEngine, transition
from escrow_market.database.models import (
    Dispute,
    DisputeStatus,
    Listing,
    Order,
    OrderStatus,
    ReconciliationKind,
    Transaction,
    TransactionStatus,
)
from escrow_market.integrations.payment_provider import ProviderError, TransferResult
from escrow_market.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DISPUTABLE_STATES = frozenset({OrderStatus.PAID, OrderStatus.DELIVERED})


class Resolution(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    REFUND = "refund"


class DisputeEngine:
    """Opens and resolves disputes, then moves the money accordingly."""

    def __init__(self, lifecycle: OrderLifecycleEngine):
        """
        Initialize the dispute engine.

        Args:
            lifecycle: Lifecycle engine used for seller settlement transfers
        """
        self.lifecycle = lifecycle
        self.provider = lifecycle.provider
        self.ledger = lifecycle.ledger

    async def open_dispute(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        principal: Principal,
        reason: str,
    ) -> Dispute:
        """
        Open a dispute and flip the order to ``disputed`` atomically.

        Raises:
            NotFound: If the order does not exist
            Forbidden: If the caller is neither buyer nor seller
            InvalidState: If the order is not ``paid`` or ``delivered``
            Conflict: If the order already has a dispute
        """
        result = await db.execute(select(Order).where(Order.id == order_id).with_for_update())
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFound(f"Order {order_id} not found")

        seller_id = (
            await db.execute(select(Listing.seller_id).where(Listing.id == order.listing_id))
        ).scalar_one()
        authorize(
            principal,
            Action.OPEN_DISPUTE,
            Resource(buyer_id=order.buyer_id, seller_id=seller_id),
            order_id=str(order_id),
        )

        existing = await db.execute(select(Dispute.id).where(Dispute.order_id == order_id))
        if existing.first() is not None:
            raise Conflict("Order already has a dispute", order_id=str(order_id))
        if order.status not in DISPUTABLE_STATES:
            raise InvalidState(
                f"Cannot dispute a {order.status.value} order", order_id=str(order_id)
            )

        dispute = Dispute(
            order_id=order.id,
            opener_id=principal.user_id,
            reason=reason,
            status=DisputeStatus.OPEN,
        )
        db.add(dispute)
        transition(order, OrderStatus.DISPUTED)

        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise Conflict("Order already has a dispute", order_id=str(order_id))

        metrics.record_dispute("opened")
        logger.info(
            "dispute_opened",
            dispute_id=str(dispute.id),
            order_id=str(order_id),
            opener_id=str(principal.user_id),
        )
        return dispute

    async def resolve_dispute(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        principal: Principal,
        resolution: Resolution,
    ) -> Dispute:
        """
        Decide an open dispute.

        ``seller`` completes the order and transfers the net amount to the
        seller. ``buyer`` and ``refund`` refund the order in full. Money
        moves after the state change commits; a provider failure is queued
        for reconciliation and the decision stands.

        Raises:
            Forbidden: If the caller is not an admin
            NotFound: If the order has no dispute
            InvalidState: If the dispute is no longer open
        """
        authorize(principal, Action.RESOLVE_DISPUTE, order_id=str(order_id))
        resolution = Resolution(resolution)

        result = await db.execute(
            select(Dispute).where(Dispute.order_id == order_id).with_for_update()
        )
        dispute = result.scalar_one_or_none()
        if dispute is None:
            raise NotFound(f"No dispute for order {order_id}")
        if dispute.status != DisputeStatus.OPEN:
            raise InvalidState(
                f"Dispute already {dispute.status.value}", order_id=str(order_id)
            )

        order = (
            await db.execute(select(Order).where(Order.id == order_id).with_for_update())
        ).scalar_one()

        if resolution == Resolution.SELLER:
            dispute.status = DisputeStatus.RESOLVED_SELLER
            transition(order, OrderStatus.COMPLETE)
        else:
            dispute.status = DisputeStatus.REFUNDED
            transition(order, OrderStatus.REFUNDED)
        dispute.resolved_by = principal.user_id
        await db.commit()

        metrics.record_dispute(resolution.value)
        logger.info(
            "dispute_resolved",
            dispute_id=str(dispute.id),
            order_id=str(order_id),
            resolution=resolution.value,
            resolved_by=str(principal.user_id),
        )

        if resolution == Resolution.SELLER:
            await self.lifecycle.release_funds(db, order)
        else:
            await self._refund(db, order)
        return dispute

    async def _refund(self, db: AsyncSession, order: Order) -> None:
        txn = (
            await db.execute(
                select(Transaction)
                .where(
                    Transaction.order_id == order.id,
                    Transaction.status == TransactionStatus.SUCCEEDED,
                )
                .order_by(Transaction.updated_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()

        if txn is None:
            outcome = TransferResult(success=False, error="no captured payment to refund")
        else:
            try:
                outcome = await self.provider.refund(txn.provider_ref, order.id)
            except ProviderError as e:
                outcome = TransferResult(success=False, error=str(e))
            except Exception as e:
                logger.error("refund_error", order_id=str(order.id), exc_info=True)
                outcome = TransferResult(success=False, error=f"{type(e).__name__}: {e}")

        if outcome.success:
            logger.info(
                "refund_succeeded",
                order_id=str(order.id),
                provider_ref=outcome.provider_ref,
            )
            return

        await self.ledger.record(
            db,
            ReconciliationKind.REFUND_FAILED,
            order_id=order.id,
            listing_id=order.listing_id,
            details={"total_cents": order.total_cents, "error": outcome.error},
        )
        await db.commit()
        logger.error("refund_failed", order_id=str(order.id), error=outcome.error)

    async def list_disputes(
        self,
        db: AsyncSession,
        principal: Principal,
        status: Optional[DisputeStatus] = None,
    ) -> List[Dispute]:
        """Admin view of disputes, newest first."""
        authorize(principal, Action.LIST_DISPUTES)

        stmt = select(Dispute).order_by(Dispute.created_at.desc())
        if status is not None:
            stmt = stmt.where(Dispute.status == status)
        result = await db.execute(stmt)
        return list(result.scalars().all())
