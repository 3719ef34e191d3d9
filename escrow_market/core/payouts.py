"""
Seller balances and payout requests.

Balances are derived from the ledger on every read, never cached:
- available: completed order totals minus every payout that has not failed
- pending: delivered order totals still inside the dispute window
"""
import secrets
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_market.config import Settings, get_settings
from escrow_market.core.authorization import Action, Principal, Resource, authorize
from escrow_market.core.errors import InvalidAmount, InvalidState, NotFound
from escrow_market.database.models import (
    Listing,
    Order,
    OrderStatus,
    Payout,
    PayoutStatus,
    User,
)
from escrow_market.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PayoutAction(str, Enum):
    MARK_PAID = "mark_paid"
    FAIL = "fail"


@dataclass(frozen=True)
class Balance:
    seller_id: uuid.UUID
    available_cents: int
    pending_cents: int


class PayoutEngine:
    """Computes seller balances and runs the payout request lifecycle."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def _order_total(
        self, db: AsyncSession, seller_id: uuid.UUID, status: OrderStatus
    ) -> int:
        stmt = (
            select(func.coalesce(func.sum(Order.total_cents), 0))
            .join(Listing, Listing.id == Order.listing_id)
            .where(Listing.seller_id == seller_id, Order.status == status)
        )
        return int((await db.execute(stmt)).scalar_one())

    async def _committed_payouts(self, db: AsyncSession, seller_id: uuid.UUID) -> int:
        stmt = select(func.coalesce(func.sum(Payout.amount_cents), 0)).where(
            Payout.seller_id == seller_id,
            Payout.status != PayoutStatus.FAILED,
        )
        return int((await db.execute(stmt)).scalar_one())

    async def balance(self, db: AsyncSession, seller_id: uuid.UUID) -> Balance:
        """
        Compute a seller's balance.

        Args:
            db: Database session
            seller_id: Seller to compute for

        Returns:
            Balance: Available and pending amounts in cents
        """
        completed = await self._order_total(db, seller_id, OrderStatus.COMPLETE)
        paid_out = await self._committed_payouts(db, seller_id)
        pending = await self._order_total(db, seller_id, OrderStatus.DELIVERED)
        return Balance(
            seller_id=seller_id,
            available_cents=completed - paid_out,
            pending_cents=pending,
        )

    async def balance_for(
        self,
        db: AsyncSession,
        principal: Principal,
        seller_id: Optional[uuid.UUID] = None,
    ) -> Balance:
        """Balance as visible to the caller (the seller themselves or an admin)."""
        seller_id = seller_id or principal.user_id
        authorize(principal, Action.VIEW_BALANCE, Resource(seller_id=seller_id))
        return await self.balance(db, seller_id)

    async def request_payout(
        self, db: AsyncSession, principal: Principal, amount_cents: int
    ) -> Payout:
        """
        Request a withdrawal from the available balance.

        The seller row is locked while the balance is computed, so two
        concurrent requests cannot both spend the same funds.

        Raises:
            Forbidden: If the caller is not a seller
            InvalidAmount: If the amount is not positive, above the ceiling,
                or above the available balance
            NotFound: If the seller does not exist
        """
        authorize(
            principal,
            Action.REQUEST_PAYOUT,
            Resource(seller_id=principal.user_id),
            amount_cents=amount_cents,
        )

        if amount_cents <= 0:
            raise InvalidAmount("Payout amount must be positive")
        if amount_cents > self.settings.payout_max_cents:
            raise InvalidAmount(
                f"Payout amount exceeds maximum of {self.settings.payout_max_cents} cents"
            )

        result = await db.execute(
            select(User).where(User.id == principal.user_id).with_for_update()
        )
        if result.scalar_one_or_none() is None:
            raise NotFound(f"Seller {principal.user_id} not found")

        current = await self.balance(db, principal.user_id)
        if amount_cents > current.available_cents:
            logger.warning(
                "payout_exceeds_balance",
                seller_id=str(principal.user_id),
                amount_cents=amount_cents,
                available_cents=current.available_cents,
            )
            raise InvalidAmount("Payout amount exceeds available balance")

        payout = Payout(
            seller_id=principal.user_id,
            amount_cents=amount_cents,
            status=PayoutStatus.REQUESTED,
        )
        db.add(payout)
        await db.commit()

        metrics.record_payout(PayoutStatus.REQUESTED.value)
        logger.info(
            "payout_requested",
            payout_id=str(payout.id),
            seller_id=str(principal.user_id),
            amount_cents=amount_cents,
        )
        return payout

    async def process_payout(
        self,
        db: AsyncSession,
        payout_id: uuid.UUID,
        principal: Principal,
        action: PayoutAction,
        provider_ref: Optional[str] = None,
    ) -> Payout:
        """
        Admin decision on a requested payout.

        Raises:
            Forbidden: If the caller is not an admin
            NotFound: If the payout does not exist
            InvalidState: If the payout is no longer ``requested``
        """
        authorize(principal, Action.PROCESS_PAYOUT, payout_id=str(payout_id))
        action = PayoutAction(action)

        result = await db.execute(select(Payout).where(Payout.id == payout_id).with_for_update())
        payout = result.scalar_one_or_none()
        if payout is None:
            raise NotFound(f"Payout {payout_id} not found")
        if payout.status != PayoutStatus.REQUESTED:
            raise InvalidState(f"Payout already {payout.status.value}")

        if action == PayoutAction.MARK_PAID:
            payout.status = PayoutStatus.PAID
            payout.provider_ref = provider_ref or f"po_{secrets.token_hex(12)}"
        else:
            payout.status = PayoutStatus.FAILED
            payout.provider_ref = None
        payout.processed_by = principal.user_id
        await db.commit()

        metrics.record_payout(payout.status.value)
        logger.info(
            "payout_processed",
            payout_id=str(payout_id),
            status=payout.status.value,
            provider_ref=payout.provider_ref,
            processed_by=str(principal.user_id),
        )
        return payout
