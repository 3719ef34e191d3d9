"""
Single-item cart keyed by buyer.

The cart holds no money state. Checkout hands the listing to the lifecycle
engine, which re-validates it.
"""
import uuid
from typing import Optional

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_market.core.authorization import Action, Principal, authorize
from escrow_market.core.errors import NotFound, SelfTrade, Unavailable
from escrow_market.core.order_lifecycle import CreatedOrder, OrderLifecycleEngine
from escrow_market.database.models import CartItem, Listing, ListingStatus, utcnow

logger = structlog.get_logger(__name__)


class CartStore:
    def __init__(self, lifecycle: OrderLifecycleEngine):
        self.lifecycle = lifecycle

    async def add(
        self, db: AsyncSession, principal: Principal, listing_id: uuid.UUID
    ) -> CartItem:
        """
        Put a listing in the caller's cart, replacing whatever was there.

        Raises:
            NotFound: If the listing does not exist
            Unavailable: If the listing is not available
            SelfTrade: If the caller owns the listing
        """
        authorize(principal, Action.USE_CART)

        listing = await self.lifecycle.catalog.get_listing(db, listing_id)
        if listing is None:
            raise NotFound(f"Listing {listing_id} not found")
        if listing.status != ListingStatus.AVAILABLE:
            raise Unavailable("Listing is not available")
        if listing.seller_id == principal.user_id:
            raise SelfTrade("Cannot add your own listing to the cart")

        item = await db.get(CartItem, principal.user_id)
        if item is None:
            item = CartItem(buyer_id=principal.user_id, listing_id=listing_id)
            db.add(item)
        else:
            item.listing_id = listing_id
            item.added_at = utcnow()
        await db.commit()

        logger.info("cart_item_added", buyer_id=str(principal.user_id), listing_id=str(listing_id))
        return item

    async def remove(
        self, db: AsyncSession, principal: Principal, listing_id: uuid.UUID
    ) -> None:
        """Remove the listing if it is the current item; otherwise do nothing."""
        authorize(principal, Action.USE_CART)
        await db.execute(
            delete(CartItem).where(
                CartItem.buyer_id == principal.user_id,
                CartItem.listing_id == listing_id,
            )
        )
        await db.commit()

    async def get(self, db: AsyncSession, principal: Principal) -> Optional[Listing]:
        """Current cart listing; a listing that became unavailable is dropped."""
        authorize(principal, Action.USE_CART)

        item = await db.get(CartItem, principal.user_id)
        if item is None:
            return None

        listing = await self.lifecycle.catalog.get_listing(db, item.listing_id)
        if listing is None or listing.status != ListingStatus.AVAILABLE:
            await db.delete(item)
            await db.commit()
            logger.info("cart_item_expired", buyer_id=str(principal.user_id))
            return None
        return listing

    async def checkout(self, db: AsyncSession, principal: Principal) -> CreatedOrder:
        """
        Create an order for the cart's listing and empty the cart.

        Raises:
            NotFound: If the cart is empty
        """
        authorize(principal, Action.USE_CART)

        item = await db.get(CartItem, principal.user_id)
        if item is None:
            raise NotFound("Cart is empty")
        listing_id = item.listing_id

        created = await self.lifecycle.create_order(db, listing_id, principal)

        await db.execute(delete(CartItem).where(CartItem.buyer_id == principal.user_id))
        await db.commit()

        logger.info(
            "cart_checked_out",
            buyer_id=str(principal.user_id),
            order_id=str(created.order.id),
        )
        return created
