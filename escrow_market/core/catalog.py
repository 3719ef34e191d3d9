"""Listing reads and seller-side listing status changes."""
import uuid
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_market.core.authorization import Action, Principal, Resource, authorize
from escrow_market.core.errors import InvalidState, NotFound
from escrow_market.database.models import Listing, ListingStatus

logger = structlog.get_logger(__name__)


class CatalogService:
    """Catalog glue the escrow core reads listings through."""

    async def get_listing(self, db: AsyncSession, listing_id: uuid.UUID) -> Optional[Listing]:
        return await db.get(Listing, listing_id)

    async def set_listing_status(
        self,
        db: AsyncSession,
        listing_id: uuid.UUID,
        principal: Principal,
        status: ListingStatus,
    ) -> Listing:
        """
        Seller toggles a listing between available and delisted.

        Only a confirmed payment marks a listing sold, and a sold listing is
        frozen for its seller.

        Raises:
            NotFound: If the listing does not exist
            Forbidden: If the caller does not own the listing
            InvalidState: If setting or leaving ``sold``
        """
        status = ListingStatus(status)
        result = await db.execute(
            select(Listing).where(Listing.id == listing_id).with_for_update()
        )
        listing = result.scalar_one_or_none()
        if listing is None:
            raise NotFound(f"Listing {listing_id} not found")

        authorize(
            principal,
            Action.MANAGE_LISTING,
            Resource(seller_id=listing.seller_id),
            listing_id=str(listing_id),
        )

        if status == ListingStatus.SOLD:
            raise InvalidState("Listings are marked sold only by a confirmed payment")
        if listing.status == ListingStatus.SOLD:
            raise InvalidState("Sold listings cannot be changed")

        previous = listing.status
        listing.status = status
        await db.commit()

        logger.info(
            "listing_status_changed",
            listing_id=str(listing_id),
            from_status=previous.value,
            to_status=status.value,
        )
        return listing
