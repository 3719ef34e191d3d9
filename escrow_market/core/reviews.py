"""
Buyer reviews of sellers.

A review hangs off an order the buyer has received: one per order, rating
1 to 5. The seller's average is computed from the review rows on read.
"""
import uuid
from dataclasses import dataclass
from typing import List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_market.core.authorization import Action, Principal, Resource, authorize
from escrow_market.core.errors import Conflict, InvalidAmount, InvalidState, NotFound
from escrow_market.core.order_lifecycle import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from escrow_market.database.models import Listing, Order, OrderStatus, Review
from escrow_market.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MIN_RATING = 1
MAX_RATING = 5
REVIEWABLE_STATES = frozenset({OrderStatus.DELIVERED, OrderStatus.COMPLETE})


@dataclass
class SellerReviews:
    items: List[Review]
    total: int
    page: int
    page_size: int
    average_rating: Optional[float]

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.page_size)


class ReviewService:
    async def create_review(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        principal: Principal,
        rating: int,
        comment: str = "",
    ) -> Review:
        """
        Record the buyer's review of a delivered or completed order.

        Raises:
            InvalidAmount: If the rating is outside 1..5
            NotFound: If the order does not exist
            Forbidden: If the caller is not the order's buyer
            InvalidState: If the order has not been delivered or completed
            Conflict: If the order already has a review
        """
        if not MIN_RATING <= rating <= MAX_RATING:
            raise InvalidAmount(
                f"Rating must be between {MIN_RATING} and {MAX_RATING}", rating=rating
            )

        row = (
            await db.execute(
                select(Order, Listing.seller_id)
                .join(Listing, Order.listing_id == Listing.id)
                .where(Order.id == order_id)
            )
        ).first()
        if row is None:
            raise NotFound(f"Order {order_id} not found")
        order, seller_id = row

        authorize(
            principal,
            Action.REVIEW_ORDER,
            Resource(buyer_id=order.buyer_id, seller_id=seller_id),
            order_id=str(order_id),
        )
        if order.status not in REVIEWABLE_STATES:
            raise InvalidState(
                f"Cannot review a {order.status.value} order", order_id=str(order_id)
            )

        review = Review(
            order_id=order.id,
            seller_id=seller_id,
            buyer_id=principal.user_id,
            rating=rating,
            comment=comment,
        )
        db.add(review)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise Conflict("Order already has a review", order_id=str(order_id))

        metrics.record_review(rating)
        logger.info(
            "review_created",
            review_id=str(review.id),
            order_id=str(order_id),
            seller_id=str(seller_id),
            rating=rating,
        )
        return review

    async def seller_reviews(
        self,
        db: AsyncSession,
        seller_id: uuid.UUID,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> SellerReviews:
        """Reviews of a seller, newest first, with the average over all of them."""
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        total, average = (
            await db.execute(
                select(func.count(Review.id), func.avg(Review.rating)).where(
                    Review.seller_id == seller_id
                )
            )
        ).one()
        result = await db.execute(
            select(Review)
            .where(Review.seller_id == seller_id)
            .order_by(Review.created_at.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        )
        return SellerReviews(
            items=list(result.scalars().all()),
            total=int(total),
            page=page,
            page_size=page_size,
            average_rating=round(float(average), 2) if average is not None else None,
        )
