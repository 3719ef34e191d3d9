"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from escrow_market.core.disputes import Resolution
from escrow_market.core.payouts import PayoutAction
from escrow_market.database.models import (
    DisputeStatus,
    ListingStatus,
    OrderStatus,
    PayoutStatus,
    ReconciliationKind,
    ReconciliationState,
)


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    listing_id: UUID = Field(..., description="Listing to buy")

    model_config = {
        "json_schema_extra": {
            "examples": [{"listing_id": "123e4567-e89b-12d3-a456-426614174000"}]
        }
    }


class OrderResponse(BaseModel):
    """Order as seen by a participant."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    buyer_id: UUID
    listing_id: UUID
    total_cents: int
    currency: str
    status: OrderStatus
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    credentials: Optional[str] = Field(
        default=None,
        description="Seller credentials, present only for the buyer of a paid order",
    )


class OrderListResponse(BaseModel):
    """A page of the caller's orders."""

    items: List[OrderResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class CreateOrderResponse(BaseModel):
    """Response schema for order creation."""

    order: OrderResponse
    client_secret: Optional[str] = Field(
        default=None, description="Client secret for confirming the payment"
    )


class OpenDisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000, description="Why the order is contested")

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        """Reject whitespace-only reasons."""
        if not v.strip():
            raise ValueError("Reason must not be blank")
        return v.strip()


class ResolveDisputeRequest(BaseModel):
    resolution: Resolution = Field(..., description="buyer, seller or refund")


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    opener_id: UUID
    reason: str
    status: DisputeStatus
    resolved_by: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5, description="Rating from 1 to 5")
    comment: str = Field(default="", max_length=2000)

    @field_validator("comment")
    @classmethod
    def strip_comment(cls, v: str) -> str:
        return v.strip()


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    seller_id: UUID
    buyer_id: UUID
    rating: int
    comment: str
    created_at: datetime


class SellerReviewsResponse(BaseModel):
    """A page of a seller's reviews and their average over all reviews."""

    seller_id: UUID
    items: List[ReviewResponse]
    total: int
    page: int
    page_size: int
    total_pages: int
    average_rating: Optional[float] = None


class BalanceResponse(BaseModel):
    """Seller balance in cents."""

    seller_id: UUID
    available_cents: int
    pending_cents: int


class PayoutRequest(BaseModel):
    amount_cents: int = Field(..., description="Amount to withdraw in cents")


class ProcessPayoutRequest(BaseModel):
    action: PayoutAction = Field(..., description="mark_paid or fail")
    provider_ref: Optional[str] = Field(
        default=None, max_length=255, description="Provider payout reference"
    )


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    seller_id: UUID
    amount_cents: int
    status: PayoutStatus
    provider_ref: Optional[str] = None
    processed_by: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime


class StorePayloadRequest(BaseModel):
    credentials: str = Field(..., min_length=1, max_length=10_000, description="Credential text")


class ListingStatusRequest(BaseModel):
    status: ListingStatus


class ListingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    seller_id: UUID
    title: str
    price_cents: int
    currency: str
    status: ListingStatus
    has_secure_payload: bool


class CartRequest(BaseModel):
    listing_id: UUID


class CartResponse(BaseModel):
    listing: Optional[ListingResponse] = None


class ReconciliationEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: ReconciliationKind
    order_id: Optional[UUID] = None
    listing_id: Optional[UUID] = None
    details: Dict[str, Any]
    status: ReconciliationState
    resolved_by: Optional[UUID] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None


class ReconciliationListResponse(BaseModel):
    events: List[ReconciliationEventResponse]
    count: int


class SweepResponse(BaseModel):
    """Summary of one expiry sweep."""

    selected: int
    settled: int
    skipped: int
    errors: int


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="success, duplicate or ignored")
    event_id: str = Field(..., description="Provider event ID")
    event_type: Optional[str] = Field(default=None, description="Event type")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Handler result")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    """Error body returned for every domain error."""

    error: str = Field(..., description="Error kind")
    message: str = Field(..., description="Human-readable message")
