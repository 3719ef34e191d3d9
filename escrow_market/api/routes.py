"""
API routes for the escrow market.

Domain errors propagate to the ``MarketError`` handler in ``main``; routes
only log and shape responses.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_market.core.authorization import Action, Principal, authorize
from escrow_market.core.cart import CartStore
from escrow_market.core.catalog import CatalogService
from escrow_market.core.disputes import DisputeEngine
from escrow_market.core.order_lifecycle import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    OrderLifecycleEngine,
)
from escrow_market.core.payouts import PayoutEngine
from escrow_market.core.reconciliation import ReconciliationLedger
from escrow_market.core.reviews import ReviewService
from escrow_market.core.vault import SecurePayloadVault
from escrow_market.database.connection import get_db
from escrow_market.database.models import DisputeStatus, Order, OrderStatus
from escrow_market.integrations.webhook_handler import WebhookHandler
from escrow_market.monitoring.health import HealthCheck
from escrow_market.workers.expiry_sweeper import ExpirySweeper

from .dependencies import (
    get_cart,
    get_catalog,
    get_dispute_engine,
    get_ledger,
    get_lifecycle,
    get_payout_engine,
    get_principal,
    get_review_service,
    get_sweeper,
    get_vault,
    get_webhook_handler,
)
from .schemas import (
    BalanceResponse,
    CartRequest,
    CartResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    DisputeResponse,
    HealthCheckResponse,
    ListingResponse,
    ListingStatusRequest,
    OpenDisputeRequest,
    OrderListResponse,
    OrderResponse,
    PayoutRequest,
    PayoutResponse,
    ProcessPayoutRequest,
    ReconciliationEventResponse,
    ReconciliationListResponse,
    ResolveDisputeRequest,
    ReviewRequest,
    ReviewResponse,
    SellerReviewsResponse,
    StorePayloadRequest,
    SweepResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
seller_router = APIRouter(tags=["sellers"])
listing_router = APIRouter(prefix="/listings", tags=["listings"])
cart_router = APIRouter(prefix="/cart", tags=["cart"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


def _order_response(order: Order, credentials: Optional[str] = None) -> OrderResponse:
    response = OrderResponse.model_validate(order)
    response.credentials = credentials
    return response


@order_router.post(
    "",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Create a pending order for a listing and open a payment intent",
)
async def create_order(
    request: CreateOrderRequest,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
    db: AsyncSession = Depends(get_db),
) -> CreateOrderResponse:
    """Create a new order."""
    logger.info(
        "api_create_order_request",
        listing_id=str(request.listing_id),
        user_id=str(principal.user_id),
    )
    created = await lifecycle.create_order(db, request.listing_id, principal)
    return CreateOrderResponse(
        order=_order_response(created.order), client_secret=created.client_secret
    )


@order_router.get(
    "",
    response_model=OrderListResponse,
    summary="List my orders",
    description="Orders the caller bought or sold, newest first, optionally filtered by status",
)
async def list_my_orders(
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
    db: AsyncSession = Depends(get_db),
) -> OrderListResponse:
    result = await lifecycle.list_orders(db, principal, order_status, page, page_size)
    return OrderListResponse(
        items=[_order_response(order) for order in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
    )


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get an order",
    description="Order details; credentials are included only for the buyer of a paid order",
)
async def get_order(
    order_id: UUID,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    view = await lifecycle.get_order(db, order_id, principal)
    return _order_response(view.order, view.credentials)


@order_router.post(
    "/{order_id}/acknowledge",
    response_model=OrderResponse,
    summary="Acknowledge delivery",
)
async def acknowledge_delivery(
    order_id: UUID,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    order = await lifecycle.acknowledge_delivery(db, order_id, principal)
    logger.info("api_delivery_acknowledged", order_id=str(order_id))
    return _order_response(order)


@order_router.post(
    "/{order_id}/dispute",
    response_model=DisputeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a dispute",
)
async def open_dispute(
    order_id: UUID,
    request: OpenDisputeRequest,
    principal: Principal = Depends(get_principal),
    disputes: DisputeEngine = Depends(get_dispute_engine),
    db: AsyncSession = Depends(get_db),
) -> Any:
    dispute = await disputes.open_dispute(db, order_id, principal, request.reason)
    return DisputeResponse.model_validate(dispute)


@order_router.post(
    "/{order_id}/review",
    response_model=ReviewResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Review an order",
    description="Buyer rates the seller of a delivered or completed order, once per order",
)
async def create_review(
    order_id: UUID,
    request: ReviewRequest,
    principal: Principal = Depends(get_principal),
    reviews: ReviewService = Depends(get_review_service),
    db: AsyncSession = Depends(get_db),
) -> Any:
    review = await reviews.create_review(db, order_id, principal, request.rating, request.comment)
    return ReviewResponse.model_validate(review)


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify and apply payment provider events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    handler: WebhookHandler = Depends(get_webhook_handler),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Signature failures return 400 with no state change. Duplicate deliveries
    return 200 with status ``duplicate``.
    """
    body = await request.body()
    event = handler.verify_signature(body, stripe_signature)

    logger.info("api_webhook_received", event_id=event.id, event_type=event.type)
    return await handler.process_event(event, db)


@seller_router.get(
    "/sellers/me/balance",
    response_model=BalanceResponse,
    summary="Seller balance",
)
async def get_balance(
    principal: Principal = Depends(get_principal),
    payouts: PayoutEngine = Depends(get_payout_engine),
    db: AsyncSession = Depends(get_db),
) -> Any:
    balance = await payouts.balance_for(db, principal)
    return BalanceResponse(
        seller_id=balance.seller_id,
        available_cents=balance.available_cents,
        pending_cents=balance.pending_cents,
    )


@seller_router.get(
    "/sellers/{seller_id}/reviews",
    response_model=SellerReviewsResponse,
    summary="Seller reviews",
)
async def get_seller_reviews(
    seller_id: UUID,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    principal: Principal = Depends(get_principal),
    reviews: ReviewService = Depends(get_review_service),
    db: AsyncSession = Depends(get_db),
) -> SellerReviewsResponse:
    result = await reviews.seller_reviews(db, seller_id, page, page_size)
    return SellerReviewsResponse(
        seller_id=seller_id,
        items=[ReviewResponse.model_validate(r) for r in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
        average_rating=result.average_rating,
    )


@seller_router.post(
    "/payouts",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a payout",
)
async def request_payout(
    request: PayoutRequest,
    principal: Principal = Depends(get_principal),
    payouts: PayoutEngine = Depends(get_payout_engine),
    db: AsyncSession = Depends(get_db),
) -> Any:
    logger.info(
        "api_payout_request",
        seller_id=str(principal.user_id),
        amount_cents=request.amount_cents,
    )
    payout = await payouts.request_payout(db, principal, request.amount_cents)
    return PayoutResponse.model_validate(payout)


@listing_router.put(
    "/{listing_id}/payload",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Store listing credentials",
)
async def store_payload(
    listing_id: UUID,
    request: StorePayloadRequest,
    principal: Principal = Depends(get_principal),
    vault: SecurePayloadVault = Depends(get_vault),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await vault.store(db, listing_id, request.credentials, principal)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@listing_router.put(
    "/{listing_id}/status",
    response_model=ListingResponse,
    summary="Change listing status",
)
async def set_listing_status(
    listing_id: UUID,
    request: ListingStatusRequest,
    principal: Principal = Depends(get_principal),
    catalog: CatalogService = Depends(get_catalog),
    db: AsyncSession = Depends(get_db),
) -> Any:
    listing = await catalog.set_listing_status(db, listing_id, principal, request.status)
    return ListingResponse.model_validate(listing)


@cart_router.get("", response_model=CartResponse, summary="Current cart")
async def get_cart_contents(
    principal: Principal = Depends(get_principal),
    cart: CartStore = Depends(get_cart),
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    listing = await cart.get(db, principal)
    return CartResponse(listing=ListingResponse.model_validate(listing) if listing else None)


@cart_router.post("", response_model=CartResponse, summary="Add to cart")
async def add_to_cart(
    request: CartRequest,
    principal: Principal = Depends(get_principal),
    cart: CartStore = Depends(get_cart),
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    await cart.add(db, principal, request.listing_id)
    listing = await cart.get(db, principal)
    return CartResponse(listing=ListingResponse.model_validate(listing) if listing else None)


@cart_router.delete("", status_code=status.HTTP_204_NO_CONTENT, summary="Remove from cart")
async def remove_from_cart(
    listing_id: UUID,
    principal: Principal = Depends(get_principal),
    cart: CartStore = Depends(get_cart),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await cart.remove(db, principal, listing_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@cart_router.post(
    "/checkout",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Check out the cart",
)
async def checkout(
    principal: Principal = Depends(get_principal),
    cart: CartStore = Depends(get_cart),
    db: AsyncSession = Depends(get_db),
) -> CreateOrderResponse:
    created = await cart.checkout(db, principal)
    return CreateOrderResponse(
        order=_order_response(created.order), client_secret=created.client_secret
    )


@admin_router.post(
    "/disputes/{order_id}/resolve",
    response_model=DisputeResponse,
    summary="Resolve a dispute",
)
async def resolve_dispute(
    order_id: UUID,
    request: ResolveDisputeRequest,
    principal: Principal = Depends(get_principal),
    disputes: DisputeEngine = Depends(get_dispute_engine),
    db: AsyncSession = Depends(get_db),
) -> Any:
    logger.info(
        "api_resolve_dispute",
        order_id=str(order_id),
        resolution=request.resolution.value,
    )
    dispute = await disputes.resolve_dispute(db, order_id, principal, request.resolution)
    return DisputeResponse.model_validate(dispute)


@admin_router.get(
    "/disputes",
    response_model=List[DisputeResponse],
    summary="List disputes",
)
async def list_disputes(
    dispute_status: Optional[DisputeStatus] = None,
    principal: Principal = Depends(get_principal),
    disputes: DisputeEngine = Depends(get_dispute_engine),
    db: AsyncSession = Depends(get_db),
) -> Any:
    rows = await disputes.list_disputes(db, principal, dispute_status)
    return [DisputeResponse.model_validate(row) for row in rows]


@admin_router.post(
    "/payouts/{payout_id}/process",
    response_model=PayoutResponse,
    summary="Process a payout",
)
async def process_payout(
    payout_id: UUID,
    request: ProcessPayoutRequest,
    principal: Principal = Depends(get_principal),
    payouts: PayoutEngine = Depends(get_payout_engine),
    db: AsyncSession = Depends(get_db),
) -> Any:
    payout = await payouts.process_payout(
        db, payout_id, principal, request.action, request.provider_ref
    )
    return PayoutResponse.model_validate(payout)


@admin_router.get(
    "/reconciliation",
    response_model=ReconciliationListResponse,
    summary="Open reconciliation events",
)
async def list_reconciliation_events(
    principal: Principal = Depends(get_principal),
    ledger: ReconciliationLedger = Depends(get_ledger),
    db: AsyncSession = Depends(get_db),
) -> ReconciliationListResponse:
    events = await ledger.list_open(db, principal)
    return ReconciliationListResponse(
        events=[ReconciliationEventResponse.model_validate(e) for e in events],
        count=len(events),
    )


@admin_router.post(
    "/reconciliation/{event_id}/resolve",
    response_model=ReconciliationEventResponse,
    summary="Resolve a reconciliation event",
)
async def resolve_reconciliation_event(
    event_id: UUID,
    principal: Principal = Depends(get_principal),
    ledger: ReconciliationLedger = Depends(get_ledger),
    db: AsyncSession = Depends(get_db),
) -> Any:
    event = await ledger.resolve(db, event_id, principal)
    return ReconciliationEventResponse.model_validate(event)


@admin_router.post(
    "/sweeps",
    response_model=SweepResponse,
    summary="Run an expiry sweep",
    description="Settle every expired, undisputed order now",
)
async def run_sweep(
    principal: Principal = Depends(get_principal),
    sweeper: ExpirySweeper = Depends(get_sweeper),
) -> Any:
    authorize(principal, Action.RUN_SWEEP)
    logger.info("api_sweep_started", user_id=str(principal.user_id))
    summary = await sweeper.run_once()
    return SweepResponse(**summary.to_dict())


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
)
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
)
async def readiness() -> Dict[str, Any]:
    """Readiness check endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
