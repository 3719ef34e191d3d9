"""Escrow core: order lifecycle, disputes, payouts and supporting services."""
from .authorization import Action, Principal, Resource, authorize
from .cart import CartStore
from .catalog import CatalogService
from .disputes import DisputeEngine, Resolution
from .errors import (
    AlreadyProcessed,
    Conflict,
    Forbidden,
    InvalidAmount,
    InvalidState,
    MarketError,
    NotFound,
    SelfTrade,
    SignatureInvalid,
    Unavailable,
)
from .order_lifecycle import ORDER_TRANSITIONS, OrderLifecycleEngine
from .payouts import Balance, PayoutAction, PayoutEngine
from .reconciliation import ReconciliationLedger
from .reviews import ReviewService, SellerReviews
from .vault import SecurePayloadVault

__all__ = [
    "Action",
    "AlreadyProcessed",
    "Balance",
    "CartStore",
    "CatalogService",
    "Conflict",
    "DisputeEngine",
    "Forbidden",
    "InvalidAmount",
    "InvalidState",
    "MarketError",
    "NotFound",
    "ORDER_TRANSITIONS",
    "OrderLifecycleEngine",
    "PayoutAction",
    "PayoutEngine",
    "Principal",
    "ReconciliationLedger",
    "Resolution",
    "Resource",
    "ReviewService",
    "SecurePayloadVault",
    "SelfTrade",
    "SellerReviews",
    "SignatureInvalid",
    "Unavailable",
    "authorize",
]
