"""Ledger store package for the escrow market."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    Base,
    CartItem,
    Dispute,
    Listing,
    Order,
    Payout,
    ReconciliationEvent,
    SecurePayload,
    SettlementTransfer,
    Transaction,
    User,
)

__all__ = [
    "Base",
    "CartItem",
    "Dispute",
    "Listing",
    "Order",
    "Payout",
    "ReconciliationEvent",
    "SecurePayload",
    "SettlementTransfer",
    "Transaction",
    "User",
    "get_db",
    "get_session_factory",
    "init_db",
]
