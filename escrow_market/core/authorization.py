"""
Authorization policy for core operations.

Every role and ownership rule lives in one table keyed by action. Services
call ``authorize`` before touching state, so a violation always surfaces as
``Forbidden`` with the same shape.
"""
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from escrow_market.core.errors import Forbidden
from escrow_market.database.models import UserRole

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    """Caller identity as resolved by the upstream identity service."""

    user_id: uuid.UUID
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Action(str, Enum):
    CREATE_ORDER = "create_order"
    VIEW_ORDER = "view_order"
    LIST_OWN_ORDERS = "list_own_orders"
    ACKNOWLEDGE_DELIVERY = "acknowledge_delivery"
    OPEN_DISPUTE = "open_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    LIST_DISPUTES = "list_disputes"
    VIEW_BALANCE = "view_balance"
    REQUEST_PAYOUT = "request_payout"
    PROCESS_PAYOUT = "process_payout"
    MANAGE_LISTING = "manage_listing"
    USE_CART = "use_cart"
    MANAGE_RECONCILIATION = "manage_reconciliation"
    RUN_SWEEP = "run_sweep"
    REVIEW_ORDER = "review_order"


@dataclass(frozen=True)
class Resource:
    """Ownership facts for the object an action targets."""

    buyer_id: Optional[uuid.UUID] = None
    seller_id: Optional[uuid.UUID] = None


Predicate = Callable[[Principal, Resource], bool]


def _is_admin(principal: Principal, resource: Resource) -> bool:
    return principal.role == UserRole.ADMIN


def _is_buyer(principal: Principal, resource: Resource) -> bool:
    return resource.buyer_id is not None and principal.user_id == resource.buyer_id


def _is_seller(principal: Principal, resource: Resource) -> bool:
    return resource.seller_id is not None and principal.user_id == resource.seller_id


def _is_participant(principal: Principal, resource: Resource) -> bool:
    return _is_buyer(principal, resource) or _is_seller(principal, resource)


def _has_seller_role(principal: Principal, resource: Resource) -> bool:
    return principal.role == UserRole.SELLER


def _can_buy(principal: Principal, resource: Resource) -> bool:
    # Sellers may also buy; admins act only through admin operations.
    return principal.role in (UserRole.BUYER, UserRole.SELLER)


POLICY: Dict[Action, Predicate] = {
    Action.CREATE_ORDER: _can_buy,
    Action.USE_CART: _can_buy,
    Action.VIEW_ORDER: lambda p, r: _is_participant(p, r) or _is_admin(p, r),
    Action.LIST_OWN_ORDERS: _can_buy,
    Action.ACKNOWLEDGE_DELIVERY: _is_buyer,
    Action.OPEN_DISPUTE: _is_participant,
    Action.RESOLVE_DISPUTE: _is_admin,
    Action.LIST_DISPUTES: _is_admin,
    Action.VIEW_BALANCE: lambda p, r: _is_seller(p, r) or _is_admin(p, r),
    Action.REQUEST_PAYOUT: lambda p, r: _has_seller_role(p, r) and _is_seller(p, r),
    Action.PROCESS_PAYOUT: _is_admin,
    Action.MANAGE_LISTING: _is_seller,
    Action.MANAGE_RECONCILIATION: _is_admin,
    Action.RUN_SWEEP: _is_admin,
    Action.REVIEW_ORDER: _is_buyer,
}


def is_allowed(principal: Principal, action: Action, resource: Optional[Resource] = None) -> bool:
    """Evaluate the policy without raising."""
    return POLICY[action](principal, resource or Resource())


def authorize(
    principal: Principal,
    action: Action,
    resource: Optional[Resource] = None,
    **log_context: Any,
) -> None:
    """
    Raise ``Forbidden`` unless the policy allows ``action``.

    Args:
        principal: Caller identity
        action: Operation being attempted
        resource: Ownership facts of the target object
        **log_context: Extra fields for the denial log line

    Raises:
        Forbidden: If the predicate for the action is false
    """
    if not is_allowed(principal, action, resource):
        logger.warning(
            "authorization_denied",
            action=action.value,
            user_id=str(principal.user_id),
            role=principal.role.value,
            **log_context,
        )
        raise Forbidden(f"Not permitted to {action.value.replace('_', ' ')}")
