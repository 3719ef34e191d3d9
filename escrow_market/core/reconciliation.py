"""
Reconciliation ledger.

Anomalies that the escrow core cannot fix in-line are written here for
out-of-band handling:
- Double sales (two paid orders for one listing)
- Settlement transfers the provider rejected
- Refunds the provider rejected
- Payments confirmed for an order that had already left ``pending``
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_market.core.authorization import Action, Principal, authorize
from escrow_market.core.errors import InvalidState, NotFound
from escrow_market.database.models import (
    ReconciliationEvent,
    ReconciliationKind,
    ReconciliationState,
    utcnow,
)
from escrow_market.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReconciliationLedger:
    """Operational queue of anomalies awaiting an admin."""

    async def record(
        self,
        db: AsyncSession,
        kind: ReconciliationKind,
        order_id: Optional[uuid.UUID] = None,
        listing_id: Optional[uuid.UUID] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ReconciliationEvent:
        """
        Add an open event to the caller's transaction.

        The caller commits, so the event lands atomically with whatever
        state change exposed the anomaly.
        """
        event = ReconciliationEvent(
            kind=kind,
            order_id=order_id,
            listing_id=listing_id,
            details=details or {},
            status=ReconciliationState.OPEN,
        )
        db.add(event)
        await db.flush()

        metrics.record_reconciliation_event(kind.value)
        logger.warning(
            "reconciliation_event_recorded",
            event_id=str(event.id),
            kind=kind.value,
            order_id=str(order_id) if order_id else None,
            listing_id=str(listing_id) if listing_id else None,
        )
        return event

    async def list_open(
        self, db: AsyncSession, principal: Principal
    ) -> List[ReconciliationEvent]:
        """List unresolved events, oldest first."""
        authorize(principal, Action.MANAGE_RECONCILIATION)

        result = await db.execute(
            select(ReconciliationEvent)
            .where(ReconciliationEvent.status == ReconciliationState.OPEN)
            .order_by(ReconciliationEvent.created_at.asc())
        )
        events = list(result.scalars().all())
        metrics.set_open_reconciliation_events(len(events))
        return events

    async def count_open(self, db: AsyncSession) -> int:
        result = await db.execute(
            select(func.count(ReconciliationEvent.id)).where(
                ReconciliationEvent.status == ReconciliationState.OPEN
            )
        )
        return int(result.scalar_one())

    async def resolve(
        self, db: AsyncSession, event_id: uuid.UUID, principal: Principal
    ) -> ReconciliationEvent:
        """
        Mark an event handled.

        Raises:
            Forbidden: If the caller is not an admin
            NotFound: If the event does not exist
            InvalidState: If the event was already resolved
        """
        authorize(principal, Action.MANAGE_RECONCILIATION, event_id=str(event_id))

        result = await db.execute(
            select(ReconciliationEvent)
            .where(ReconciliationEvent.id == event_id)
            .with_for_update()
        )
        event = result.scalar_one_or_none()
        if event is None:
            raise NotFound(f"Reconciliation event {event_id} not found")
        if event.status != ReconciliationState.OPEN:
            raise InvalidState("Reconciliation event already resolved")

        event.status = ReconciliationState.RESOLVED
        event.resolved_by = principal.user_id
        event.resolved_at = utcnow()
        await db.commit()

        logger.info(
            "reconciliation_event_resolved",
            event_id=str(event_id),
            kind=event.kind.value,
            resolved_by=str(principal.user_id),
        )
        return event
