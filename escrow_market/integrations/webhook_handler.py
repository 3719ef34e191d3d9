"""
Payment provider webhook handler.

Implements:
- Signature verification over the raw request body
- Event type routing to registered handlers
- Duplicate delivery absorbed by the transaction status check in
  ``confirm_payment`` (no transport-level deduplication store)
"""
import time
from typing import Any, Awaitable, Callable, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_market.core.errors import AlreadyProcessed, SignatureInvalid
from escrow_market.core.order_lifecycle import OrderLifecycleEngine
from escrow_market.integrations.payment_provider import (
    PAYMENT_SUCCEEDED,
    ProviderEvent,
)
from escrow_market.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[ProviderEvent, AsyncSession], Awaitable[Dict[str, Any]]]


class WebhookHandler:
    """
    Verifies and routes provider webhook events.

    Only payment success is registered by default; every other event type
    is acknowledged and ignored so the provider stops redelivering it.
    """

    def __init__(self, lifecycle: OrderLifecycleEngine):
        """
        Initialize webhook handler.

        Args:
            lifecycle: Engine that applies confirmed payments
        """
        self.lifecycle = lifecycle
        self.provider = lifecycle.provider
        self.event_handlers: Dict[str, EventHandler] = {}
        self.register_handler(PAYMENT_SUCCEEDED, self.handle_payment_succeeded)

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Provider event type (e.g., 'payment_intent.succeeded')
            handler: Async callable taking the event and a database session
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, payload: bytes, signature: str) -> ProviderEvent:
        """
        Verify webhook signature and decode the event.

        Args:
            payload: Raw request body as bytes
            signature: Provider signature header value

        Returns:
            ProviderEvent: Verified event

        Raises:
            SignatureInvalid: If signature verification fails
        """
        if not signature:
            metrics.record_signature_failure()
            logger.error("webhook_signature_missing")
            raise SignatureInvalid("Missing webhook signature")
        try:
            return self.provider.parse_event(payload, signature)
        except SignatureInvalid:
            metrics.record_signature_failure()
            raise

    async def process_event(self, event: ProviderEvent, db: AsyncSession) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Args:
            event: Verified provider event
            db: Database session

        Returns:
            Dict[str, Any]: Processing result with ``status`` of success,
            duplicate or ignored
        """
        start = time.time()
        logger.info("processing_webhook_event", event_id=event.id, event_type=event.type)

        handler = self.event_handlers.get(event.type)
        if handler is None:
            logger.info("webhook_event_ignored", event_id=event.id, event_type=event.type)
            metrics.record_webhook_event(event.type, "ignored", time.time() - start)
            return {"status": "ignored", "event_id": event.id, "event_type": event.type}

        try:
            result = await handler(event, db)
        except AlreadyProcessed:
            await db.rollback()
            logger.info(
                "webhook_event_already_processed",
                event_id=event.id,
                event_type=event.type,
            )
            metrics.record_webhook_event(event.type, "duplicate", time.time() - start)
            return {"status": "duplicate", "event_id": event.id, "event_type": event.type}
        except Exception as e:
            metrics.record_webhook_event(event.type, "failed", time.time() - start)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event.id,
                event_type=event.type,
                error=str(e),
            )
            raise

        metrics.record_webhook_event(event.type, "success", time.time() - start)
        logger.info(
            "webhook_event_processed_successfully",
            event_id=event.id,
            event_type=event.type,
        )
        return {
            "status": "success",
            "event_id": event.id,
            "event_type": event.type,
            "result": result,
        }

    async def handle_payment_succeeded(
        self, event: ProviderEvent, db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Handle payment_intent.succeeded.

        Args:
            event: Verified event carrying the order id and provider reference
            db: Database session

        Returns:
            Dict[str, Any]: Handler result
        """
        order = await self.lifecycle.confirm_payment(
            db,
            provider_event_id=event.id,
            order_id=event.order_id,
            provider_ref=event.provider_ref,
        )
        return {"order_id": str(order.id), "order_status": order.status.value}
