"""
Stripe implementation of the payment provider boundary.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotent intent, transfer and refund creation
- Webhook signature verification
"""
import asyncio
import functools
import json
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from escrow_market.config import Settings, get_settings
from escrow_market.core.errors import SignatureInvalid
from escrow_market.integrations.payment_provider import (
    PaymentIntent,
    PaymentProvider,
    ProviderError,
    ProviderEvent,
    TransferResult,
)
from escrow_market.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(ProviderError):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.error_type != StripeErrorType.PERMANENT


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            StripeError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeError(
                    "Circuit breaker is open",
                    StripeErrorType.TRANSIENT,
                )

        try:
            result = func(*args, **kwargs)
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class StripeClient(PaymentProvider):
    """
    Payment provider backed by Stripe Connect.

    Payment intents carry the order id as ``transfer_group`` and metadata so
    webhook events and settlement transfers can be tied back to the order.
    """

    name = "stripe"

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize Stripe client."""
        self.settings = settings or get_settings()
        stripe.api_key = self.settings.stripe_secret_key
        stripe.api_version = self.settings.stripe_api_version
        self.circuit_breaker = CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=self.settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (stripe.CardError, stripe.InvalidRequestError),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _handle_stripe_error(self, error: stripe.StripeError) -> StripeError:
        error_type = self._classify_error(error)
        metrics.record_provider_api_error(error_type.value)

        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return StripeError(
            message=str(error),
            error_type=error_type,
            original_error=error,
        )

    async def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        """Run a blocking Stripe SDK call in the executor behind the breaker."""
        start = time.time()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None, functools.partial(self.circuit_breaker.call, func)
            )
        except stripe.StripeError as e:
            metrics.record_provider_api_call(operation, "error", time.time() - start)
            raise self._handle_stripe_error(e) from e
        except StripeError:
            metrics.record_provider_api_call(operation, "rejected", time.time() - start)
            raise
        metrics.record_provider_api_call(operation, "success", time.time() - start)
        return result

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def create_intent(
        self, amount_cents: int, currency: str, order_id: uuid.UUID
    ) -> PaymentIntent:
        """
        Create a Stripe PaymentIntent for an order.

        Args:
            amount_cents: Amount in minor units
            currency: Currency code (e.g., 'USD')
            order_id: Order the payment belongs to

        Returns:
            PaymentIntent: Provider reference and client secret

        Raises:
            StripeError: If payment intent creation fails
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            order_id=str(order_id),
        )

        def _create() -> Any:
            return stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                idempotency_key=f"order:{order_id}",
                metadata={"order_id": str(order_id)},
                transfer_group=str(order_id),
                automatic_payment_methods={"enabled": True},
            )

        payment_intent = await self._call("create_intent", _create)

        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )

        return PaymentIntent(
            provider_ref=payment_intent.id,
            client_secret=payment_intent.client_secret,
        )

    def parse_event(self, raw_body: bytes, signature: str) -> ProviderEvent:
        """
        Verify the Stripe-Signature header and decode the event.

        Args:
            raw_body: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            ProviderEvent: Verified event

        Raises:
            SignatureInvalid: If verification fails or the body is not an event
        """
        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload,
                signature,
                self.settings.stripe_webhook_secret,
                self.settings.webhook_tolerance_seconds,
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise SignatureInvalid(f"Invalid webhook signature: {str(e)}")

        try:
            event: Dict[str, Any] = json.loads(payload)
            obj = event.get("data", {}).get("object", {}) or {}
            metadata = obj.get("metadata") or {}
            order_ref = metadata.get("order_id")
            order_id = uuid.UUID(order_ref) if order_ref else None
            parsed = ProviderEvent(
                id=event["id"],
                type=event["type"],
                provider_ref=obj.get("id"),
                order_id=order_id,
            )
        except (ValueError, KeyError, AttributeError) as e:
            logger.error("webhook_event_malformed", error=str(e))
            raise SignatureInvalid(f"Malformed webhook event: {str(e)}")

        logger.info(
            "webhook_signature_verified",
            event_id=parsed.id,
            event_type=parsed.type,
        )
        return parsed

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def _create_transfer(
        self, destination: str, amount_cents: int, currency: str, order_id: uuid.UUID
    ) -> Any:
        def _create() -> Any:
            return stripe.Transfer.create(
                amount=amount_cents,
                currency=currency.lower(),
                destination=destination,
                transfer_group=str(order_id),
                idempotency_key=f"settle:{order_id}",
                metadata={"order_id": str(order_id)},
            )

        return await self._call("transfer", _create)

    async def transfer(
        self,
        destination: str,
        amount_cents: int,
        currency: str,
        order_id: uuid.UUID,
    ) -> TransferResult:
        """Create a Connect transfer of settled funds to the seller's account."""
        logger.info(
            "creating_transfer",
            destination=destination,
            amount_cents=amount_cents,
            order_id=str(order_id),
        )
        try:
            transfer = await self._create_transfer(destination, amount_cents, currency, order_id)
        except StripeError as e:
            return TransferResult(success=False, error=str(e))

        logger.info("transfer_created", transfer_id=transfer.id, order_id=str(order_id))
        return TransferResult(success=True, provider_ref=transfer.id)

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def _create_refund(self, provider_ref: str, order_id: uuid.UUID) -> Any:
        def _create() -> Any:
            return stripe.Refund.create(
                payment_intent=provider_ref,
                idempotency_key=f"refund:{order_id}",
                metadata={"order_id": str(order_id)},
            )

        return await self._call("refund", _create)

    async def refund(self, provider_ref: str, order_id: uuid.UUID) -> TransferResult:
        """Refund a captured PaymentIntent in full."""
        logger.info("creating_refund", payment_intent_id=provider_ref, order_id=str(order_id))
        try:
            refund = await self._create_refund(provider_ref, order_id)
        except StripeError as e:
            return TransferResult(success=False, error=str(e))

        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return TransferResult(success=True, provider_ref=refund.id)
