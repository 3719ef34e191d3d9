"""
Tests for the Stripe provider adapter.
"""
import uuid

import pytest
import stripe
from tenacity import wait_none

from escrow_market.integrations.stripe_client import (
    CircuitBreaker,
    StripeClient,
    StripeError,
    StripeErrorType,
)


@pytest.fixture
def client(test_settings) -> StripeClient:
    return StripeClient(test_settings)


@pytest.fixture
def no_backoff(monkeypatch):
    """Retry without sleeping."""
    for method in (
        StripeClient.create_intent,
        StripeClient._create_transfer,
        StripeClient._create_refund,
    ):
        monkeypatch.setattr(method.retry, "wait", wait_none())


class TestErrorClassification:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error,expected",
        [
            (stripe.RateLimitError("slow down"), StripeErrorType.RATE_LIMIT),
            (stripe.APIConnectionError("network down"), StripeErrorType.TRANSIENT),
            (stripe.APIError("server error"), StripeErrorType.TRANSIENT),
            (stripe.InvalidRequestError("no such account", param="destination"), StripeErrorType.PERMANENT),
            (stripe.CardError("declined", param=None, code="card_declined"), StripeErrorType.PERMANENT),
        ],
    )
    def test_classify(self, error, expected) -> None:
        assert StripeClient._classify_error(error) == expected


class TestCircuitBreaker:
    @pytest.mark.unit
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)

        def boom():
            raise RuntimeError("down")

        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.call(boom)

        assert breaker.state == "open"
        with pytest.raises(StripeError) as exc_info:
            breaker.call(lambda: "never runs")
        assert exc_info.value.error_type == StripeErrorType.TRANSIENT

    @pytest.mark.unit
    def test_half_open_closes_after_successes(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)

        def boom():
            raise RuntimeError("down")

        with pytest.raises(RuntimeError):
            breaker.call(boom)
        assert breaker.state == "open"
        breaker.last_failure_time -= 1

        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == "half_open"
        breaker.call(lambda: "ok")
        assert breaker.state == "closed"


class TestStripeCalls:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_intent_passes_order_metadata(self, client, mocker) -> None:
        order_id = uuid.uuid4()
        create = mocker.patch.object(
            stripe.PaymentIntent,
            "create",
            return_value=mocker.MagicMock(
                id="pi_123", client_secret="pi_123_secret", status="requires_payment_method"
            ),
        )

        intent = await client.create_intent(1999, "USD", order_id)

        assert intent.provider_ref == "pi_123"
        assert intent.client_secret == "pi_123_secret"
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 1999
        assert kwargs["currency"] == "usd"
        assert kwargs["metadata"] == {"order_id": str(order_id)}
        assert kwargs["idempotency_key"] == f"order:{order_id}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_transfer_error_not_retried(self, client, mocker) -> None:
        create = mocker.patch.object(
            stripe.Transfer,
            "create",
            side_effect=stripe.InvalidRequestError("no such destination", param="destination"),
        )

        result = await client.transfer("acct_missing", 1899, "USD", uuid.uuid4())

        assert result.success is False
        assert "no such destination" in result.error
        assert create.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_transfer_error_retried(self, client, mocker, no_backoff) -> None:
        create = mocker.patch.object(
            stripe.Transfer,
            "create",
            side_effect=[stripe.APIConnectionError("reset"), mocker.MagicMock(id="tr_ok")],
        )

        result = await client.transfer("acct_1", 1899, "USD", uuid.uuid4())

        assert result.success is True
        assert result.provider_ref == "tr_ok"
        assert create.call_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_uses_order_idempotency_key(self, client, mocker) -> None:
        order_id = uuid.uuid4()
        create = mocker.patch.object(
            stripe.Refund,
            "create",
            return_value=mocker.MagicMock(id="re_1", status="succeeded"),
        )

        result = await client.refund("pi_123", order_id)

        assert result.success is True
        assert create.call_args.kwargs["payment_intent"] == "pi_123"
        assert create.call_args.kwargs["idempotency_key"] == f"refund:{order_id}"
