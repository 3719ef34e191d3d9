"""
Prometheus metrics for escrow monitoring.

Tracks:
- Order status transitions
- Webhook processing outcomes
- Double-sale anomalies
- Settlement transfers and sweeper runs
- Payout requests
- Payment provider API calls
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions",
    ["from_status", "to_status"],
)

orders_created_total = Counter(
    "orders_created_total",
    "Total orders created",
    ["currency"],
)

double_sale_anomalies_total = Counter(
    "double_sale_anomalies_total",
    "Payments confirmed for a listing that was already sold",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, duplicate, ignored, failed
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected by signature verification",
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Settlement metrics
settlement_transfers_total = Counter(
    "settlement_transfers_total",
    "Settlement transfer attempts",
    ["status"],  # succeeded, failed
)

settlement_transfer_cents = Histogram(
    "settlement_transfer_cents",
    "Net settlement transfer amounts in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Sweeper metrics
sweeper_runs_total = Counter(
    "sweeper_runs_total",
    "Expiry sweeper runs",
)

sweeper_orders_settled_total = Counter(
    "sweeper_orders_settled_total",
    "Orders settled by the expiry sweeper",
)

sweeper_errors_total = Counter(
    "sweeper_errors_total",
    "Per-order failures during a sweep",
)

sweeper_duration_seconds = Histogram(
    "sweeper_duration_seconds",
    "Expiry sweep duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

sweeper_last_run_timestamp = Gauge(
    "sweeper_last_run_timestamp",
    "Timestamp of last expiry sweep",
)

# Dispute metrics
disputes_total = Counter(
    "disputes_total",
    "Dispute lifecycle events",
    ["outcome"],  # opened, buyer, seller, refund
)

# Review metrics
reviews_total = Counter(
    "reviews_total",
    "Order reviews left by buyers",
    ["rating"],
)

# Payout metrics
payout_requests_total = Counter(
    "payout_requests_total",
    "Payout requests and admin decisions",
    ["status"],  # requested, paid, failed
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total payment provider API requests",
    ["operation", "status"],
)

provider_api_errors_total = Counter(
    "provider_api_errors_total",
    "Total payment provider API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Payment provider API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Reconciliation metrics
reconciliation_events_total = Counter(
    "reconciliation_events_total",
    "Reconciliation events recorded",
    ["kind"],
)

reconciliation_open_events = Gauge(
    "reconciliation_open_events",
    "Reconciliation events awaiting resolution",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(currency: str) -> None:
        orders_created_total.labels(currency=currency).inc()

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        """Record an order status transition."""
        order_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_double_sale() -> None:
        double_sale_anomalies_total.inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_signature_failure() -> None:
        webhook_signature_failures_total.inc()

    @staticmethod
    def record_settlement_transfer(status: str, net_cents: int) -> None:
        """Record a settlement transfer attempt."""
        settlement_transfers_total.labels(status=status).inc()
        if status == "succeeded":
            settlement_transfer_cents.observe(net_cents)

    @staticmethod
    def record_sweep(settled: int, errors: int, duration_seconds: float) -> None:
        """Record one expiry sweep."""
        sweeper_runs_total.inc()
        sweeper_orders_settled_total.inc(settled)
        sweeper_errors_total.inc(errors)
        sweeper_duration_seconds.observe(duration_seconds)
        sweeper_last_run_timestamp.set(time.time())

    @staticmethod
    def record_dispute(outcome: str) -> None:
        disputes_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_payout(status: str) -> None:
        payout_requests_total.labels(status=status).inc()

    @staticmethod
    def record_review(rating: int) -> None:
        reviews_total.labels(rating=str(rating)).inc()

    @staticmethod
    def record_provider_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record payment provider API call."""
        provider_api_requests_total.labels(operation=operation, status=status).inc()
        provider_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_provider_api_error(error_type: str) -> None:
        provider_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_reconciliation_event(kind: str) -> None:
        reconciliation_events_total.labels(kind=kind).inc()

    @staticmethod
    def set_open_reconciliation_events(count: int) -> None:
        reconciliation_open_events.set(count)


# Export singleton instance
metrics = MetricsCollector()
