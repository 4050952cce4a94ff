"""
Prometheus metrics for the marketplace escrow service.

Tracks:
- Reservation attempts and lost races
- Payment outcomes by failure code
- Finix API calls, errors and circuit breaker state
- Webhook events by type and outcome
- Refund workflow actions
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Reservation metrics
reservation_attempts_total = Counter(
    "reservation_attempts_total",
    "Total listing reservation attempts",
    ["result"],  # reserved, already_reserved, lost_race, rejected
)

reservations_expired_total = Counter(
    "reservations_expired_total",
    "Reservations reclaimed lazily after lapsing",
)

# Payment metrics
payment_attempts_total = Counter(
    "payment_attempts_total",
    "Total payment pipeline runs",
    ["result", "instrument_type"],  # result: processing, declined, error
)

payment_failures_total = Counter(
    "payment_failures_total",
    "Payment failures by canonical failure code",
    ["failure_code"],
)

payment_processing_duration_seconds = Histogram(
    "payment_processing_duration_seconds",
    "Payment pipeline duration in seconds",
    buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0),
)

payment_amount_minor_units = Histogram(
    "payment_amount_minor_units",
    "Order amounts submitted for payment in minor currency units",
    buckets=(1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000),
)

# Finix API metrics
finix_api_requests_total = Counter(
    "finix_api_requests_total",
    "Total Finix API requests",
    ["operation", "status"],
)

finix_api_errors_total = Counter(
    "finix_api_errors_total",
    "Total Finix API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

finix_api_duration_seconds = Histogram(
    "finix_api_duration_seconds",
    "Finix API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

finix_circuit_breaker_state = Gauge(
    "finix_circuit_breaker_state",
    "Finix circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events accepted at ingress",
    ["event_type", "outcome"],  # enqueued, duplicate, ping
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed by the worker",
    ["event_type", "status"],  # processed, failed, retrying, skipped
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Refund metrics
refund_actions_total = Counter(
    "refund_actions_total",
    "Refund workflow actions",
    ["action"],
)

# Transfer reconciliation metrics
transfer_sweep_orders_total = Counter(
    "transfer_sweep_orders_total",
    "Orders examined by the transfer reconciliation sweep",
    ["outcome"],
)

transfer_sweep_last_run_timestamp = Gauge(
    "transfer_sweep_last_run_timestamp",
    "Timestamp of the last transfer reconciliation sweep",
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_reservation(result: str) -> None:
        """Record a reservation attempt."""
        reservation_attempts_total.labels(result=result).inc()

    @staticmethod
    def record_reservation_expired() -> None:
        """Record a lazily reclaimed reservation."""
        reservations_expired_total.inc()

    @staticmethod
    def record_payment(
        result: str,
        instrument_type: str,
        amount: int,
        duration_seconds: float,
        failure_code: str | None = None,
    ) -> None:
        """Record a payment pipeline run."""
        payment_attempts_total.labels(result=result, instrument_type=instrument_type).inc()
        payment_amount_minor_units.observe(amount)
        payment_processing_duration_seconds.observe(duration_seconds)
        if failure_code:
            payment_failures_total.labels(failure_code=failure_code).inc()

    @staticmethod
    def record_finix_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record Finix API call."""
        finix_api_requests_total.labels(operation=operation, status=status).inc()
        finix_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_finix_api_error(error_type: str) -> None:
        """Record Finix API error."""
        finix_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        finix_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_received(event_type: str, outcome: str) -> None:
        """Record a webhook accepted at ingress."""
        webhook_events_received_total.labels(event_type=event_type, outcome=outcome).inc()

    @staticmethod
    def record_webhook_processed(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_refund_action(action: str) -> None:
        """Record a refund workflow action."""
        refund_actions_total.labels(action=action).inc()

    @staticmethod
    def record_transfer_sweep(outcome: str, count: int = 1) -> None:
        """Record orders examined by the transfer sweep."""
        transfer_sweep_orders_total.labels(outcome=outcome).inc(count)
        transfer_sweep_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
