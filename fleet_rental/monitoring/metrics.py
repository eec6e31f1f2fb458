"""
Prometheus metrics for the rental core.

Tracks:
- Booking attempts by outcome (created, conflict, not_found, ...)
- Settlements (returns) by outcome
- Stripe API calls and errors
- Inbound Stripe events
- Outbound webhook deliveries and dropped notifications
"""
from prometheus_client import Counter, Gauge, Histogram

# Booking metrics
booking_attempts_total = Counter(
    "booking_attempts_total",
    "Total booking attempts",
    ["outcome"],
)

settlements_total = Counter(
    "settlements_total",
    "Total car returns settled",
    ["outcome"],
)

settlement_amount_cents = Histogram(
    "settlement_amount_cents",
    "Captured settlement amounts in cents",
    buckets=(1000, 5000, 10000, 25000, 50000, 100000, 250000, 1000000),
)

unit_of_work_duration_seconds = Histogram(
    "unit_of_work_duration_seconds",
    "Tenant-scoped transaction duration in seconds",
    ["outcome"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],  # operation: authorize, capture, cancel, retrieve
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Inbound Stripe events
stripe_events_processed_total = Counter(
    "stripe_events_processed_total",
    "Total Stripe events processed",
    ["event_type", "status"],  # applied, ignored, rejected
)

# Outbound webhook metrics
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Total outbound webhook delivery attempts",
    ["event_type", "status"],  # delivered, failed
)

webhook_notifications_dropped_total = Counter(
    "webhook_notifications_dropped_total",
    "Notifications dropped because the queue was full",
)

webhook_queue_depth = Gauge(
    "webhook_queue_depth",
    "Pending notifications waiting for a worker",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_booking_attempt(outcome: str) -> None:
        """Record a booking attempt."""
        booking_attempts_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_settlement(outcome: str, amount_cents: int = 0) -> None:
        """Record a settlement outcome."""
        settlements_total.labels(outcome=outcome).inc()
        if amount_cents > 0:
            settlement_amount_cents.observe(amount_cents)

    @staticmethod
    def record_unit_of_work(outcome: str, duration_seconds: float) -> None:
        """Record a tenant-scoped transaction."""
        unit_of_work_duration_seconds.labels(outcome=outcome).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_stripe_event(event_type: str, status: str) -> None:
        """Record inbound Stripe event processing."""
        stripe_events_processed_total.labels(event_type=event_type, status=status).inc()

    @staticmethod
    def record_webhook_delivery(event_type: str, status: str) -> None:
        """Record outbound webhook delivery."""
        webhook_deliveries_total.labels(event_type=event_type, status=status).inc()

    @staticmethod
    def record_notification_dropped() -> None:
        """Record a notification dropped on a full queue."""
        webhook_notifications_dropped_total.inc()

    @staticmethod
    def set_webhook_queue_depth(depth: int) -> None:
        """Set pending notification count."""
        webhook_queue_depth.set(depth)


# Export singleton instance
metrics = MetricsCollector()
