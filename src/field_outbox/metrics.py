"""
Prometheus metrics for the outbox.

Registered in the global REGISTRY at import; expose them with
``prometheus_client.start_http_server`` or the host app's metrics route.
"""

from prometheus_client import Counter, Gauge, Histogram

OUTBOX_ENQUEUED_TOTAL = Counter(
    "field_outbox_enqueued_total",
    "Events durably enqueued",
    ["kind"],
)

OUTBOX_SUBMISSIONS_TOTAL = Counter(
    "field_outbox_submissions_total",
    "Delivery attempts by outcome",
    ["outcome"],  # success | transient | permanent | auth
)

OUTBOX_DEAD_LETTERED_TOTAL = Counter(
    "field_outbox_dead_lettered_total",
    "Events withdrawn from the delivery path",
    ["reason"],
)

OUTBOX_PENDING = Gauge(
    "field_outbox_pending",
    "Events awaiting delivery in memory",
)

OUTBOX_FLUSH_DURATION = Histogram(
    "field_outbox_flush_duration_seconds",
    "Duration of one flush pass",
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)


class MetricsRegistry:
    """Centralized access to outbox metrics."""

    enqueued_total = OUTBOX_ENQUEUED_TOTAL
    submissions_total = OUTBOX_SUBMISSIONS_TOTAL
    dead_lettered_total = OUTBOX_DEAD_LETTERED_TOTAL
    pending = OUTBOX_PENDING
    flush_duration = OUTBOX_FLUSH_DURATION


metrics_registry = MetricsRegistry()
