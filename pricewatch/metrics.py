"""Prometheus metrics for pricewatch."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("pricewatch", "pricewatch application info")
app_info.info({"version": "0.1.0", "name": "pricewatch"})

# Extraction metrics
extraction_attempts_total = Counter(
    "extraction_attempts_total",
    "Total number of extraction tier attempts",
    ["tier", "status"],
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Time spent in a single extraction tier",
    ["tier"],
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

llm_requests_total = Counter(
    "llm_requests_total",
    "Total number of structured extraction calls to the model",
    ["model", "status"],
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Tokens consumed by model calls",
    ["model", "kind"],
)

# Check job metrics
price_checks_total = Counter(
    "price_checks_total",
    "Total number of completed price checks",
    ["status", "reason"],
)

# Digest metrics
digest_runs_total = Counter(
    "digest_runs_total",
    "Total number of digest runs reaching a terminal state",
    ["trigger", "state"],
)

digest_children_pending = Gauge(
    "digest_children_pending",
    "Children still pending for the digest run currently waiting",
)

# Scheduler metrics
schedule_ticks_total = Counter(
    "schedule_ticks_total",
    "Total number of periodic schedule evaluations",
    ["decision"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler tick",
)

# Queue metrics
queue_operations_total = Counter(
    "queue_operations_total",
    "Total number of queue operations",
    ["queue", "operation"],
)

# Report delivery metrics
reports_sent_total = Counter(
    "reports_sent_total",
    "Total number of digest reports handed off for delivery",
    ["channel", "status"],
)


def record_tier_attempt(tier: str, success: bool, duration: float):
    """Record the outcome of one extraction tier."""
    extraction_attempts_total.labels(tier=tier, status="success" if success else "error").inc()
    extraction_duration_seconds.labels(tier=tier).observe(duration)


def record_check(success: bool, reason: str | None = None):
    """Record a terminal price check."""
    price_checks_total.labels(
        status="succeeded" if success else "failed",
        reason=reason or "none",
    ).inc()
