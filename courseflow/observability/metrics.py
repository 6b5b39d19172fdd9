"""Prometheus metrics definitions."""

from prometheus_client import Counter, Gauge, Histogram

# Event source
EVENTS_RECEIVED = Counter(
    "courseflow_events_received_total",
    "Total number of lifecycle events received",
    ["event_type"],
)

EVENTS_PROCESSED = Counter(
    "courseflow_events_processed_total",
    "Total number of lifecycle events processed",
    ["event_type", "status"],
)

# Ledger
RECORDS_CREATED = Counter(
    "courseflow_records_created_total",
    "Execution records created",
    ["channel"],
)

RECORDS_SCHEDULED = Counter(
    "courseflow_records_scheduled_total",
    "Execution records given a fire time",
    ["channel"],
)

RECORDS_SKIPPED = Counter(
    "courseflow_records_skipped_total",
    "Execution records skipped or cancelled",
    ["reason"],
)

# Scheduler
SCHEDULER_TICKS = Counter(
    "courseflow_scheduler_ticks_total",
    "Scheduler ticks run",
)

CLAIMS = Counter(
    "courseflow_claims_total",
    "Claim attempts",
    ["result"],
)

STALE_CLAIMS_RELEASED = Counter(
    "courseflow_stale_claims_released_total",
    "Claims released after the claim timeout",
)

DUE_BACKLOG = Gauge(
    "courseflow_due_backlog",
    "Due records found by the last tick",
)

# Dispatch
DISPATCHES = Counter(
    "courseflow_dispatches_total",
    "Dispatch outcomes",
    ["channel", "outcome"],
)

DISPATCH_LATENCY = Histogram(
    "courseflow_dispatch_latency_seconds",
    "Channel dispatch latency in seconds",
    ["channel"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

DUPLICATES_SUPPRESSED = Counter(
    "courseflow_duplicates_suppressed_total",
    "Dispatches answered from a delivery marker",
    ["channel"],
)

# Retry
RETRIES_SCHEDULED = Counter(
    "courseflow_retries_scheduled_total",
    "Transient failures rescheduled",
    ["channel"],
)

DEAD_LETTERS = Counter(
    "courseflow_dead_letters_total",
    "Records that ended in failed",
    ["channel"],
)
