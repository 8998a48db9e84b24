"""
Operational metrics for payment recovery.

Prometheus counters and histograms for retry outcomes, dunning traffic and
the timer queue.
"""

from prometheus_client import Counter, Histogram, Gauge

# --- Retry Metrics ---
RETRY_ATTEMPTS_SCHEDULED = Counter(
    "payment_recovery_retries_scheduled_total",
    "Retry attempts created by the failure handler",
    ["failure_reason", "retry_method"]
)

RETRY_OUTCOMES = Counter(
    "payment_recovery_retry_outcomes_total",
    "Outcome of executed retry attempts",
    ["outcome"]  # succeeded, failed, duplicate, skipped
)

RETRY_BUDGET_EXHAUSTED = Counter(
    "payment_recovery_retry_budget_exhausted_total",
    "Failures where the retry policy answered stop",
    ["decline_kind"]
)

GATEWAY_CHARGE_DURATION = Histogram(
    "payment_recovery_gateway_charge_seconds",
    "Latency of gateway charge calls",
    ["outcome"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30)
)

# --- Dunning Metrics ---
DUNNING_COMMUNICATIONS_SENT = Counter(
    "payment_recovery_dunning_communications_total",
    "Dunning communications handed to the notification dispatcher",
    ["template_id", "channel"]
)

CAMPAIGN_RESOLUTIONS = Counter(
    "payment_recovery_campaign_resolutions_total",
    "Dunning campaign terminal resolutions",
    ["resolution"]
)

# --- Timer Queue Metrics ---
TIMERS_SCHEDULED = Counter(
    "payment_recovery_timers_scheduled_total",
    "Timers registered with the clock service",
    ["timer_type"]
)

TIMERS_PROCESSED = Counter(
    "payment_recovery_timers_processed_total",
    "Timers processed by workers",
    ["timer_type", "status"]
)

TIMERS_CLAIMED_LAST_BATCH = Gauge(
    "payment_recovery_timers_claimed_last_batch",
    "Number of due timers claimed in the most recent poll"
)
