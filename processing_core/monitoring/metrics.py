"""
Prometheus metrics for the processing core.

Tracks:
- Webhook claims, replays and processing outcomes
- Event ledger escalations
- Job enqueue, claim and outcome counts
- Dead-lettered jobs
- Redemption commits and counter fallbacks
- Stale claims reclaimed by the sweeper
- Queue depth by status
"""
from prometheus_client import Counter, Gauge, Histogram

# Webhook / event ledger metrics
webhook_claims_total = Counter(
    "webhook_claims_total",
    "Total event ledger claim attempts",
    ["provider", "outcome"],  # claimed, replay, reclaimed, escalated
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["provider", "event_type", "status"],  # success, failed, duplicate, no_handler
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Total webhook deliveries rejected by signature verification",
    ["provider"],
)

# Work queue metrics
jobs_enqueued_total = Counter(
    "jobs_enqueued_total",
    "Total jobs enqueued",
    ["job_type", "priority"],
)

jobs_claimed_total = Counter(
    "jobs_claimed_total",
    "Total jobs claimed by pollers",
    ["job_type"],
)

job_claim_conflicts_total = Counter(
    "job_claim_conflicts_total",
    "Claim attempts lost to a concurrent poller",
)

job_outcomes_total = Counter(
    "job_outcomes_total",
    "Total job outcomes",
    ["job_type", "outcome"],  # completed, failed, skipped
)

jobs_dead_lettered_total = Counter(
    "jobs_dead_lettered_total",
    "Total jobs that exhausted their retry budget",
    ["job_type"],
)

job_processing_duration_seconds = Histogram(
    "job_processing_duration_seconds",
    "Job handler duration in seconds",
    ["job_type"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

queue_depth = Gauge(
    "queue_depth",
    "Number of jobs by status",
    ["status"],
)

# Redemption metrics
redemptions_total = Counter(
    "redemptions_total",
    "Total redemption commit attempts",
    ["scope", "outcome"],  # created, duplicate, rejected
)

redemption_counter_fallbacks_total = Counter(
    "redemption_counter_fallbacks_total",
    "Redemption counter increments that used the read-modify-write fallback",
)

redemption_counter_failures_total = Counter(
    "redemption_counter_failures_total",
    "Redemption counter increments that failed entirely",
)

# Sweeper metrics
stale_claims_reclaimed_total = Counter(
    "stale_claims_reclaimed_total",
    "Processing claims returned to failed after their lease expired",
    ["component"],  # event_ledger, work_queue
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_claim(provider: str, outcome: str) -> None:
        """Record an event ledger claim attempt."""
        webhook_claims_total.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_webhook_event(
        provider: str, event_type: str, status: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(
            provider=provider, event_type=event_type, status=status
        ).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_signature_failure(provider: str) -> None:
        """Record a rejected webhook signature."""
        webhook_signature_failures_total.labels(provider=provider).inc()

    @staticmethod
    def record_job_enqueued(job_type: str, priority: str) -> None:
        """Record job enqueue."""
        jobs_enqueued_total.labels(job_type=job_type, priority=priority).inc()

    @staticmethod
    def record_job_claimed(job_type: str) -> None:
        """Record a successful job claim."""
        jobs_claimed_total.labels(job_type=job_type).inc()

    @staticmethod
    def record_claim_conflict() -> None:
        """Record a claim lost to another poller."""
        job_claim_conflicts_total.inc()

    @staticmethod
    def record_job_outcome(job_type: str, outcome: str, duration_seconds: float = 0) -> None:
        """Record a job outcome."""
        job_outcomes_total.labels(job_type=job_type, outcome=outcome).inc()
        if duration_seconds > 0:
            job_processing_duration_seconds.labels(job_type=job_type).observe(duration_seconds)

    @staticmethod
    def record_dead_letter(job_type: str) -> None:
        """Record a dead-lettered job."""
        jobs_dead_lettered_total.labels(job_type=job_type).inc()

    @staticmethod
    def set_queue_depth(counts: dict[str, int]) -> None:
        """Set queue depth per status."""
        for status, count in counts.items():
            queue_depth.labels(status=status).set(count)

    @staticmethod
    def record_redemption(scope: str, outcome: str) -> None:
        """Record a redemption commit attempt."""
        redemptions_total.labels(scope=scope, outcome=outcome).inc()

    @staticmethod
    def record_counter_fallback() -> None:
        """Record a read-modify-write counter fallback."""
        redemption_counter_fallbacks_total.inc()

    @staticmethod
    def record_counter_failure() -> None:
        """Record a counter increment that could not be applied."""
        redemption_counter_failures_total.inc()

    @staticmethod
    def record_stale_reclaimed(component: str, count: int) -> None:
        """Record stale claims returned by the sweeper."""
        if count > 0:
            stale_claims_reclaimed_total.labels(component=component).inc(count)


# Export singleton instance
metrics = MetricsCollector()
