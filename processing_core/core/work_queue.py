"""
Work queue for deferred post-ingestion jobs.

Pollers claim jobs through conditional updates against the shared store:

1. Select candidates (pending/failed, attempts left, past backoff gate)
2. For each candidate, UPDATE ... WHERE the same predicates still hold
3. Only single-row updates are claims; a zero-row update means another
   poller owns the job

Every claim stamps a fresh claim_token. The lease is renewed under that
token right before dispatch, and complete()/fail() only apply while the
token still matches, so a job released by the sweeper and reclaimed
elsewhere is never run or finished by its previous owner.

Handlers return explicit JobResult values, so retry bookkeeping is driven
by data. A job that exhausts max_attempts is dead-lettered and never
reclaimed.
"""
import asyncio
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from processing_core.core.timeutils import utcnow
from processing_core.database.models import Job
from processing_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPriority(str, Enum):
    """Two-tier job priority."""

    HIGH = "high"
    NORMAL = "normal"


class JobType(str, Enum):
    """Job types with built-in handlers."""

    FACE_INDEX = "face_index"
    PREVIEW_GENERATE = "preview_generate"


CLAIMABLE_STATUSES = (JobStatus.PENDING.value, JobStatus.FAILED.value)
STALE_CLAIM_ERROR = "Claim expired before the job reported an outcome"
MAX_ERROR_LENGTH = 2000


class WorkQueueError(Exception):
    """Base exception for work queue errors."""

    pass


class JobValidationError(WorkQueueError):
    """Raised when an enqueue request is invalid. Never retried."""

    pass


@dataclass(frozen=True)
class JobResult:
    """Explicit outcome returned by a job handler."""

    success: bool
    error: Optional[str] = None
    retryable: bool = True
    detail: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **detail: Any) -> "JobResult":
        """The handler applied its effect."""
        return cls(success=True, detail=detail)

    @classmethod
    def skipped(cls, reason: str) -> "JobResult":
        """Nothing to do (already done, subject gone, feature disabled)."""
        return cls(success=True, detail={"skipped": reason})

    @classmethod
    def failure(cls, error: str, retryable: bool = True) -> "JobResult":
        """The handler failed; retryable failures consume one attempt."""
        return cls(success=False, error=error, retryable=retryable)

    @property
    def is_skip(self) -> bool:
        return self.success and "skipped" in self.detail


JobHandler = Callable[[Job], Awaitable[JobResult]]


@dataclass
class BatchStats:
    """Counters for one or more processed batches."""

    claimed: int = 0
    completed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    lost: int = 0
    batches: int = 0

    def merge(self, other: "BatchStats") -> None:
        self.claimed += other.claimed
        self.completed += other.completed
        self.failed += other.failed
        self.dead_lettered += other.dead_lettered
        self.skipped += other.skipped
        self.lost += other.lost
        self.batches += other.batches

    def to_dict(self) -> Dict[str, int]:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "failed": self.failed,
            "dead_lettered": self.dead_lettered,
            "skipped": self.skipped,
            "lost": self.lost,
            "batches": self.batches,
        }


def plan_claim_order(
    high_ids: Sequence[int],
    normal_ids: Sequence[int],
    limit: int,
    normal_share: float,
) -> List[int]:
    """
    Merge high and normal candidates into one claim order.

    High-priority jobs go first, except that floor(limit * normal_share)
    slots are held for waiting normal-priority jobs so a sustained stream of
    high-priority work cannot starve them.

    Args:
        high_ids: High-priority candidate ids, oldest first
        normal_ids: Normal-priority candidate ids, oldest first
        limit: Batch size
        normal_share: Fraction of the batch reserved for normal jobs

    Returns:
        List[int]: Candidate ids in claim order, at most `limit`
    """
    if limit <= 0:
        return []

    reserved = min(len(normal_ids), math.floor(limit * normal_share))
    take_high = list(high_ids[: limit - reserved])
    take_normal = list(normal_ids[: limit - len(take_high)])
    return take_high + take_normal


class WorkQueue:
    """
    Holds deferred jobs and hands them to pollers exactly once per attempt.

    Runs in any number of processes at once; all exclusion happens in the
    store through conditional updates.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_max_attempts: int = 3,
        handler_timeout_seconds: float = 120.0,
        normal_priority_share: float = 0.2,
        retry_base_delay_seconds: float = 30.0,
        retry_max_delay_seconds: float = 3600.0,
    ):
        """
        Initialize work queue.

        Args:
            session_factory: Factory for sessions against the shared store
            default_max_attempts: max_attempts for jobs that don't set one
            handler_timeout_seconds: Bound on a single handler invocation
            normal_priority_share: Batch share reserved for normal priority
            retry_base_delay_seconds: Base delay for retry backoff
            retry_max_delay_seconds: Cap on retry backoff
        """
        self.session_factory = session_factory
        self.default_max_attempts = default_max_attempts
        self.handler_timeout_seconds = handler_timeout_seconds
        self.normal_priority_share = normal_priority_share
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.retry_max_delay_seconds = retry_max_delay_seconds
        self.handlers: Dict[str, JobHandler] = {}

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        """
        Register a handler for a job type.

        Handlers must tolerate re-running after a crash that happened between
        their external side effect and the completion write.

        Args:
            job_type: Job type (e.g. 'face_index')
            handler: Async callable returning a JobResult
        """
        self.handlers[job_type] = handler
        logger.info("job_handler_registered", job_type=job_type)

    async def enqueue(
        self,
        subject_id: str,
        job_type: str,
        priority: str = JobPriority.NORMAL.value,
        payload: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
    ) -> Job:
        """
        Insert a pending job.

        Args:
            subject_id: Id of the entity the job works on (e.g. media id)
            job_type: Job type used for dispatch
            priority: 'high' or 'normal'
            payload: Opaque job payload
            max_attempts: Retry budget (defaults to the queue's default)

        Returns:
            Job: The inserted job

        Raises:
            JobValidationError: If the request is invalid
        """
        attempts = max_attempts if max_attempts is not None else self.default_max_attempts
        self._validate_enqueue(subject_id, job_type, priority, attempts)

        job = Job(
            subject_id=subject_id,
            job_type=job_type,
            priority=priority,
            status=JobStatus.PENDING.value,
            attempt_count=0,
            max_attempts=attempts,
            payload=payload,
        )
        async with self.session_factory() as db:
            db.add(job)
            await db.commit()

        logger.info(
            "job_enqueued",
            job_id=job.id,
            job_type=job_type,
            subject_id=subject_id,
            priority=priority,
        )
        metrics.record_job_enqueued(job_type, priority)
        return job

    @staticmethod
    def _validate_enqueue(
        subject_id: str, job_type: str, priority: str, max_attempts: int
    ) -> None:
        if not subject_id:
            raise JobValidationError("subject_id is required")
        if not job_type:
            raise JobValidationError("job_type is required")
        if priority not in (JobPriority.HIGH.value, JobPriority.NORMAL.value):
            raise JobValidationError(f"Invalid priority: {priority}")
        if max_attempts < 1:
            raise JobValidationError("max_attempts must be at least 1")

    @staticmethod
    def _claimable(now: datetime) -> Any:
        return and_(
            Job.status.in_(CLAIMABLE_STATUSES),
            Job.attempt_count < Job.max_attempts,
            Job.archived_at.is_(None),
            or_(Job.next_attempt_at.is_(None), Job.next_attempt_at <= now),
        )

    async def claim_batch(self, limit: int) -> List[Job]:
        """
        Claim up to `limit` jobs for this poller.

        Args:
            limit: Maximum jobs to claim

        Returns:
            List[Job]: Claimed jobs in claim order (may be fewer than limit)
        """
        if limit <= 0:
            return []

        now = utcnow()
        async with self.session_factory() as db:
            candidate_ids = await self._select_candidates(db, limit, now)

            claimed_ids: List[int] = []
            for job_id in candidate_ids:
                stmt = (
                    update(Job)
                    .where(Job.id == job_id, self._claimable(now))
                    .values(
                        status=JobStatus.PROCESSING.value,
                        claimed_at=now,
                        claim_token=str(uuid.uuid4()),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(stmt)
                await db.commit()

                if result.rowcount == 1:
                    claimed_ids.append(job_id)
                else:
                    logger.debug("job_claim_lost", job_id=job_id)
                    metrics.record_claim_conflict()

            if not claimed_ids:
                return []

            result = await db.execute(select(Job).where(Job.id.in_(claimed_ids)))
            by_id = {job.id: job for job in result.scalars().all()}

        jobs = [by_id[job_id] for job_id in claimed_ids if job_id in by_id]
        for job in jobs:
            metrics.record_job_claimed(job.job_type)

        logger.info(
            "job_batch_claimed",
            requested=limit,
            candidates=len(candidate_ids),
            claimed=len(jobs),
        )
        return jobs

    async def _select_candidates(
        self, db: AsyncSession, limit: int, now: datetime
    ) -> List[int]:
        base = select(Job.id).where(self._claimable(now)).order_by(Job.id).limit(limit)

        high = await db.execute(base.where(Job.priority == JobPriority.HIGH.value))
        normal = await db.execute(base.where(Job.priority == JobPriority.NORMAL.value))

        return plan_claim_order(
            list(high.scalars().all()),
            list(normal.scalars().all()),
            limit,
            self.normal_priority_share,
        )

    async def dispatch(self, job: Job) -> JobResult:
        """
        Route a claimed job to its handler under a bounded timeout.

        Args:
            job: Claimed job

        Returns:
            JobResult: Handler outcome; exceptions and timeouts become
                retryable failures, unknown job types permanent ones
        """
        handler = self.handlers.get(job.job_type)
        if handler is None:
            logger.warning("job_no_handler", job_id=job.id, job_type=job.job_type)
            return JobResult.failure(
                f"No handler registered for job type: {job.job_type}", retryable=False
            )

        try:
            result = await asyncio.wait_for(handler(job), timeout=self.handler_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "job_handler_timeout",
                job_id=job.id,
                job_type=job.job_type,
                timeout_seconds=self.handler_timeout_seconds,
            )
            return JobResult.failure(
                f"Handler timed out after {self.handler_timeout_seconds}s"
            )
        except Exception as e:
            logger.error(
                "job_handler_error",
                job_id=job.id,
                job_type=job.job_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            return JobResult.failure(str(e) or type(e).__name__)

        return result if result is not None else JobResult.ok()

    @staticmethod
    def _owned(job_id: int, claim_token: Optional[str]) -> Any:
        predicate = and_(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
        if claim_token is not None:
            predicate = and_(predicate, Job.claim_token == claim_token)
        return predicate

    async def renew_claim(self, job: Job) -> bool:
        """
        Restart the lease on a claimed job just before it runs.

        Jobs later in a batch wait for the ones ahead of them; renewing keeps
        the sweeper from treating that wait as a crashed poller.

        Args:
            job: Job returned by claim_batch

        Returns:
            bool: False if the claim was swept or taken over meanwhile
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(self._owned(job.id, job.claim_token))
            .values(claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

        if result.rowcount != 1:
            logger.warning("job_claim_lost", job_id=job.id, job_type=job.job_type)
            metrics.record_claim_conflict()
            return False
        return True

    async def complete(self, job_id: int, claim_token: Optional[str] = None) -> bool:
        """
        Record a successful attempt.

        Args:
            job_id: Job id
            claim_token: Token of the claim reporting the outcome; when given,
                the outcome only applies while that claim is current

        Returns:
            bool: False if the job was no longer processing under this claim
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(self._owned(job_id, claim_token))
            .values(
                status=JobStatus.COMPLETED.value,
                completed_at=now,
                last_error=None,
                attempt_count=Job.attempt_count + 1,
                claim_token=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

        if result.rowcount != 1:
            logger.warning("job_outcome_discarded", job_id=job_id, outcome="completed")
            return False

        logger.info("job_completed", job_id=job_id)
        return True

    async def fail(
        self,
        job_id: int,
        error: str,
        retryable: bool = True,
        claim_token: Optional[str] = None,
    ) -> Optional[Job]:
        """
        Record a failed attempt.

        Retryable failures consume one attempt and wait out the backoff;
        permanent failures use up the whole budget. Either way, a job with
        no attempts left is dead-lettered.

        Args:
            job_id: Job id
            error: Human-readable error
            retryable: Whether the job may be reattempted
            claim_token: Token of the claim reporting the outcome

        Returns:
            Optional[Job]: Updated job, or None if it was no longer processing
                under this claim
        """
        now = utcnow()
        values: Dict[str, Any] = {
            "status": JobStatus.FAILED.value,
            "last_error": (error or "Unknown processing error")[:MAX_ERROR_LENGTH],
            "claim_token": None,
            "updated_at": now,
        }
        if retryable:
            values["attempt_count"] = Job.attempt_count + 1
        else:
            values["attempt_count"] = Job.max_attempts

        stmt = (
            update(Job)
            .where(self._owned(job_id, claim_token))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            if result.rowcount != 1:
                await db.commit()
                logger.warning("job_outcome_discarded", job_id=job_id, outcome="failed")
                return None

            job = await db.get(Job, job_id)
            if job is not None and not job.is_dead_lettered:
                job.next_attempt_at = now + self.backoff_delay(job.attempt_count)
            await db.commit()

        if job is None:
            return None

        if job.is_dead_lettered:
            logger.error(
                "job_dead_lettered",
                job_id=job.id,
                job_type=job.job_type,
                subject_id=job.subject_id,
                attempt_count=job.attempt_count,
                last_error=job.last_error,
            )
            metrics.record_dead_letter(job.job_type)
        else:
            logger.warning(
                "job_failed",
                job_id=job.id,
                job_type=job.job_type,
                attempt_count=job.attempt_count,
                max_attempts=job.max_attempts,
                next_attempt_at=job.next_attempt_at.isoformat() if job.next_attempt_at else None,
                error=job.last_error,
            )
        return job

    def backoff_delay(self, attempt_count: int) -> timedelta:
        """Exponential backoff: base * 2^(attempts - 1), capped."""
        exponent = max(attempt_count - 1, 0)
        delay = min(
            self.retry_base_delay_seconds * (2 ** exponent),
            self.retry_max_delay_seconds,
        )
        return timedelta(seconds=delay)

    async def process_batch(self, limit: int) -> BatchStats:
        """
        Claim one batch and run each job in isolation.

        Args:
            limit: Maximum jobs to claim

        Returns:
            BatchStats: Outcome counters
        """
        stats = BatchStats(batches=1)
        jobs = await self.claim_batch(limit)
        stats.claimed = len(jobs)

        for job in jobs:
            if not await self.renew_claim(job):
                stats.lost += 1
                continue

            started = time.monotonic()
            result = await self.dispatch(job)
            duration = time.monotonic() - started

            if result.success:
                if not await self.complete(job.id, claim_token=job.claim_token):
                    stats.lost += 1
                    continue
                if result.is_skip:
                    stats.skipped += 1
                    metrics.record_job_outcome(job.job_type, "skipped", duration)
                else:
                    stats.completed += 1
                    metrics.record_job_outcome(job.job_type, "completed", duration)
                continue

            updated = await self.fail(
                job.id,
                result.error or "",
                retryable=result.retryable,
                claim_token=job.claim_token,
            )
            if updated is None:
                stats.lost += 1
                continue
            stats.failed += 1
            metrics.record_job_outcome(job.job_type, "failed", duration)
            if updated.is_dead_lettered:
                stats.dead_lettered += 1

        return stats

    async def drain(self, limit: int, time_budget_seconds: float) -> BatchStats:
        """
        Process batches until none are claimable or the time budget is spent.

        Args:
            limit: Batch size
            time_budget_seconds: Wall-clock budget for the whole drain

        Returns:
            BatchStats: Aggregated counters
        """
        deadline = time.monotonic() + time_budget_seconds
        total = BatchStats()

        while time.monotonic() < deadline:
            stats = await self.process_batch(limit)
            total.merge(stats)
            if stats.claimed == 0:
                break

        logger.info("job_queue_drained", **total.to_dict())
        return total

    async def sweep_stale(self, older_than: datetime) -> int:
        """
        Count claims older than `older_than` as failed attempts.

        Covers pollers that crashed mid-job. Each stale job is released with
        its own conditional update so a late complete()/fail() from a slow
        poller and the sweep cannot both apply.

        Args:
            older_than: Claims made before this instant are stale

        Returns:
            int: Number of jobs released
        """
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Job.id).where(
                    Job.status == JobStatus.PROCESSING.value,
                    Job.claimed_at < older_than,
                )
            )
            stale_ids = list(result.scalars().all())

        released = 0
        for job_id in stale_ids:
            stmt = (
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.PROCESSING.value,
                    Job.claimed_at < older_than,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    attempt_count=Job.attempt_count + 1,
                    last_error=STALE_CLAIM_ERROR,
                    claim_token=None,
                    next_attempt_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            async with self.session_factory() as db:
                update_result = await db.execute(stmt)
                await db.commit()
                if update_result.rowcount != 1:
                    continue
                released += 1
                job = await db.get(Job, job_id)

            if job is not None and job.is_dead_lettered:
                logger.error(
                    "job_dead_lettered",
                    job_id=job.id,
                    job_type=job.job_type,
                    subject_id=job.subject_id,
                    attempt_count=job.attempt_count,
                    last_error=job.last_error,
                )
                metrics.record_dead_letter(job.job_type)

        if released:
            logger.warning("job_stale_claims_reclaimed", count=released)
        metrics.record_stale_reclaimed("work_queue", released)
        return released

    async def archive_finished(self, older_than: datetime) -> int:
        """
        Archive completed and dead-lettered jobs last touched before `older_than`.

        Args:
            older_than: Cutoff timestamp

        Returns:
            int: Number of jobs archived
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(
                Job.archived_at.is_(None),
                Job.updated_at < older_than,
                or_(
                    Job.status == JobStatus.COMPLETED.value,
                    and_(
                        Job.status == JobStatus.FAILED.value,
                        Job.attempt_count >= Job.max_attempts,
                    ),
                ),
            )
            .values(archived_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

        count = result.rowcount or 0
        logger.info("jobs_archived", count=count)
        return count

    async def get_job(self, job_id: int) -> Optional[Job]:
        """Fetch a job by id."""
        async with self.session_factory() as db:
            return await db.get(Job, job_id)

    async def list_dead_letters(self, limit: int = 100) -> List[Job]:
        """
        List dead-lettered jobs that are not archived, oldest first.

        Args:
            limit: Maximum jobs to return

        Returns:
            List[Job]: Dead-lettered jobs
        """
        stmt = (
            select(Job)
            .where(
                Job.status == JobStatus.FAILED.value,
                Job.attempt_count >= Job.max_attempts,
                Job.archived_at.is_(None),
            )
            .order_by(Job.id)
            .limit(limit)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def status_counts(self) -> Dict[str, int]:
        """
        Count unarchived jobs by status, with dead letters split out of failed.

        Returns:
            Dict[str, int]: Counts keyed by status plus 'dead_lettered'
        """
        counts = {status.value: 0 for status in JobStatus}
        counts["dead_lettered"] = 0

        async with self.session_factory() as db:
            result = await db.execute(
                select(Job.status, func.count(Job.id))
                .where(Job.archived_at.is_(None))
                .group_by(Job.status)
            )
            for status, count in result.all():
                counts[status] = count

            dead = await db.execute(
                select(func.count(Job.id)).where(
                    Job.status == JobStatus.FAILED.value,
                    Job.attempt_count >= Job.max_attempts,
                    Job.archived_at.is_(None),
                )
            )
            counts["dead_lettered"] = dead.scalar_one()

        counts[JobStatus.FAILED.value] -= counts["dead_lettered"]
        metrics.set_queue_depth(counts)
        return counts
