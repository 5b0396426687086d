"""
Event ledger for deduplicating externally delivered notifications.

Payment providers deliver webhooks at least once. The ledger turns that into
effectively-once application effects:

1. claim() inserts a row keyed by (provider, event_id) in status=processing
2. A unique-key collision means the event was seen before
3. Only a failed entry can be claimed again, through a conditional update

Concurrent deliveries race on the same insert (or the same conditional
update) and exactly one of them wins. Rows are never deleted.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from processing_core.core.timeutils import utcnow
from processing_core.database.models import LedgerEntry
from processing_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LedgerStatus(str, Enum):
    """Ledger entry lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


RECLAIMABLE_STATUSES = (LedgerStatus.FAILED.value, LedgerStatus.PENDING.value)
STALE_CLAIM_REASON = "Claim expired before the event was marked processed"


class EventLedgerError(Exception):
    """Raised when the ledger cannot record or read an event."""

    pass


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of a ledger claim."""

    should_process: bool
    status: str
    row_id: Optional[int]
    escalated: bool = False

    @property
    def is_replay(self) -> bool:
        """The event was already owned; the caller must skip the effect."""
        return not self.should_process


class EventLedger:
    """
    Claims inbound provider events so a handler runs at most once per event.

    Authenticity is the caller's job: signature verification happens before
    claim() and the ledger only records the signature_verified flag.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_replays: int = 10,
    ):
        """
        Initialize event ledger.

        Args:
            session_factory: Factory for sessions against the shared store
            max_replays: Automatic replays of a failed entry after its first
                claim; the next delivery past that is escalated
        """
        self.session_factory = session_factory
        self.max_replays = max_replays

    async def claim(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        signature_verified: bool,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ClaimResult:
        """
        Claim an event for processing.

        Args:
            provider: Payment provider name (e.g. 'stripe')
            event_id: Provider-assigned event identity
            event_type: Provider event type
            signature_verified: Result of the caller's signature check
            payload: Opaque event payload stored for replay

        Returns:
            ClaimResult: should_process=True only for the single winner

        Raises:
            EventLedgerError: If the insert fails for a reason other than a
                duplicate event identity
        """
        now = utcnow()

        async with self.session_factory() as db:
            entry = LedgerEntry(
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                status=LedgerStatus.PROCESSING.value,
                signature_verified=signature_verified,
                payload=payload or {},
                attempt_count=1,
                claimed_at=now,
            )
            db.add(entry)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                existing = await self._find(db, provider, event_id)
                if existing is None:
                    logger.error(
                        "ledger_insert_failed",
                        provider=provider,
                        event_id=event_id,
                        error=str(e),
                    )
                    raise EventLedgerError(f"Failed to record event {provider}/{event_id}") from e
            else:
                logger.info(
                    "ledger_event_claimed",
                    provider=provider,
                    event_id=event_id,
                    event_type=event_type,
                    row_id=entry.id,
                )
                metrics.record_webhook_claim(provider, "claimed")
                return ClaimResult(
                    should_process=True,
                    status=LedgerStatus.PROCESSING.value,
                    row_id=entry.id,
                )

        if existing.status not in RECLAIMABLE_STATUSES:
            logger.info(
                "ledger_event_replay",
                provider=provider,
                event_id=event_id,
                status=existing.status,
                row_id=existing.id,
            )
            metrics.record_webhook_claim(provider, "replay")
            return ClaimResult(should_process=False, status=existing.status, row_id=existing.id)

        # attempt_count includes the first claim
        if existing.attempt_count > self.max_replays:
            logger.error(
                "ledger_event_escalated",
                provider=provider,
                event_id=event_id,
                row_id=existing.id,
                attempt_count=existing.attempt_count,
                failure_reason=existing.failure_reason,
            )
            metrics.record_webhook_claim(provider, "escalated")
            return ClaimResult(
                should_process=False,
                status=existing.status,
                row_id=existing.id,
                escalated=True,
            )

        return await self._reclaim(existing.id, provider=provider)

    async def reprocess(self, row_id: int) -> ClaimResult:
        """
        Claim a failed entry for manual reprocessing from its stored payload.

        Ignores the automatic replay ceiling.

        Args:
            row_id: Ledger row id

        Returns:
            ClaimResult: should_process=True if this call owns the entry

        Raises:
            EventLedgerError: If the entry does not exist
        """
        entry = await self.get_entry(row_id)
        if entry is None:
            raise EventLedgerError(f"Ledger entry {row_id} not found")

        if entry.status not in RECLAIMABLE_STATUSES:
            return ClaimResult(should_process=False, status=entry.status, row_id=entry.id)

        logger.info("ledger_manual_reprocess_requested", row_id=row_id, provider=entry.provider)
        return await self._reclaim(row_id, provider=entry.provider)

    async def _reclaim(self, row_id: int, provider: str) -> ClaimResult:
        """
        Move a failed entry back to processing with a conditional update.

        Args:
            row_id: Ledger row id
            provider: Provider name (for logs and metrics)

        Returns:
            ClaimResult: Winner gets should_process=True
        """
        now = utcnow()
        stmt = (
            update(LedgerEntry)
            .where(
                LedgerEntry.id == row_id,
                LedgerEntry.status.in_(RECLAIMABLE_STATUSES),
            )
            .values(
                status=LedgerStatus.PROCESSING.value,
                claimed_at=now,
                failure_reason=None,
                processed_at=None,
                attempt_count=LedgerEntry.attempt_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

            if result.rowcount == 1:
                logger.info("ledger_event_reclaimed", row_id=row_id, provider=provider)
                metrics.record_webhook_claim(provider, "reclaimed")
                return ClaimResult(
                    should_process=True,
                    status=LedgerStatus.PROCESSING.value,
                    row_id=row_id,
                )

            current = await db.get(LedgerEntry, row_id)

        # Another delivery reclaimed it first
        status = current.status if current is not None else LedgerStatus.PROCESSING.value
        logger.info("ledger_reclaim_lost", row_id=row_id, provider=provider, status=status)
        metrics.record_webhook_claim(provider, "replay")
        return ClaimResult(should_process=False, status=status, row_id=row_id)

    async def mark_processed(self, row_id: int) -> bool:
        """
        Mark an entry processed. Idempotent.

        Args:
            row_id: Ledger row id

        Returns:
            bool: True if this call changed the entry
        """
        now = utcnow()
        stmt = (
            update(LedgerEntry)
            .where(
                LedgerEntry.id == row_id,
                LedgerEntry.status != LedgerStatus.PROCESSED.value,
            )
            .values(
                status=LedgerStatus.PROCESSED.value,
                processed_at=now,
                failure_reason=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

        changed = result.rowcount == 1
        logger.info("ledger_event_processed", row_id=row_id, changed=changed)
        return changed

    async def mark_failed(self, row_id: int, reason: str) -> bool:
        """
        Mark a processing entry failed. It stays eligible for replay or manual
        reprocessing.

        Args:
            row_id: Ledger row id
            reason: Human-readable failure reason

        Returns:
            bool: False if the entry was no longer processing (swept, or
                already processed by another worker)
        """
        now = utcnow()
        stmt = (
            update(LedgerEntry)
            .where(
                LedgerEntry.id == row_id,
                LedgerEntry.status == LedgerStatus.PROCESSING.value,
            )
            .values(
                status=LedgerStatus.FAILED.value,
                failure_reason=reason,
                processed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

        if result.rowcount != 1:
            logger.warning("ledger_outcome_discarded", row_id=row_id, outcome="failed")
            return False

        logger.warning("ledger_event_failed", row_id=row_id, reason=reason)
        return True

    async def get_entry(self, row_id: int) -> Optional[LedgerEntry]:
        """Fetch a ledger entry by id."""
        async with self.session_factory() as db:
            return await db.get(LedgerEntry, row_id)

    async def get_by_identity(self, provider: str, event_id: str) -> Optional[LedgerEntry]:
        """Fetch a ledger entry by (provider, event_id)."""
        async with self.session_factory() as db:
            return await self._find(db, provider, event_id)

    async def list_failed(self, limit: int = 100) -> List[LedgerEntry]:
        """
        List failed entries for operational review, oldest first.

        Args:
            limit: Maximum entries to return

        Returns:
            List[LedgerEntry]: Failed entries
        """
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.status == LedgerStatus.FAILED.value)
            .order_by(LedgerEntry.id)
            .limit(limit)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def sweep_stale(self, older_than: datetime) -> int:
        """
        Return entries stuck in processing since before `older_than` to failed.

        A crash between the handler's effect and mark_processed() leaves the
        entry in processing forever; failing it lets the provider's next
        delivery (or an operator) reprocess it.

        Args:
            older_than: Claims made before this instant are stale

        Returns:
            int: Number of entries reclaimed
        """
        stmt = (
            update(LedgerEntry)
            .where(
                LedgerEntry.status == LedgerStatus.PROCESSING.value,
                LedgerEntry.claimed_at < older_than,
            )
            .values(
                status=LedgerStatus.FAILED.value,
                failure_reason=STALE_CLAIM_REASON,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

        count = result.rowcount or 0
        if count:
            logger.warning("ledger_stale_claims_reclaimed", count=count)
        metrics.record_stale_reclaimed("event_ledger", count)
        return count

    @staticmethod
    async def _find(db: AsyncSession, provider: str, event_id: str) -> Optional[LedgerEntry]:
        stmt = select(LedgerEntry).where(
            LedgerEntry.provider == provider,
            LedgerEntry.event_id == event_id,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()
