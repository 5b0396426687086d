"""
Redemption ledger for one-time discount commits.

A checkout may be retried by the client and confirmed again by a duplicate
webhook. The discount must still be applied once:

- The idempotency key is derived from (scope, user_id, source_ref), so every
  retry of the same checkout computes the same transaction_id
- The insert is keyed by that transaction_id; a collision is a duplicate,
  which callers treat as success
- The promo code's aggregate counter is bumped afterwards as a secondary,
  at-least-once step
"""
import hashlib
import math
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from processing_core.database.models import PromoCode, RedemptionRecord
from processing_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PromoScope(str, Enum):
    """Products a promo code can be redeemed against."""

    CREATOR_SUBSCRIPTION = "creator_subscription"
    VAULT_SUBSCRIPTION = "vault_subscription"
    DROP_IN_CREDITS = "drop_in_credits"


class RedemptionReason(str, Enum):
    """Reasons a commit created nothing without being a duplicate."""

    MISSING_PROMO_CODE_ID = "missing_promo_code_id"
    MISSING_SOURCE_REF = "missing_source_ref"
    MISSING_USER_ID = "missing_user_id"
    ZERO_DISCOUNT = "zero_discount"


class RedemptionError(Exception):
    """Raised when a redemption cannot be recorded."""

    pass


@dataclass(frozen=True)
class RedemptionOutcome:
    """Result of a commit attempt."""

    created: bool
    duplicate: bool
    reason: Optional[str] = None
    transaction_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"created": self.created, "duplicate": self.duplicate}
        if self.reason is not None:
            result["reason"] = self.reason
        if self.transaction_id is not None:
            result["transaction_id"] = self.transaction_id
        return result


def derive_transaction_id(scope: str, user_id: str, source_ref: str) -> str:
    """
    Derive the deterministic transaction reference for a checkout.

    Format: SHA-256 of "{scope}:{user_id}:{source_ref}", first 32 hex digits
    grouped 8-4-4-4-12.

    Args:
        scope: Product scope
        user_id: Redeeming user
        source_ref: Checkout reference (session id, provider reference)

    Returns:
        str: UUID-shaped transaction id
    """
    digest = hashlib.sha256(f"{scope}:{user_id}:{source_ref}".encode()).hexdigest()
    return f"{digest[:8]}-{digest[8:12]}-{digest[12:16]}-{digest[16:20]}-{digest[20:32]}"


def as_minor_amount(value: Any) -> int:
    """Normalize an amount to non-negative integer minor units."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(parsed):
        return 0
    return max(0, int(round(parsed)))


def parse_promo_code_id(value: Any) -> Optional[uuid.UUID]:
    """Parse a promo code id, returning None for anything that isn't a UUID."""
    if isinstance(value, uuid.UUID):
        return value
    if not value or not isinstance(value, str):
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


class RedemptionLedger:
    """
    Commits promo code redemptions exactly once per checkout.

    The financial effect is exactly-once per source_ref. The times_redeemed
    counter is at-least-once and can drift under the fallback path.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize redemption ledger.

        Args:
            session_factory: Factory for sessions against the shared store
        """
        self.session_factory = session_factory

    async def commit(
        self,
        promo_code_id: Any,
        user_id: str,
        scope: str,
        applied_amount_cents: Any,
        discount_cents: Any,
        final_amount_cents: Any,
        currency: str,
        source_ref: str,
        metadata: Optional[Dict[str, Any]] = None,
        promo_code: Optional[str] = None,
        plan_reference: Optional[str] = None,
    ) -> RedemptionOutcome:
        """
        Commit a redemption for an already-validated discount.

        Args:
            promo_code_id: Promo code UUID
            user_id: Redeeming user
            scope: Product scope
            applied_amount_cents: Amount the discount was applied to
            discount_cents: Discount granted
            final_amount_cents: Amount charged after discount
            currency: ISO currency code
            source_ref: Checkout reference the idempotency key derives from
            metadata: Extra metadata stored on the record
            promo_code: Human-readable code, stored in metadata
            plan_reference: Plan or product reference

        Returns:
            RedemptionOutcome: created once; duplicate=True on every retry

        Raises:
            RedemptionError: If the insert fails for a reason other than a
                duplicate transaction id
        """
        parsed_promo_code_id = parse_promo_code_id(promo_code_id)
        if parsed_promo_code_id is None:
            return self._rejected(scope, RedemptionReason.MISSING_PROMO_CODE_ID)
        if not source_ref:
            return self._rejected(scope, RedemptionReason.MISSING_SOURCE_REF)
        if not user_id:
            return self._rejected(scope, RedemptionReason.MISSING_USER_ID)

        applied = as_minor_amount(applied_amount_cents)
        discount = as_minor_amount(discount_cents)
        final = as_minor_amount(final_amount_cents)
        if discount <= 0:
            return self._rejected(scope, RedemptionReason.ZERO_DISCOUNT)

        transaction_id = derive_transaction_id(scope, user_id, source_ref)
        record = RedemptionRecord(
            promo_code_id=parsed_promo_code_id,
            user_id=user_id,
            scope=scope,
            plan_reference=plan_reference,
            transaction_id=transaction_id,
            applied_amount_cents=applied,
            discount_cents=discount,
            final_amount_cents=final,
            currency=(currency or "USD").upper(),
            metadata_={
                **(metadata or {}),
                "source_ref": source_ref,
                "promo_code": promo_code,
            },
        )

        async with self.session_factory() as db:
            db.add(record)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                existing = await self._find(db, transaction_id)
                if existing is None:
                    logger.error(
                        "redemption_insert_failed",
                        transaction_id=transaction_id,
                        promo_code_id=str(parsed_promo_code_id),
                        error=str(e),
                    )
                    raise RedemptionError(
                        f"Failed to record redemption {transaction_id}"
                    ) from e

                logger.info(
                    "redemption_duplicate",
                    transaction_id=transaction_id,
                    scope=scope,
                    user_id=user_id,
                )
                metrics.record_redemption(scope, "duplicate")
                return RedemptionOutcome(
                    created=False, duplicate=True, transaction_id=transaction_id
                )

        logger.info(
            "redemption_committed",
            transaction_id=transaction_id,
            promo_code_id=str(parsed_promo_code_id),
            scope=scope,
            user_id=user_id,
            discount_cents=discount,
        )
        metrics.record_redemption(scope, "created")

        await self._increment_redemption_count(parsed_promo_code_id)

        return RedemptionOutcome(created=True, duplicate=False, transaction_id=transaction_id)

    @staticmethod
    def _rejected(scope: str, reason: RedemptionReason) -> RedemptionOutcome:
        logger.info("redemption_not_created", scope=scope, reason=reason.value)
        metrics.record_redemption(scope, "rejected")
        return RedemptionOutcome(created=False, duplicate=False, reason=reason.value)

    async def _increment_redemption_count(self, promo_code_id: uuid.UUID) -> None:
        """
        Bump the promo code's times_redeemed counter.

        Tries an atomic increment first. If the store rejects it, falls back
        to read-modify-write, which can undercount when commits for the same
        promo code run concurrently. Failures are logged and counted, never
        raised: the redemption itself is already durable.
        """
        try:
            await self._increment_atomic(promo_code_id)
            return
        except SQLAlchemyError as e:
            logger.warning(
                "redemption_counter_atomic_failed",
                promo_code_id=str(promo_code_id),
                error=str(e),
            )

        metrics.record_counter_fallback()
        try:
            await self._increment_read_modify_write(promo_code_id)
            logger.warning(
                "redemption_counter_fallback_used",
                promo_code_id=str(promo_code_id),
            )
        except SQLAlchemyError as e:
            logger.error(
                "redemption_counter_increment_failed",
                promo_code_id=str(promo_code_id),
                error=str(e),
            )
            metrics.record_counter_failure()

    async def _increment_atomic(self, promo_code_id: uuid.UUID) -> None:
        stmt = (
            update(PromoCode)
            .where(PromoCode.id == promo_code_id)
            .values(times_redeemed=PromoCode.times_redeemed + 1)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

        if result.rowcount == 0:
            logger.warning(
                "redemption_counter_promo_code_missing", promo_code_id=str(promo_code_id)
            )

    async def _increment_read_modify_write(self, promo_code_id: uuid.UUID) -> None:
        async with self.session_factory() as db:
            promo = await db.get(PromoCode, promo_code_id)
            if promo is None:
                logger.warning(
                    "redemption_counter_promo_code_missing",
                    promo_code_id=str(promo_code_id),
                )
                return
            promo.times_redeemed = as_minor_amount(promo.times_redeemed) + 1
            await db.commit()

    async def get_redemption(
        self, scope: str, user_id: str, source_ref: str
    ) -> Optional[RedemptionRecord]:
        """Fetch the redemption a checkout maps to, if it was committed."""
        transaction_id = derive_transaction_id(scope, user_id, source_ref)
        async with self.session_factory() as db:
            return await self._find(db, transaction_id)

    async def total_discount_cents(self, promo_code_id: Any) -> int:
        """Sum of discounts committed against a promo code."""
        parsed = parse_promo_code_id(promo_code_id)
        if parsed is None:
            return 0
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.coalesce(func.sum(RedemptionRecord.discount_cents), 0)).where(
                    RedemptionRecord.promo_code_id == parsed
                )
            )
            return int(result.scalar_one())

    @staticmethod
    async def _find(db: AsyncSession, transaction_id: str) -> Optional[RedemptionRecord]:
        result = await db.execute(
            select(RedemptionRecord).where(RedemptionRecord.transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()
