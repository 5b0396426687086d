"""
Unit tests for the redemption ledger.
"""
import re
import uuid
from typing import Any, Dict

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from processing_core.core.redemption_ledger import (
    RedemptionError,
    RedemptionLedger,
    as_minor_amount,
    derive_transaction_id,
)
from processing_core.database.models import PromoCode, RedemptionRecord

UUID_SHAPE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


def checkout(promo_code: PromoCode, **overrides: Any) -> Dict[str, Any]:
    """Commit arguments for a typical discounted subscription checkout."""
    params: Dict[str, Any] = {
        "promo_code_id": str(promo_code.id),
        "user_id": "user_42",
        "scope": "creator_subscription",
        "applied_amount_cents": 5000,
        "discount_cents": 1500,
        "final_amount_cents": 3500,
        "currency": "usd",
        "source_ref": "cs_test_abc123",
        "promo_code": promo_code.code,
        "plan_reference": "creator_monthly",
    }
    params.update(overrides)
    return params


async def times_redeemed(session_factory, promo_code: PromoCode) -> int:
    async with session_factory() as db:
        promo = await db.get(PromoCode, promo_code.id)
        return promo.times_redeemed


class TestTransactionId:
    """Deterministic idempotency key derivation."""

    @pytest.mark.unit
    def test_same_checkout_same_id(self) -> None:
        first = derive_transaction_id("creator_subscription", "user_42", "cs_1")
        second = derive_transaction_id("creator_subscription", "user_42", "cs_1")

        assert first == second
        assert UUID_SHAPE.match(first)

    @pytest.mark.unit
    def test_scope_user_and_ref_all_matter(self) -> None:
        base = derive_transaction_id("creator_subscription", "user_42", "cs_1")

        assert derive_transaction_id("vault_subscription", "user_42", "cs_1") != base
        assert derive_transaction_id("creator_subscription", "user_43", "cs_1") != base
        assert derive_transaction_id("creator_subscription", "user_42", "cs_2") != base

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "value,expected",
        [(1500, 1500), (1499.6, 1500), ("250", 250), (-10, 0), (None, 0), ("abc", 0)],
    )
    def test_as_minor_amount(self, value: Any, expected: int) -> None:
        assert as_minor_amount(value) == expected


class TestCommit:
    """Test suite for committing redemptions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_commit_creates_record(
        self, redemptions: RedemptionLedger, promo_code: PromoCode, session_factory
    ) -> None:
        outcome = await redemptions.commit(**checkout(promo_code, metadata={"channel": "web"}))

        assert outcome.created is True
        assert outcome.duplicate is False
        assert outcome.reason is None
        assert outcome.transaction_id == derive_transaction_id(
            "creator_subscription", "user_42", "cs_test_abc123"
        )

        record = await redemptions.get_redemption(
            "creator_subscription", "user_42", "cs_test_abc123"
        )
        assert record is not None
        assert record.discount_cents == 1500
        assert record.currency == "USD"
        assert record.plan_reference == "creator_monthly"
        assert record.metadata_ == {
            "channel": "web",
            "source_ref": "cs_test_abc123",
            "promo_code": promo_code.code,
        }
        assert await times_redeemed(session_factory, promo_code) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retried_checkout_is_duplicate(
        self, redemptions: RedemptionLedger, promo_code: PromoCode, session_factory
    ) -> None:
        first = await redemptions.commit(**checkout(promo_code))
        second = await redemptions.commit(**checkout(promo_code))

        assert first.created is True
        assert second.created is False
        assert second.duplicate is True
        assert second.transaction_id == first.transaction_id

        async with session_factory() as db:
            count = await db.execute(select(func.count(RedemptionRecord.id)))
            assert count.scalar_one() == 1
        assert await times_redeemed(session_factory, promo_code) == 1
        assert await redemptions.total_discount_cents(promo_code.id) == 1500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_distinct_checkouts_each_redeem(
        self, redemptions: RedemptionLedger, promo_code: PromoCode, session_factory
    ) -> None:
        await redemptions.commit(**checkout(promo_code, source_ref="cs_1"))
        await redemptions.commit(**checkout(promo_code, source_ref="cs_2"))

        assert await times_redeemed(session_factory, promo_code) == 2
        assert await redemptions.total_discount_cents(str(promo_code.id)) == 3000

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides,reason",
        [
            ({"promo_code_id": None}, "missing_promo_code_id"),
            ({"promo_code_id": "not-a-uuid"}, "missing_promo_code_id"),
            ({"source_ref": ""}, "missing_source_ref"),
            ({"user_id": ""}, "missing_user_id"),
            ({"discount_cents": 0}, "zero_discount"),
            ({"discount_cents": -200}, "zero_discount"),
            ({"discount_cents": 0.4}, "zero_discount"),
        ],
    )
    async def test_rejected_commits_create_nothing(
        self,
        redemptions: RedemptionLedger,
        promo_code: PromoCode,
        session_factory,
        overrides: Dict[str, Any],
        reason: str,
    ) -> None:
        outcome = await redemptions.commit(**checkout(promo_code, **overrides))

        assert outcome.created is False
        assert outcome.duplicate is False
        assert outcome.reason == reason
        assert outcome.to_dict() == {"created": False, "duplicate": False, "reason": reason}
        assert await times_redeemed(session_factory, promo_code) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_promo_code_raises(self, redemptions: RedemptionLedger) -> None:
        """A foreign key violation is not mistaken for a duplicate."""
        ghost = PromoCode(id=uuid.uuid4(), code="GHOST")

        with pytest.raises(RedemptionError):
            await redemptions.commit(**checkout(ghost))


class TestRedemptionCounter:
    """The aggregate counter is secondary to the redemption record."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fallback_when_atomic_increment_fails(
        self,
        redemptions: RedemptionLedger,
        promo_code: PromoCode,
        session_factory,
        mocker: Any,
    ) -> None:
        mocker.patch.object(
            redemptions, "_increment_atomic", side_effect=SQLAlchemyError("function missing")
        )
        fallback = mocker.patch(
            "processing_core.core.redemption_ledger.metrics.record_counter_fallback"
        )

        outcome = await redemptions.commit(**checkout(promo_code))

        assert outcome.created is True
        fallback.assert_called_once()
        assert await times_redeemed(session_factory, promo_code) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_counter_failure_never_hides_redemption(
        self,
        redemptions: RedemptionLedger,
        promo_code: PromoCode,
        session_factory,
        mocker: Any,
    ) -> None:
        mocker.patch.object(
            redemptions, "_increment_atomic", side_effect=SQLAlchemyError("down")
        )
        mocker.patch.object(
            redemptions, "_increment_read_modify_write", side_effect=SQLAlchemyError("down")
        )
        failure = mocker.patch(
            "processing_core.core.redemption_ledger.metrics.record_counter_failure"
        )

        outcome = await redemptions.commit(**checkout(promo_code))

        assert outcome.created is True
        failure.assert_called_once()
        assert await times_redeemed(session_factory, promo_code) == 0
        assert (
            await redemptions.get_redemption("creator_subscription", "user_42", "cs_test_abc123")
            is not None
        )
