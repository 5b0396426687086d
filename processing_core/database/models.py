"""SQLAlchemy database models for the processing core."""
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT keys do not autoincrement on SQLite, which only aliases INTEGER PRIMARY KEY to rowid
BigIntegerKey = BigInteger().with_variant(Integer(), "sqlite")
JSONPayload = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class LedgerEntry(Base):
    """
    Webhook event ledger table.

    One row per (provider, event_id). Rows are never deleted; they are the
    audit trail of every externally delivered notification and its outcome.
    """

    __tablename__ = "webhook_event_ledger"

    id: Mapped[int] = mapped_column(BigIntegerKey, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    signature_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONPayload, nullable=False, default=dict)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_event_ledger_provider_event"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'processed', 'failed')",
            name="valid_ledger_status",
        ),
        Index("idx_webhook_event_ledger_status_claimed", "status", "claimed_at"),
    )

    def __repr__(self) -> str:
        """String representation of LedgerEntry."""
        return (
            f"<LedgerEntry(id={self.id}, provider={self.provider}, "
            f"event_id={self.event_id}, status={self.status})>"
        )


class Job(Base):
    """
    Background processing jobs table.

    The autoincrement id defines insertion order within a priority tier.
    A failed job whose attempt_count reached max_attempts is dead-lettered.
    claim_token identifies the current claim; outcomes from an older claim
    do not match it and are discarded.
    """

    __tablename__ = "processing_jobs"

    id: Mapped[int] = mapped_column(BigIntegerKey, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="normal")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    payload: Mapped[Dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("attempt_count <= max_attempts", name="attempts_within_budget"),
        CheckConstraint("max_attempts >= 1", name="positive_max_attempts"),
        CheckConstraint("priority IN ('high', 'normal')", name="valid_job_priority"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="valid_job_status",
        ),
        Index("idx_processing_jobs_claimable", "status", "priority", "id"),
        Index("idx_processing_jobs_claimed_at", "status", "claimed_at"),
    )

    @property
    def is_dead_lettered(self) -> bool:
        """A failed job with no attempts left is never reclaimed."""
        return self.status == "failed" and self.attempt_count >= self.max_attempts

    def __repr__(self) -> str:
        """String representation of Job."""
        return (
            f"<Job(id={self.id}, type={self.job_type}, subject={self.subject_id}, "
            f"status={self.status}, attempts={self.attempt_count}/{self.max_attempts})>"
        )


class PromoCode(Base):
    """Promo codes with their aggregate redemption counter."""

    __tablename__ = "promo_codes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    times_redeemed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        """String representation of PromoCode."""
        return f"<PromoCode(id={self.id}, code={self.code}, times_redeemed={self.times_redeemed})>"


class RedemptionRecord(Base):
    """
    Promo code redemptions table.

    transaction_id is derived from (scope, user_id, source_ref), so a retried
    checkout maps onto the same row and collides on the unique constraint.
    """

    __tablename__ = "promo_code_redemptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    promo_code_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("promo_codes.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(String(50), nullable=False)
    plan_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    applied_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    final_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    metadata_: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONPayload, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        CheckConstraint("discount_cents > 0", name="positive_discount"),
        CheckConstraint("length(currency) = 3", name="valid_redemption_currency"),
    )

    def __repr__(self) -> str:
        """String representation of RedemptionRecord."""
        return (
            f"<RedemptionRecord(id={self.id}, promo_code_id={self.promo_code_id}, "
            f"transaction_id={self.transaction_id}, discount={self.discount_cents})>"
        )


class Entitlement(Base):
    """Granted rights to paid resources, the effect webhook processing protects."""

    __tablename__ = "entitlements"

    id: Mapped[int] = mapped_column(BigIntegerKey, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "resource_id", "source_ref", name="uq_entitlements_user_resource_source"
        ),
    )

    def __repr__(self) -> str:
        """String representation of Entitlement."""
        return (
            f"<Entitlement(id={self.id}, user_id={self.user_id}, "
            f"resource_id={self.resource_id}, source_ref={self.source_ref})>"
        )


class MediaAsset(Base):
    """Uploaded media, the subject of face-index and preview jobs."""

    __tablename__ = "media"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    face_recognition_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    watermark_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    faces_indexed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    faces_detected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    preview_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    thumbnail_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        """String representation of MediaAsset."""
        return f"<MediaAsset(id={self.id}, faces_indexed={self.faces_indexed})>"


class FaceDetection(Base):
    """Faces indexed from a media asset."""

    __tablename__ = "face_detections"

    id: Mapped[int] = mapped_column(BigIntegerKey, primary_key=True, autoincrement=True)
    media_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("media.id"), nullable=False, index=True
    )
    face_id: Mapped[str] = mapped_column(String(255), nullable=False)
    bounding_box: Mapped[Dict[str, Any]] = mapped_column(JSONPayload, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        """String representation of FaceDetection."""
        return f"<FaceDetection(id={self.id}, media_id={self.media_id}, face_id={self.face_id})>"
