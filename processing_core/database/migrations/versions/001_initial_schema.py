"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create webhook_event_ledger table
    op.create_table(
        "webhook_event_ledger",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("signature_verified", sa.Boolean(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'processed', 'failed')",
            name="valid_ledger_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider", "event_id", name="uq_webhook_event_ledger_provider_event"
        ),
    )
    op.create_index(
        op.f("ix_webhook_event_ledger_status"), "webhook_event_ledger", ["status"], unique=False
    )
    op.create_index(
        "idx_webhook_event_ledger_status_claimed",
        "webhook_event_ledger",
        ["status", "claimed_at"],
        unique=False,
    )

    # Create processing_jobs table
    op.create_table(
        "processing_jobs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("subject_id", sa.String(length=255), nullable=False),
        sa.Column("job_type", sa.String(length=50), nullable=False),
        sa.Column("priority", sa.String(length=10), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_token", sa.String(length=36), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("attempt_count <= max_attempts", name="attempts_within_budget"),
        sa.CheckConstraint("max_attempts >= 1", name="positive_max_attempts"),
        sa.CheckConstraint("priority IN ('high', 'normal')", name="valid_job_priority"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="valid_job_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_processing_jobs_subject_id"), "processing_jobs", ["subject_id"], unique=False
    )
    op.create_index(
        "idx_processing_jobs_claimable",
        "processing_jobs",
        ["status", "priority", "id"],
        unique=False,
    )
    op.create_index(
        "idx_processing_jobs_claimed_at",
        "processing_jobs",
        ["status", "claimed_at"],
        unique=False,
    )

    # Create promo_codes table
    op.create_table(
        "promo_codes",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("times_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
    )

    # Create promo_code_redemptions table
    op.create_table(
        "promo_code_redemptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("promo_code_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("scope", sa.String(length=50), nullable=False),
        sa.Column("plan_reference", sa.String(length=255), nullable=True),
        sa.Column("transaction_id", sa.String(length=36), nullable=False),
        sa.Column("applied_amount_cents", sa.Integer(), nullable=False),
        sa.Column("discount_cents", sa.Integer(), nullable=False),
        sa.Column("final_amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("discount_cents > 0", name="positive_discount"),
        sa.CheckConstraint("length(currency) = 3", name="valid_redemption_currency"),
        sa.ForeignKeyConstraint(["promo_code_id"], ["promo_codes.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id"),
    )
    op.create_index(
        op.f("ix_promo_code_redemptions_promo_code_id"),
        "promo_code_redemptions",
        ["promo_code_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_promo_code_redemptions_user_id"),
        "promo_code_redemptions",
        ["user_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_promo_code_redemptions_created_at"),
        "promo_code_redemptions",
        ["created_at"],
        unique=False,
    )

    # Create entitlements table
    op.create_table(
        "entitlements",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=False),
        sa.Column("source_ref", sa.String(length=255), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id", "resource_id", "source_ref", name="uq_entitlements_user_resource_source"
        ),
    )
    op.create_index(op.f("ix_entitlements_user_id"), "entitlements", ["user_id"], unique=False)

    # Create media and face_detections tables
    op.create_table(
        "media",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("storage_path", sa.String(length=1024), nullable=False),
        sa.Column("face_recognition_enabled", sa.Boolean(), nullable=False),
        sa.Column("watermark_enabled", sa.Boolean(), nullable=False),
        sa.Column("faces_indexed", sa.Boolean(), nullable=False),
        sa.Column("faces_detected", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("preview_path", sa.String(length=1024), nullable=True),
        sa.Column("thumbnail_path", sa.String(length=1024), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "face_detections",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("media_id", sa.String(length=64), nullable=False),
        sa.Column("face_id", sa.String(length=255), nullable=False),
        sa.Column("bounding_box", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["media_id"], ["media.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_face_detections_media_id"), "face_detections", ["media_id"], unique=False
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(op.f("ix_face_detections_media_id"), table_name="face_detections")
    op.drop_table("face_detections")
    op.drop_table("media")
    op.drop_index(op.f("ix_entitlements_user_id"), table_name="entitlements")
    op.drop_table("entitlements")
    op.drop_index(
        op.f("ix_promo_code_redemptions_created_at"), table_name="promo_code_redemptions"
    )
    op.drop_index(op.f("ix_promo_code_redemptions_user_id"), table_name="promo_code_redemptions")
    op.drop_index(
        op.f("ix_promo_code_redemptions_promo_code_id"), table_name="promo_code_redemptions"
    )
    op.drop_table("promo_code_redemptions")
    op.drop_table("promo_codes")
    op.drop_index("idx_processing_jobs_claimed_at", table_name="processing_jobs")
    op.drop_index("idx_processing_jobs_claimable", table_name="processing_jobs")
    op.drop_index(op.f("ix_processing_jobs_subject_id"), table_name="processing_jobs")
    op.drop_table("processing_jobs")
    op.drop_index("idx_webhook_event_ledger_status_claimed", table_name="webhook_event_ledger")
    op.drop_index(op.f("ix_webhook_event_ledger_status"), table_name="webhook_event_ledger")
    op.drop_table("webhook_event_ledger")
