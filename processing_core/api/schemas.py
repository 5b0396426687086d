"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EnqueueJobRequest(BaseModel):
    """Request schema for enqueuing a job."""

    subject_id: str = Field(..., min_length=1, description="Entity the job works on (media id)")
    job_type: str = Field(..., min_length=1, description="Job type (face_index, preview_generate)")
    priority: Literal["high", "normal"] = Field(default="normal", description="Job priority")
    payload: Optional[Dict[str, Any]] = Field(default=None, description="Opaque job payload")
    max_attempts: Optional[int] = Field(default=None, ge=1, description="Retry budget")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "subject_id": "media_01HZX3",
                    "job_type": "face_index",
                    "priority": "high",
                    "payload": {"collection_id": "event_42"},
                }
            ]
        }
    }


class JobResponse(BaseModel):
    """Response schema for a job."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Job ID")
    subject_id: str = Field(..., description="Subject ID")
    job_type: str = Field(..., description="Job type")
    priority: str = Field(..., description="Job priority")
    status: str = Field(..., description="Job status")
    attempt_count: int = Field(..., description="Finished attempts")
    max_attempts: int = Field(..., description="Retry budget")
    last_error: Optional[str] = Field(default=None, description="Last failure reason")
    next_attempt_at: Optional[datetime] = Field(default=None, description="Backoff gate")
    claimed_at: Optional[datetime] = Field(default=None, description="Last claim timestamp")
    completed_at: Optional[datetime] = Field(default=None, description="Completion timestamp")


class CronRunResponse(BaseModel):
    """Response schema for a media processing cron run."""

    ok: bool = Field(..., description="Whether the run finished")
    limit: int = Field(..., description="Batch size used")
    stats: Dict[str, int] = Field(..., description="Aggregated batch counters")
    duration_seconds: float = Field(..., description="Run duration")


class SweepResponse(BaseModel):
    """Response schema for a stale claim sweep."""

    ledger_reclaimed: int = Field(..., description="Ledger entries returned to failed")
    jobs_reclaimed: int = Field(..., description="Jobs returned to failed")


class RedemptionRequest(BaseModel):
    """Request schema for committing a redemption."""

    promo_code_id: Optional[str] = Field(default=None, description="Promo code UUID")
    user_id: str = Field(..., description="Redeeming user")
    scope: Literal["creator_subscription", "vault_subscription", "drop_in_credits"] = Field(
        ..., description="Product scope"
    )
    applied_amount_cents: int = Field(default=0, description="Amount the discount applies to")
    discount_cents: int = Field(default=0, description="Discount granted")
    final_amount_cents: int = Field(default=0, description="Amount charged after discount")
    currency: str = Field(default="USD", min_length=3, max_length=3, description="Currency code")
    source_ref: Optional[str] = Field(default=None, description="Checkout reference")
    promo_code: Optional[str] = Field(default=None, description="Human-readable code")
    plan_reference: Optional[str] = Field(default=None, description="Plan or product reference")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Extra metadata")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()


class RedemptionResponse(BaseModel):
    """Response schema for a redemption commit."""

    created: bool = Field(..., description="A new redemption was recorded")
    duplicate: bool = Field(..., description="The checkout was already redeemed")
    reason: Optional[str] = Field(default=None, description="Why nothing was created")
    transaction_id: Optional[str] = Field(default=None, description="Deterministic transaction id")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="success, duplicate, escalated or no_handler")
    provider: str = Field(..., description="Provider name")
    event_id: str = Field(..., description="Provider event identity")
    event_type: str = Field(..., description="Event type")
    row_id: Optional[int] = Field(default=None, description="Ledger row id")
    ledger_status: Optional[str] = Field(default=None, description="Ledger status for replays")
    message: Optional[str] = Field(default=None, description="Additional information")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Handler result")


class LedgerEntryResponse(BaseModel):
    """Response schema for a ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Ledger row id")
    provider: str = Field(..., description="Provider name")
    event_id: str = Field(..., description="Provider event identity")
    event_type: str = Field(..., description="Event type")
    status: str = Field(..., description="Ledger status")
    signature_verified: bool = Field(..., description="Signature check result")
    failure_reason: Optional[str] = Field(default=None, description="Last failure reason")
    attempt_count: int = Field(..., description="Processing claims so far")
    claimed_at: Optional[datetime] = Field(default=None, description="Last claim timestamp")


class LedgerEntryList(BaseModel):
    """Response schema for a list of ledger entries."""

    entries: List[LedgerEntryResponse]


class JobList(BaseModel):
    """Response schema for a list of jobs."""

    jobs: List[JobResponse]


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    message: Optional[str] = Field(default=None, description="Status message")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
