"""
API routes for the processing core.
"""
import time
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from processing_core.core.redemption_ledger import RedemptionError
from processing_core.core.timeutils import seconds_ago
from processing_core.core.work_queue import JobValidationError
from processing_core.integrations.signatures import (
    UnknownProviderError,
    WebhookVerificationError,
    verify_webhook,
)
from processing_core.integrations.webhook_handler import WebhookError

from .dependencies import Services, get_services, require_cron_secret
from .schemas import (
    CronRunResponse,
    EnqueueJobRequest,
    HealthCheckResponse,
    JobList,
    JobResponse,
    LedgerEntryList,
    RedemptionRequest,
    RedemptionResponse,
    SweepResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
job_router = APIRouter(prefix="/jobs", tags=["jobs"])
cron_router = APIRouter(
    prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)]
)
redemption_router = APIRouter(prefix="/redemptions", tags=["redemptions"])
admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(require_cron_secret)]
)
monitoring_router = APIRouter(tags=["monitoring"])


@webhook_router.post(
    "/{provider}",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Provider webhook endpoint",
    description="Verify, claim and process a provider webhook",
)
async def provider_webhook(
    provider: str,
    request: Request,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle provider webhook events.

    Replays of an already-claimed event are acknowledged with 200 so the
    provider stops redelivering; handler failures return 500 so it retries.
    """
    body = await request.body()

    try:
        event = verify_webhook(provider, body, request.headers, services.settings)
    except UnknownProviderError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except WebhookVerificationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    logger.info(
        "api_webhook_received",
        provider=event.provider,
        event_id=event.event_id,
        event_type=event.event_type,
    )

    try:
        return await services.webhooks.process(event)
    except WebhookError as e:
        logger.error("api_webhook_error", provider=provider, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )


@job_router.post(
    "",
    response_model=JobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description="Insert a pending background job",
)
async def enqueue_job(
    request: EnqueueJobRequest,
    services: Services = Depends(get_services),
) -> Any:
    """Enqueue a background job."""
    try:
        return await services.queue.enqueue(
            subject_id=request.subject_id,
            job_type=request.job_type,
            priority=request.priority,
            payload=request.payload,
            max_attempts=request.max_attempts,
        )
    except JobValidationError as e:
        logger.warning("api_enqueue_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@job_router.get("/{job_id}", response_model=JobResponse, summary="Get job status")
async def get_job(job_id: int, services: Services = Depends(get_services)) -> Any:
    """Get a job by ID."""
    job = await services.queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


def clamp_limit(limit: Optional[int], default: int, maximum: int) -> int:
    """Clamp a requested batch size to [1, maximum]."""
    if limit is None:
        limit = default
    return max(1, min(limit, maximum))


@cron_router.post(
    "/media-processing",
    response_model=CronRunResponse,
    summary="Process queued media jobs",
    description="Drain the work queue within the configured time budget",
)
async def run_media_processing(
    limit: Optional[int] = Query(default=None, description="Batch size"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Claim and process job batches until the queue is empty or time runs out."""
    settings = services.settings
    batch_limit = clamp_limit(limit, settings.queue_batch_limit, settings.queue_max_batch_limit)
    start_time = time.time()

    logger.info("cron_media_processing_started", limit=batch_limit)
    stats = await services.queue.drain(batch_limit, settings.queue_time_budget_seconds)
    duration = time.time() - start_time

    logger.info(
        "cron_media_processing_completed",
        limit=batch_limit,
        duration_seconds=duration,
        **stats.to_dict(),
    )
    return {
        "ok": True,
        "limit": batch_limit,
        "stats": stats.to_dict(),
        "duration_seconds": duration,
    }


@cron_router.post(
    "/sweep-stale",
    response_model=SweepResponse,
    summary="Sweep stale claims",
    description="Return expired processing claims to a retryable state",
)
async def sweep_stale(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Sweep both the event ledger and the work queue."""
    older_than = seconds_ago(services.settings.stale_claim_timeout_seconds)
    ledger_reclaimed = await services.ledger.sweep_stale(older_than)
    jobs_reclaimed = await services.queue.sweep_stale(older_than)
    return {"ledger_reclaimed": ledger_reclaimed, "jobs_reclaimed": jobs_reclaimed}


@redemption_router.post(
    "",
    response_model=RedemptionResponse,
    summary="Commit a redemption",
    description="Record a validated discount exactly once per checkout",
)
async def commit_redemption(
    request: RedemptionRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Commit a promo code redemption.

    Retries of the same checkout return duplicate=True, which callers treat
    as success.
    """
    try:
        outcome = await services.redemptions.commit(
            promo_code_id=request.promo_code_id,
            user_id=request.user_id,
            scope=request.scope,
            applied_amount_cents=request.applied_amount_cents,
            discount_cents=request.discount_cents,
            final_amount_cents=request.final_amount_cents,
            currency=request.currency,
            source_ref=request.source_ref or "",
            metadata=request.metadata,
            promo_code=request.promo_code,
            plan_reference=request.plan_reference,
        )
    except RedemptionError as e:
        logger.error("api_redemption_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Redemption could not be recorded",
        )

    return outcome.to_dict()


@admin_router.get(
    "/webhooks/failed",
    response_model=LedgerEntryList,
    summary="List failed webhook events",
)
async def list_failed_webhooks(
    limit: int = Query(default=100, ge=1, le=1000),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """List failed ledger entries, oldest first."""
    return {"entries": await services.ledger.list_failed(limit)}


@admin_router.post(
    "/webhooks/{row_id}/reprocess",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Reprocess a failed webhook event",
)
async def reprocess_webhook(
    row_id: int,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Replay a failed event from its stored payload."""
    entry = await services.ledger.get_entry(row_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ledger entry not found")

    try:
        return await services.webhooks.reprocess(row_id)
    except WebhookError as e:
        logger.error("api_webhook_reprocess_error", row_id=row_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Reprocessing failed: {str(e)}",
        )


@admin_router.get(
    "/jobs/dead-letter",
    response_model=JobList,
    summary="List dead-lettered jobs",
)
async def list_dead_letter_jobs(
    limit: int = Query(default=100, ge=1, le=1000),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """List jobs that exhausted their retry budget."""
    return {"jobs": await services.queue.list_dead_letters(limit)}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
