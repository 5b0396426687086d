"""
Service wiring and FastAPI dependencies.

Every component receives its session factory and tuning values explicitly.
The API lifespan builds one Services container per process and stores it on
app.state; routes reach it through the dependencies below.
"""
import hmac
from dataclasses import dataclass, field
from typing import Any, List, Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from processing_core.config import Settings
from processing_core.core.event_ledger import EventLedger
from processing_core.core.job_handlers import register_media_handlers
from processing_core.core.redemption_ledger import RedemptionLedger
from processing_core.core.work_queue import WorkQueue
from processing_core.integrations.collaborators import (
    FaceRecognitionService,
    HttpFaceRecognitionClient,
    HttpObjectStorage,
    HttpPreviewGenerationClient,
    ObjectStorage,
    PreviewGenerationService,
)
from processing_core.integrations.webhook_handler import (
    WebhookHandler,
    register_default_handlers,
)
from processing_core.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Process-wide components built from one settings object."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    ledger: EventLedger
    queue: WorkQueue
    redemptions: RedemptionLedger
    webhooks: WebhookHandler
    health: HealthCheck
    closeables: List[Any] = field(default_factory=list)

    async def close(self) -> None:
        """Close collaborator clients owned by this container."""
        for client in self.closeables:
            await client.close()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    face_service: Optional[FaceRecognitionService] = None,
    preview_service: Optional[PreviewGenerationService] = None,
    storage: Optional[ObjectStorage] = None,
) -> Services:
    """
    Build all components and register the built-in handlers.

    Collaborators default to the HTTP clients configured in settings.

    Args:
        settings: Application settings
        session_factory: Session factory for the shared store
        face_service: Face recognition collaborator override
        preview_service: Preview generation collaborator override
        storage: Object storage override

    Returns:
        Services: Wired components
    """
    closeables: List[Any] = []
    client_options = {
        "timeout_seconds": settings.collaborator_timeout_seconds,
        "retry_attempts": settings.collaborator_retry_attempts,
    }
    if face_service is None:
        face_service = HttpFaceRecognitionClient(settings.face_recognition_url, **client_options)
        closeables.append(face_service)
    if preview_service is None:
        preview_service = HttpPreviewGenerationClient(
            settings.preview_service_url, **client_options
        )
        closeables.append(preview_service)
    if storage is None:
        storage = HttpObjectStorage(settings.object_storage_url, **client_options)
        closeables.append(storage)

    ledger = EventLedger(session_factory, max_replays=settings.webhook_max_replays)
    queue = WorkQueue(
        session_factory,
        default_max_attempts=settings.queue_default_max_attempts,
        handler_timeout_seconds=settings.job_handler_timeout_seconds,
        normal_priority_share=settings.queue_normal_priority_share,
        retry_base_delay_seconds=settings.queue_retry_base_delay_seconds,
        retry_max_delay_seconds=settings.queue_retry_max_delay_seconds,
    )
    register_media_handlers(queue, session_factory, face_service, preview_service, storage)

    webhooks = WebhookHandler(
        ledger,
        session_factory,
        handler_timeout_seconds=settings.webhook_handler_timeout_seconds,
    )
    register_default_handlers(webhooks)

    logger.info("services_built", app_env=settings.app_env)

    return Services(
        settings=settings,
        session_factory=session_factory,
        ledger=ledger,
        queue=queue,
        redemptions=RedemptionLedger(session_factory),
        webhooks=webhooks,
        health=HealthCheck(session_factory, queue),
        closeables=closeables,
    )


def get_services(request: Request) -> Services:
    """Services container for the running app."""
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return services


def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> None:
    """
    Authenticate scheduled and operator calls with the shared bearer secret.

    Raises:
        HTTPException: 503 when no secret is configured, 401 on a wrong token
    """
    secret = services.settings.cron_secret
    if not secret:
        logger.error("cron_secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron secret is not configured",
        )

    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        logger.warning("cron_request_unauthorized")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
