"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    EnqueueJobRequest,
    JobResponse,
    RedemptionRequest,
    RedemptionResponse,
    WebhookResponse,
)

__all__ = [
    "app",
    "create_app",
    "EnqueueJobRequest",
    "JobResponse",
    "RedemptionRequest",
    "RedemptionResponse",
    "WebhookResponse",
]
