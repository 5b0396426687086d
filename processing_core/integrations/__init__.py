"""External integrations: provider webhooks and processing collaborators."""
from .collaborators import (
    CollaboratorError,
    HttpFaceRecognitionClient,
    HttpObjectStorage,
    HttpPreviewGenerationClient,
)
from .signatures import WebhookEvent, WebhookVerificationError, verify_webhook
from .webhook_handler import WebhookError, WebhookHandler

__all__ = [
    "CollaboratorError",
    "HttpFaceRecognitionClient",
    "HttpObjectStorage",
    "HttpPreviewGenerationClient",
    "WebhookError",
    "WebhookEvent",
    "WebhookHandler",
    "WebhookVerificationError",
    "verify_webhook",
]
