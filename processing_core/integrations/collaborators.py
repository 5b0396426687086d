"""
Clients for the slow external collaborators job handlers call.

- Face Recognition Service: image bytes in, face detections out
- Preview Generation Service: source ref in, derived asset refs out
- Object storage: path in, bytes out

Every call carries a bounded httpx timeout so a stuck dependency cannot hold
a claimed job indefinitely. Transport errors and 5xx responses are retried a
few times with exponential backoff before surfacing as retryable errors.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)


class CollaboratorError(Exception):
    """Raised when a collaborator call fails."""

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None):
        """
        Initialize collaborator error.

        Args:
            message: Error message
            retryable: Whether the failure is transient
            status_code: HTTP status, when there was a response
        """
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


@dataclass(frozen=True)
class FaceDetectionResult:
    """One face found in an image."""

    face_id: str
    bounding_box: Dict[str, float]
    confidence: float


@dataclass(frozen=True)
class PreviewAssets:
    """Derived assets produced by the preview service."""

    preview_ref: Optional[str]
    thumbnail_ref: Optional[str]


class FaceRecognitionService(Protocol):
    """Interface for the face recognition engine."""

    async def index_faces(
        self, image_bytes: bytes, collection_id: str, external_id: str
    ) -> List[FaceDetectionResult]:
        """Index faces in an image and return the detections."""
        ...


class PreviewGenerationService(Protocol):
    """Interface for the preview/watermark generator."""

    async def generate(self, source_ref: str, subject_id: str) -> PreviewAssets:
        """Generate derived assets for a source object."""
        ...


class ObjectStorage(Protocol):
    """Interface for object storage reads."""

    async def fetch(self, path: str) -> bytes:
        """Download an object."""
        ...


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, CollaboratorError) and error.retryable


class HttpCollaborator:
    """Shared HTTP plumbing: timeouts, error classification, retries."""

    service_name = "collaborator"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize HTTP collaborator client.

        Args:
            base_url: Service base URL
            timeout_seconds: Timeout applied to every request
            retry_attempts: Attempts per call on transient errors
            client: Optional preconfigured httpx client (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.retry_attempts = max(retry_attempts, 1)
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        ):
            with attempt:
                return await self._send(method, url, **kwargs)
        raise CollaboratorError(f"{self.service_name} request was not attempted")

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("collaborator_timeout", service=self.service_name, url=url)
            raise CollaboratorError(f"{self.service_name} timed out: {e}") from e
        except httpx.TransportError as e:
            logger.warning(
                "collaborator_transport_error", service=self.service_name, url=url, error=str(e)
            )
            raise CollaboratorError(f"{self.service_name} unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise CollaboratorError(
                f"{self.service_name} returned {response.status_code}",
                retryable=True,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise CollaboratorError(
                f"{self.service_name} rejected request: {response.status_code}",
                retryable=False,
                status_code=response.status_code,
            )
        return response

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()


class HttpFaceRecognitionClient(HttpCollaborator):
    """Face Recognition Service over HTTP."""

    service_name = "face_recognition"

    async def index_faces(
        self, image_bytes: bytes, collection_id: str, external_id: str
    ) -> List[FaceDetectionResult]:
        """
        Index faces in an image.

        Args:
            image_bytes: Raw image
            collection_id: Face collection (one per event)
            external_id: Media id the faces belong to

        Returns:
            List[FaceDetectionResult]: Indexed faces
        """
        response = await self._request(
            "POST",
            "/faces/index",
            params={"collection_id": collection_id, "external_id": external_id},
            content=image_bytes,
            headers={"Content-Type": "application/octet-stream"},
        )
        body = response.json()
        if body.get("error"):
            raise CollaboratorError(str(body["error"]))

        return [
            FaceDetectionResult(
                face_id=str(face["face_id"]),
                bounding_box=dict(face.get("bounding_box") or {}),
                confidence=float(face.get("confidence", 0.0)),
            )
            for face in body.get("faces", [])
        ]


class HttpPreviewGenerationClient(HttpCollaborator):
    """Preview Generation Service over HTTP."""

    service_name = "preview_generation"

    async def generate(self, source_ref: str, subject_id: str) -> PreviewAssets:
        """
        Generate watermarked preview and thumbnail for a source object.

        Args:
            source_ref: Storage path of the original
            subject_id: Media id

        Returns:
            PreviewAssets: Derived asset refs
        """
        response = await self._request(
            "POST",
            "/previews",
            json={"source_ref": source_ref, "subject_id": subject_id},
        )
        body = response.json()
        if not body.get("success", True):
            raise CollaboratorError(body.get("error") or "Preview generation failed")

        return PreviewAssets(
            preview_ref=body.get("preview_ref"),
            thumbnail_ref=body.get("thumbnail_ref"),
        )


class HttpObjectStorage(HttpCollaborator):
    """Object storage reads over HTTP."""

    service_name = "object_storage"

    async def fetch(self, path: str) -> bytes:
        """Download an object by storage path."""
        response = await self._request("GET", f"/objects/{path.lstrip('/')}")
        return response.content
