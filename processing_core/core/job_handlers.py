"""
Built-in job handlers for post-upload media processing.

Handlers check whether their effect already exists before calling a
collaborator, so a job re-run after a crash between the external call and
the completion write is a cheap no-op.
"""
from typing import Any, Dict, List

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from processing_core.core.work_queue import JobResult, JobType, WorkQueue
from processing_core.database.models import FaceDetection, Job, MediaAsset
from processing_core.integrations.collaborators import (
    CollaboratorError,
    FaceDetectionResult,
    FaceRecognitionService,
    ObjectStorage,
    PreviewGenerationService,
)

logger = structlog.get_logger(__name__)

DEFAULT_FACE_COLLECTION = "media"


class FaceIndexHandler:
    """Indexes faces in an uploaded image and stores the detections."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        face_service: FaceRecognitionService,
        storage: ObjectStorage,
    ):
        self.session_factory = session_factory
        self.face_service = face_service
        self.storage = storage

    async def __call__(self, job: Job) -> JobResult:
        media_id = job.subject_id
        payload: Dict[str, Any] = job.payload or {}

        async with self.session_factory() as db:
            media = await db.get(MediaAsset, media_id)

        if media is None:
            logger.info(
                "face_index_skipped", job_id=job.id, media_id=media_id, reason="media_not_found"
            )
            return JobResult.skipped("media_not_found")
        if media.faces_indexed:
            logger.info(
                "face_index_skipped", job_id=job.id, media_id=media_id, reason="already_indexed"
            )
            return JobResult.skipped("already_indexed")
        if not media.face_recognition_enabled:
            logger.info(
                "face_index_skipped",
                job_id=job.id,
                media_id=media_id,
                reason="face_recognition_disabled",
            )
            return JobResult.skipped("face_recognition_disabled")

        try:
            image_bytes = await self.storage.fetch(media.storage_path)
            faces = await self.face_service.index_faces(
                image_bytes,
                collection_id=str(payload.get("collection_id") or DEFAULT_FACE_COLLECTION),
                external_id=media_id,
            )
        except CollaboratorError as e:
            return JobResult.failure(str(e), retryable=e.retryable)

        await self._store_detections(media_id, faces)

        logger.info("faces_indexed", job_id=job.id, media_id=media_id, faces_detected=len(faces))
        return JobResult.ok(faces_detected=len(faces))

    async def _store_detections(self, media_id: str, faces: List[FaceDetectionResult]) -> None:
        # Replace rather than append so a re-run cannot duplicate detections
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(delete(FaceDetection).where(FaceDetection.media_id == media_id))
                db.add_all(
                    FaceDetection(
                        media_id=media_id,
                        face_id=face.face_id,
                        bounding_box=face.bounding_box,
                        confidence=face.confidence,
                    )
                    for face in faces
                )
                media = await db.get(MediaAsset, media_id)
                if media is not None:
                    media.faces_indexed = True
                    media.faces_detected = len(faces)


class PreviewHandler:
    """Generates the watermarked preview and thumbnail for an upload."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        preview_service: PreviewGenerationService,
    ):
        self.session_factory = session_factory
        self.preview_service = preview_service

    async def __call__(self, job: Job) -> JobResult:
        media_id = job.subject_id

        async with self.session_factory() as db:
            media = await db.get(MediaAsset, media_id)

        if media is None:
            return JobResult.skipped("media_not_found")
        if not media.watermark_enabled:
            return JobResult.skipped("watermark_disabled")
        if media.preview_path:
            return JobResult.skipped("preview_exists")

        try:
            assets = await self.preview_service.generate(media.storage_path, media_id)
        except CollaboratorError as e:
            return JobResult.failure(str(e), retryable=e.retryable)

        if not assets.preview_ref:
            return JobResult.failure("Preview service returned no preview reference")

        async with self.session_factory() as db:
            media = await db.get(MediaAsset, media_id)
            if media is None:
                return JobResult.skipped("media_not_found")
            media.preview_path = assets.preview_ref
            media.thumbnail_path = assets.thumbnail_ref
            await db.commit()

        logger.info(
            "preview_generated",
            job_id=job.id,
            media_id=media_id,
            preview_ref=assets.preview_ref,
        )
        return JobResult.ok(preview_ref=assets.preview_ref, thumbnail_ref=assets.thumbnail_ref)


def register_media_handlers(
    queue: WorkQueue,
    session_factory: async_sessionmaker[AsyncSession],
    face_service: FaceRecognitionService,
    preview_service: PreviewGenerationService,
    storage: ObjectStorage,
) -> None:
    """Register the built-in media handlers on a work queue."""
    queue.register_handler(
        JobType.FACE_INDEX.value,
        FaceIndexHandler(session_factory, face_service, storage),
    )
    queue.register_handler(
        JobType.PREVIEW_GENERATE.value,
        PreviewHandler(session_factory, preview_service),
    )
