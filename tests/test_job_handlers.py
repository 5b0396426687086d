"""
Tests for the built-in media job handlers.
"""
import pytest
from sqlalchemy import select

from processing_core.core.job_handlers import (
    FaceIndexHandler,
    PreviewHandler,
    register_media_handlers,
)
from processing_core.core.work_queue import WorkQueue
from processing_core.database.models import FaceDetection, Job, MediaAsset
from processing_core.integrations.collaborators import CollaboratorError


def job_for(subject_id: str, job_type: str = "face_index", payload: dict | None = None) -> Job:
    return Job(id=1, subject_id=subject_id, job_type=job_type, payload=payload)


class TestFaceIndexHandler:
    """Test suite for face indexing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_indexes_faces_and_marks_media(
        self, session_factory, media, fake_face_service, fake_storage
    ) -> None:
        handler = FaceIndexHandler(session_factory, fake_face_service, fake_storage)

        result = await handler(job_for(media.id, payload={"collection_id": "event_42"}))

        assert result.success is True
        assert result.detail == {"faces_detected": 2}
        assert fake_storage.fetched == [media.storage_path]
        assert fake_face_service.calls == [
            {"collection_id": "event_42", "external_id": media.id}
        ]

        async with session_factory() as db:
            stored = await db.get(MediaAsset, media.id)
            assert stored.faces_indexed is True
            assert stored.faces_detected == 2
            faces = await db.execute(
                select(FaceDetection.face_id).where(FaceDetection.media_id == media.id)
            )
            assert sorted(faces.scalars().all()) == ["face_a", "face_b"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rerun_after_indexing_is_skipped(
        self, session_factory, media, fake_face_service, fake_storage
    ) -> None:
        handler = FaceIndexHandler(session_factory, fake_face_service, fake_storage)

        await handler(job_for(media.id))
        rerun = await handler(job_for(media.id))

        assert rerun.is_skip
        assert rerun.detail["skipped"] == "already_indexed"
        assert len(fake_face_service.calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_media_is_skipped(
        self, session_factory, fake_face_service, fake_storage
    ) -> None:
        handler = FaceIndexHandler(session_factory, fake_face_service, fake_storage)

        result = await handler(job_for("deleted_media"))

        assert result.detail["skipped"] == "media_not_found"
        assert fake_face_service.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_disabled_face_recognition_is_skipped(
        self, session_factory, fake_face_service, fake_storage
    ) -> None:
        async with session_factory() as db:
            db.add(
                MediaAsset(
                    id="private_media",
                    storage_path="events/1/private.jpg",
                    face_recognition_enabled=False,
                )
            )
            await db.commit()
        handler = FaceIndexHandler(session_factory, fake_face_service, fake_storage)

        result = await handler(job_for("private_media"))

        assert result.detail["skipped"] == "face_recognition_disabled"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("retryable", [True, False])
    async def test_collaborator_error_maps_to_failure(
        self, session_factory, media, fake_face_service, fake_storage, retryable: bool
    ) -> None:
        fake_face_service.error = CollaboratorError("engine said no", retryable=retryable)
        handler = FaceIndexHandler(session_factory, fake_face_service, fake_storage)

        result = await handler(job_for(media.id))

        assert result.success is False
        assert result.retryable is retryable
        assert result.error == "engine said no"

        async with session_factory() as db:
            assert (await db.get(MediaAsset, media.id)).faces_indexed is False


class TestPreviewHandler:
    """Test suite for preview generation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_generates_and_stores_refs(
        self, session_factory, media, fake_preview_service
    ) -> None:
        handler = PreviewHandler(session_factory, fake_preview_service)

        result = await handler(job_for(media.id, "preview_generate"))

        assert result.success is True
        async with session_factory() as db:
            stored = await db.get(MediaAsset, media.id)
            assert stored.preview_path == f"previews/{media.id}.jpg"
            assert stored.thumbnail_path == f"thumbnails/{media.id}.jpg"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_existing_preview_is_skipped(
        self, session_factory, media, fake_preview_service
    ) -> None:
        handler = PreviewHandler(session_factory, fake_preview_service)

        await handler(job_for(media.id, "preview_generate"))
        rerun = await handler(job_for(media.id, "preview_generate"))

        assert rerun.detail["skipped"] == "preview_exists"
        assert fake_preview_service.calls == [media.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_watermark_disabled_is_skipped(
        self, session_factory, fake_preview_service
    ) -> None:
        async with session_factory() as db:
            db.add(
                MediaAsset(
                    id="unwatermarked",
                    storage_path="events/1/raw.jpg",
                    watermark_enabled=False,
                )
            )
            await db.commit()
        handler = PreviewHandler(session_factory, fake_preview_service)

        result = await handler(job_for("unwatermarked", "preview_generate"))

        assert result.detail["skipped"] == "watermark_disabled"
        assert fake_preview_service.calls == []


class TestMediaPipeline:
    """Handlers wired into the work queue."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_upload_jobs_run_to_completion(
        self,
        session_factory,
        queue: WorkQueue,
        media,
        fake_face_service,
        fake_preview_service,
        fake_storage,
    ) -> None:
        register_media_handlers(
            queue, session_factory, fake_face_service, fake_preview_service, fake_storage
        )
        face_job = await queue.enqueue(media.id, "face_index", priority="high")
        preview_job = await queue.enqueue(media.id, "preview_generate")

        stats = await queue.drain(limit=10, time_budget_seconds=10)

        assert stats.completed == 2
        assert (await queue.get_job(face_job.id)).status == "completed"
        assert (await queue.get_job(preview_job.id)).status == "completed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transient_collaborator_failure_is_retried(
        self,
        session_factory,
        queue: WorkQueue,
        media,
        fake_face_service,
        fake_preview_service,
        fake_storage,
    ) -> None:
        register_media_handlers(
            queue, session_factory, fake_face_service, fake_preview_service, fake_storage
        )
        fake_face_service.error = CollaboratorError("throttled", retryable=True)
        job = await queue.enqueue(media.id, "face_index")

        await queue.process_batch(10)
        assert (await queue.get_job(job.id)).status == "failed"

        fake_face_service.error = None
        await queue.process_batch(10)

        done = await queue.get_job(job.id)
        assert done.status == "completed"
        assert done.attempt_count == 2
