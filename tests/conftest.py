"""
Pytest configuration and fixtures.
"""
import os
import uuid
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Settings requires DATABASE_URL from the environment; give tests a default.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from processing_core.config import Settings
from processing_core.core.event_ledger import EventLedger
from processing_core.core.redemption_ledger import RedemptionLedger
from processing_core.core.work_queue import WorkQueue
from processing_core.database.connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from processing_core.database.models import MediaAsset, PromoCode
from processing_core.integrations.collaborators import (
    CollaboratorError,
    FaceDetectionResult,
    PreviewAssets,
)


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "race: concurrent claim and commit tests")
    config.addinivalue_line("markers", "integration: tests spanning several components")


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings backed by a per-test SQLite file."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'processing_test.db'}",
        stripe_webhook_secret="whsec_test_fake_secret",
        paystack_secret_key="sk_test_paystack_fake",
        flutterwave_webhook_hash="flw_test_hash",
        cron_secret="cron_test_secret",
        webhook_max_replays=3,
        webhook_handler_timeout_seconds=5.0,
        queue_retry_base_delay_seconds=0.0,
        queue_retry_max_delay_seconds=0.0,
        queue_time_budget_seconds=30.0,
        job_handler_timeout_seconds=5.0,
        app_name="processing-core-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test engine with all tables."""
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return create_session_factory(engine)


@pytest.fixture
def ledger(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> EventLedger:
    """Event ledger under test."""
    return EventLedger(session_factory, max_replays=test_settings.webhook_max_replays)


@pytest.fixture
def queue(session_factory: async_sessionmaker[AsyncSession]) -> WorkQueue:
    """Work queue with immediate retries."""
    return WorkQueue(
        session_factory,
        default_max_attempts=3,
        handler_timeout_seconds=5.0,
        normal_priority_share=0.0,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
    )


@pytest.fixture
def redemptions(session_factory: async_sessionmaker[AsyncSession]) -> RedemptionLedger:
    """Redemption ledger under test."""
    return RedemptionLedger(session_factory)


@pytest_asyncio.fixture
async def promo_code(session_factory: async_sessionmaker[AsyncSession]) -> PromoCode:
    """A stored promo code with no redemptions."""
    promo = PromoCode(id=uuid.uuid4(), code=f"LAUNCH-{uuid.uuid4().hex[:6]}", times_redeemed=0)
    async with session_factory() as db:
        db.add(promo)
        await db.commit()
    return promo


@pytest_asyncio.fixture
async def media(session_factory: async_sessionmaker[AsyncSession]) -> MediaAsset:
    """An uploaded photo with face recognition and watermarking enabled."""
    asset = MediaAsset(
        id="media_001",
        storage_path="events/42/originals/media_001.jpg",
        face_recognition_enabled=True,
        watermark_enabled=True,
        faces_indexed=False,
        faces_detected=0,
    )
    async with session_factory() as db:
        db.add(asset)
        await db.commit()
    return asset


class FakeStorage:
    """Object storage returning fixed bytes."""

    def __init__(self) -> None:
        self.fetched: List[str] = []

    async def fetch(self, path: str) -> bytes:
        self.fetched.append(path)
        return b"\xff\xd8fake-jpeg"


class FakeFaceService:
    """Face recognition service returning two faces, or a queued error."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.error: CollaboratorError | None = None

    async def index_faces(
        self, image_bytes: bytes, collection_id: str, external_id: str
    ) -> List[FaceDetectionResult]:
        self.calls.append({"collection_id": collection_id, "external_id": external_id})
        if self.error is not None:
            raise self.error
        return [
            FaceDetectionResult(
                face_id="face_a",
                bounding_box={"left": 0.1, "top": 0.2, "width": 0.3, "height": 0.3},
                confidence=99.1,
            ),
            FaceDetectionResult(
                face_id="face_b",
                bounding_box={"left": 0.5, "top": 0.2, "width": 0.2, "height": 0.25},
                confidence=97.4,
            ),
        ]


class FakePreviewService:
    """Preview service producing deterministic refs, or a queued error."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.error: CollaboratorError | None = None

    async def generate(self, source_ref: str, subject_id: str) -> PreviewAssets:
        self.calls.append(subject_id)
        if self.error is not None:
            raise self.error
        return PreviewAssets(
            preview_ref=f"previews/{subject_id}.jpg",
            thumbnail_ref=f"thumbnails/{subject_id}.jpg",
        )


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def fake_face_service() -> FakeFaceService:
    return FakeFaceService()


@pytest.fixture
def fake_preview_service() -> FakePreviewService:
    return FakePreviewService()
