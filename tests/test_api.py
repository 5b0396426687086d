"""
API tests through an in-process ASGI transport.
"""
import hashlib
import hmac
import json
from typing import Any, AsyncGenerator, Dict

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from processing_core.api.dependencies import build_services
from processing_core.api.main import create_app
from processing_core.api.routes import clamp_limit
from processing_core.config import Settings
from processing_core.database.models import PromoCode

AUTH = {"Authorization": "Bearer cron_test_secret"}


def build_app(
    settings: Settings,
    session_factory: Any,
    fake_face_service: Any,
    fake_preview_service: Any,
    fake_storage: Any,
) -> FastAPI:
    app = create_app(settings)
    app.state.services = build_services(
        settings,
        session_factory,
        face_service=fake_face_service,
        preview_service=fake_preview_service,
        storage=fake_storage,
    )
    return app


@pytest.fixture
def api_app(
    test_settings: Settings,
    session_factory: Any,
    fake_face_service: Any,
    fake_preview_service: Any,
    fake_storage: Any,
) -> FastAPI:
    """App wired to the test database and fake collaborators."""
    return build_app(
        test_settings, session_factory, fake_face_service, fake_preview_service, fake_storage
    )


@pytest_asyncio.fixture
async def client(api_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client for the test app."""
    transport = httpx.ASGITransport(app=api_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def signed_paystack(body: Dict[str, Any], secret: str = "sk_test_paystack_fake") -> Dict[str, Any]:
    raw = json.dumps(body).encode()
    signature = hmac.new(secret.encode(), raw, hashlib.sha512).hexdigest()
    return {
        "content": raw,
        "headers": {"x-paystack-signature": signature, "content-type": "application/json"},
    }


PAYSTACK_CHARGE = {
    "event": "charge.success",
    "data": {
        "reference": "ref_api_1",
        "metadata": {"user_id": "user_7", "resource_ids": "photo_9,photo_10"},
    },
}


class TestCronEndpoints:
    """Test suite for the scheduled endpoints."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "requested,expected", [(None, 10), (1000, 100), (0, 1), (-5, 1), (25, 25)]
    )
    def test_clamp_limit(self, requested: Any, expected: int) -> None:
        assert clamp_limit(requested, default=10, maximum=100) == expected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requires_bearer_secret(self, client: httpx.AsyncClient) -> None:
        missing = await client.post("/cron/media-processing")
        wrong = await client.post(
            "/cron/media-processing", headers={"Authorization": "Bearer wrong"}
        )

        assert missing.status_code == 401
        assert wrong.status_code == 401

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unconfigured_secret_is_503(
        self,
        test_settings: Settings,
        session_factory: Any,
        fake_face_service: Any,
        fake_preview_service: Any,
        fake_storage: Any,
    ) -> None:
        settings = test_settings.model_copy(update={"cron_secret": None})
        app = build_app(
            settings, session_factory, fake_face_service, fake_preview_service, fake_storage
        )

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.post("/cron/media-processing", headers=AUTH)

        assert response.status_code == 503

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_media_processing_drains_queue(
        self, client: httpx.AsyncClient, media: Any
    ) -> None:
        enqueued = await client.post(
            "/jobs", json={"subject_id": media.id, "job_type": "face_index", "priority": "high"}
        )
        assert enqueued.status_code == 201
        job_id = enqueued.json()["id"]

        response = await client.post("/cron/media-processing?limit=1000", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["limit"] == 100
        assert body["stats"]["claimed"] == 1
        assert body["stats"]["completed"] == 1
        assert body["duration_seconds"] >= 0

        job = await client.get(f"/jobs/{job_id}")
        assert job.json()["status"] == "completed"
        assert job.json()["attempt_count"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_stale_reports_counts(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/cron/sweep-stale", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"ledger_reclaimed": 0, "jobs_reclaimed": 0}


class TestJobEndpoints:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_enqueue_returns_pending_job(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/jobs",
            json={"subject_id": "media_x", "job_type": "preview_generate", "max_attempts": 5},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["priority"] == "normal"
        assert body["max_attempts"] == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"subject_id": "", "job_type": "face_index"},
            {"subject_id": "media_x", "job_type": "face_index", "priority": "urgent"},
            {"subject_id": "media_x", "job_type": "face_index", "max_attempts": 0},
        ],
    )
    async def test_enqueue_rejects_invalid_body(
        self, client: httpx.AsyncClient, payload: Dict[str, Any]
    ) -> None:
        response = await client.post("/jobs", json=payload)

        assert response.status_code == 422

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_job_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/jobs/987654")

        assert response.status_code == 404


class TestWebhookEndpoint:
    """Test suite for provider webhooks over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_delivery_then_redelivery(self, client: httpx.AsyncClient) -> None:
        first = await client.post("/webhooks/paystack", **signed_paystack(PAYSTACK_CHARGE))
        second = await client.post("/webhooks/paystack", **signed_paystack(PAYSTACK_CHARGE))

        assert first.status_code == 200
        assert first.json()["status"] == "success"
        assert first.json()["result"] == {"granted": 2, "already_granted": 0}

        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        assert second.json()["ledger_status"] == "processed"
        assert "result" not in second.json()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_signature_is_401(self, client: httpx.AsyncClient) -> None:
        request = signed_paystack(PAYSTACK_CHARGE, secret="sk_wrong")

        response = await client.post("/webhooks/paystack", **request)

        assert response.status_code == 401

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_provider_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/webhooks/acme", content=b"{}")

        assert response.status_code == 404


class TestRedemptionEndpoint:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_commit_then_retry(
        self, client: httpx.AsyncClient, promo_code: PromoCode
    ) -> None:
        body = {
            "promo_code_id": str(promo_code.id),
            "user_id": "user_9",
            "scope": "vault_subscription",
            "applied_amount_cents": 2000,
            "discount_cents": 500,
            "final_amount_cents": 1500,
            "currency": "ngn",
            "source_ref": "pay_ref_77",
        }

        first = await client.post("/redemptions", json=body)
        second = await client.post("/redemptions", json=body)

        assert first.status_code == 200
        assert first.json()["created"] is True
        assert second.json()["duplicate"] is True
        assert second.json()["transaction_id"] == first.json()["transaction_id"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_source_ref_is_reported(
        self, client: httpx.AsyncClient, promo_code: PromoCode
    ) -> None:
        response = await client.post(
            "/redemptions",
            json={
                "promo_code_id": str(promo_code.id),
                "user_id": "user_9",
                "scope": "drop_in_credits",
                "discount_cents": 100,
            },
        )

        assert response.status_code == 200
        assert response.json()["created"] is False
        assert response.json()["reason"] == "missing_source_ref"


class TestAdminEndpoints:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requires_auth(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/admin/webhooks/failed")

        assert response.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_event_listed_and_reprocessed(
        self, client: httpx.AsyncClient, api_app: FastAPI
    ) -> None:
        ledger = api_app.state.services.ledger
        claim = await ledger.claim(
            "paystack", "ref_admin", "charge.success", True, payload=PAYSTACK_CHARGE
        )
        await ledger.mark_failed(claim.row_id, "handler crashed")

        listed = await client.get("/admin/webhooks/failed", headers=AUTH)
        assert listed.status_code == 200
        assert [e["event_id"] for e in listed.json()["entries"]] == ["ref_admin"]
        assert listed.json()["entries"][0]["failure_reason"] == "handler crashed"

        reprocessed = await client.post(
            f"/admin/webhooks/{claim.row_id}/reprocess", headers=AUTH
        )
        assert reprocessed.status_code == 200
        assert reprocessed.json()["status"] == "success"

        missing = await client.post("/admin/webhooks/999999/reprocess", headers=AUTH)
        assert missing.status_code == 404

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dead_letter_list(self, client: httpx.AsyncClient) -> None:
        await client.post(
            "/jobs", json={"subject_id": "m1", "job_type": "transcode", "max_attempts": 1}
        )
        await client.post("/cron/media-processing", headers=AUTH)

        response = await client.get("/admin/jobs/dead-letter", headers=AUTH)

        assert response.status_code == 200
        jobs = response.json()["jobs"]
        assert [job["job_type"] for job in jobs] == ["transcode"]
        assert "No handler registered" in jobs[0]["last_error"]


class TestMonitoringEndpoints:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_liveness(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_readiness_checks_database(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "database" in response.json()["checks"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_metrics_exposed(self, client: httpx.AsyncClient) -> None:
        await client.post("/webhooks/paystack", **signed_paystack(PAYSTACK_CHARGE))

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "webhook" in response.text

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["service"] == "processing-core"
