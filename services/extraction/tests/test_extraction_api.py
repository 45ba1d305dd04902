import dataclasses
import hashlib

import httpx
import pytest
from fastapi.testclient import TestClient

from common.config import settings
from common.storage import storage_key
from extraction import main
from extraction.models import PipelineOutcome
from extraction.repository import ExtractionRepository
from ingestion.ledger import IngestionRepository

SECRET = {"x-scraper-secret": "test-scraper-secret"}
SOURCE_URL = "https://ssc.gov.in/docs/cgl.pdf"

client = TestClient(main.app)


def handoff_body(**overrides):
    body = {
        "source_id": "ssc",
        "source_name": "Staff Selection Commission",
        "category": "SSC",
        "source_url": SOURCE_URL,
        "storage_path": f"ssc/2025/06/{'a' * 64}.pdf",
        "content_fingerprint": "a" * 64,
        "ingestion_event_id": "evt-1",
    }
    body.update(overrides)
    return body


class StubPipeline:
    def __init__(self, status):
        self.status = status
        self.payloads = []

    async def handle(self, payload):
        self.payloads.append(payload)
        return PipelineOutcome(status=self.status, event_id=payload.ingestion_event_id, reason="stub")


@pytest.fixture(autouse=True)
def clear_overrides():
    yield
    main.app.dependency_overrides.clear()


def use_pipeline(status):
    stub = StubPipeline(status)
    main.app.dependency_overrides[main.get_pipeline] = lambda: stub
    return stub


def test_health_endpoint():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": settings.service_name}


def test_handoff_without_secret_is_unauthorized():
    stub = use_pipeline("done")
    assert client.post("/webhooks/new-document", json=handoff_body()).status_code == 401
    wrong = client.post("/webhooks/new-document", json=handoff_body(), headers={"x-scraper-secret": "nope"})
    assert wrong.status_code == 401
    assert stub.payloads == []


def test_unconfigured_server_secret_is_a_server_error(monkeypatch):
    use_pipeline("done")
    monkeypatch.setattr(main, "settings", dataclasses.replace(settings, scraper_webhook_secret=None))
    response = client.post("/webhooks/new-document", json=handoff_body(), headers=SECRET)
    assert response.status_code == 500


def test_malformed_handoff_is_rejected():
    use_pipeline("done")
    response = client.post(
        "/webhooks/new-document", json=handoff_body(content_fingerprint="short"), headers=SECRET
    )
    assert response.status_code == 422
    response = client.post("/webhooks/new-document", json={"source_id": "ssc"}, headers=SECRET)
    assert response.status_code == 422


@pytest.mark.parametrize("status, code", [("done", 200), ("skipped", 200), ("rejected", 400), ("failed", 500)])
def test_outcome_maps_to_status_code(status, code):
    stub = use_pipeline(status)
    response = client.post("/webhooks/new-document", json=handoff_body(), headers=SECRET)
    assert response.status_code == code
    assert response.json()["status"] == status
    assert stub.payloads[0].ingestion_event_id == "evt-1"


def test_pipeline_not_ready_is_unavailable():
    assert client.post("/webhooks/new-document", json=handoff_body(), headers=SECRET).status_code == 503


# ----------------------------
# Event status & retry
# ----------------------------
async def failed_event(db, data: bytes) -> str:
    fingerprint = hashlib.sha256(data).hexdigest()
    event_id = await IngestionRepository(db).create_event(
        site_id="ssc",
        source_url=SOURCE_URL,
        fingerprint=fingerprint,
        storage_path=storage_key("ssc", fingerprint),
        link_text=None,
        context_text=None,
        file_size_bytes=len(data),
    )
    repo = ExtractionRepository(db)
    await repo.claim_fingerprint(fingerprint, event_id)
    await repo.transition(event_id, "failed", error_message="extraction failed: boom")
    return event_id


def api(store, source_handler=lambda request: httpx.Response(404)):
    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_http_client] = lambda: httpx.AsyncClient(
        transport=httpx.MockTransport(source_handler)
    )
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=main.app), base_url="http://test")


@pytest.mark.asyncio
async def test_event_status(db, store, make_pdf):
    event_id = await failed_event(db, make_pdf("status"))
    async with api(store) as ac:
        response = await ac.get(f"/events/{event_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "failed"
        assert data["error_message"] == "extraction failed: boom"
        assert data["processed_at"] is not None

        assert (await ac.get("/events/does-not-exist")).status_code == 404


@pytest.mark.asyncio
async def test_retry_restores_bytes_and_releases_claim(db, store, make_pdf):
    data = make_pdf("retry")
    event_id = await failed_event(db, data)
    fingerprint = hashlib.sha256(data).hexdigest()

    async with api(store, lambda request: httpx.Response(200, content=data)) as ac:
        response = await ac.post(f"/events/{event_id}/retry", headers=SECRET)
        assert response.status_code == 202
        assert response.json() == {"event_id": event_id, "status": "queued"}

        # only failed events can be retried
        again = await ac.post(f"/events/{event_id}/retry", headers=SECRET)
        assert again.status_code == 409

    repo = ExtractionRepository(db)
    event = await repo.get_event(event_id)
    assert event.status == "queued"
    assert event.error_message is None
    assert await store.get(event.storage_path) == data
    assert await repo.claim_fingerprint(fingerprint, event_id)


@pytest.mark.asyncio
async def test_retry_refuses_changed_or_missing_document(db, store, make_pdf):
    event_id = await failed_event(db, make_pdf("original"))

    async with api(store, lambda request: httpx.Response(200, content=make_pdf("edited"))) as ac:
        assert (await ac.post(f"/events/{event_id}/retry", headers=SECRET)).status_code == 410

    async with api(store) as ac:
        assert (await ac.post(f"/events/{event_id}/retry", headers=SECRET)).status_code == 410
        assert (await ac.post("/events/nope/retry", headers=SECRET)).status_code == 404
        assert (await ac.post(f"/events/{event_id}/retry")).status_code == 401

    assert (await ExtractionRepository(db).get_event(event_id)).status == "failed"
