import httpx
import pytest
from fastapi.testclient import TestClient

from common.config import settings
from ingestion import main
from ingestion.ledger import IngestionRepository

client = TestClient(main.app)


@pytest.fixture
def jobs(monkeypatch):
    """Replace the background scrape with a recorder."""
    seen = []

    async def fake_job(job_id, req):
        seen.append((job_id, req))

    monkeypatch.setattr(main, "_discover_job", fake_job)
    return seen


def test_health_endpoint():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": settings.service_name}


def test_discover_without_body_runs_configured_sources(jobs):
    response = client.post("/discover")
    assert response.status_code == 202
    data = response.json()
    assert data["accepted"] is True
    assert data["job_id"].startswith("job:")

    job_id, req = jobs[0]
    assert job_id == data["job_id"]
    assert req.source_id is None
    assert req.priorities is None


def test_discover_single_source(jobs):
    response = client.post("/discover", json={"source_id": "ssc", "priorities": ["P0"]})
    assert response.status_code == 202
    _, req = jobs[0]
    assert req.source_id == "ssc"
    assert req.priorities == ["P0"]


@pytest.mark.asyncio
async def test_runs_endpoint_lists_newest_first(db):
    repo = IngestionRepository(db)
    await repo.add_run("ssc", "OK", content_hash="a" * 32, new_pdfs_found=2)
    await repo.add_run("ssc", "NO_CHANGE", content_hash="a" * 32)
    await repo.add_run("upsc", "TIMEOUT", error_message="timed out")

    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get("/runs/ssc", params={"limit": 5})
        assert response.status_code == 200
        data = response.json()
        assert data["source_id"] == "ssc"
        assert [r["status"] for r in data["runs"]] == ["NO_CHANGE", "OK"]
        assert data["runs"][1]["new_pdfs_found"] == 2

        bad = await ac.get("/runs/ssc", params={"limit": 0})
        assert bad.status_code == 422
