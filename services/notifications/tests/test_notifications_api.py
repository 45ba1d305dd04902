import dataclasses

import pytest
from fastapi.testclient import TestClient

from common.config import settings
from notifications import main
from notifications.dispatcher import DrainSummary

SECRET = {"x-webhook-secret": "test-notify-secret"}

client = TestClient(main.app)


class StubDispatcher:
    def __init__(self):
        self.drains = []

    async def drain(self, request_id=None):
        self.drains.append(request_id)
        return DrainSummary(acquired=True)


@pytest.fixture
def dispatcher():
    stub = StubDispatcher()
    main.app.dependency_overrides[main.get_dispatcher] = lambda: stub
    yield stub
    main.app.dependency_overrides.clear()


def test_health_endpoint():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": settings.service_name}


def test_process_accepts_and_drains_in_background(dispatcher):
    response = client.post("/notifications/process", headers=SECRET)
    assert response.status_code == 202
    data = response.json()
    assert data["accepted"] is True
    assert data["request_id"].startswith("drain:")
    # TestClient runs background tasks before returning
    assert dispatcher.drains == [data["request_id"]]


def test_process_requires_secret(dispatcher):
    assert client.post("/notifications/process").status_code == 401
    assert client.post("/notifications/process", headers={"x-webhook-secret": "wrong"}).status_code == 401
    assert dispatcher.drains == []


def test_unconfigured_secret_is_a_server_error(dispatcher, monkeypatch):
    monkeypatch.setattr(main, "settings", dataclasses.replace(settings, notify_webhook_secret=None))
    assert client.post("/notifications/process", headers=SECRET).status_code == 500


def test_dispatcher_not_ready_is_unavailable():
    assert client.post("/notifications/process", headers=SECRET).status_code == 503


@pytest.mark.asyncio
async def test_drain_job_swallows_crashes(caplog):
    class Exploding:
        async def drain(self, request_id=None):
            raise RuntimeError("db gone")

    await main._drain_job(Exploding(), "drain:x")
    assert "drain:x crashed" in caplog.text
