import json
import os
from decimal import Decimal
from pathlib import Path

import pytest
from conftest import FakeProviderClient, FakeStore, InProcessLocks, SlackRecorder, make_package, package_info, store_factory_for
from fastapi.testclient import TestClient

from app import main
from app.config import settings
from app.dependencies import get_notification_gate, get_refresh_service, get_requote_supervisor, get_store
from app.main import app
from app.schemas.requote import CompleteEvent, StatusEvent
from app.services.notification_service import NotificationGate
from app.services.price_refresh_service import PriceRefreshService
from app.services.travelcompositor_client import TravelCompositorError


@pytest.fixture
def store():
    return FakeStore([
        make_package(1, tc_package_id=9001, requote_status="pending"),
        make_package(2, tc_package_id=9002, requote_status="pending", monitor_enabled=False),
        make_package(3, tc_package_id=9003, requote_status="needs_manual", requote_price=Decimal("1200")),
    ])


@pytest.fixture
def provider():
    return FakeProviderClient(info={9001: package_info(1060), 9003: package_info(1000)})


@pytest.fixture
def client(store, provider):
    slack = SlackRecorder()
    gate = NotificationGate(slack=slack.client, store_factory=store_factory_for(store), system_url="http://hub.test")
    service = PriceRefreshService(client=provider, lock_service=InProcessLocks(), delay_seconds=0)

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_notification_gate] = lambda: gate
    app.dependency_overrides[get_refresh_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok", "service": "package-hub"}


def test_cron_requires_configured_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "")

    resp = client.get("/api/cron/refresh-packages", headers={"Authorization": "Bearer anything"})

    assert resp.status_code == 500
    assert resp.json()["detail"] == "Server misconfigured"


def test_cron_rejects_wrong_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "s3cret")

    assert client.post("/api/cron/refresh-packages").status_code == 401
    assert client.post("/api/cron/refresh-packages", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_cron_runs_batch(client, store, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "s3cret")

    resp = client.post("/api/cron/refresh-packages", headers={"Authorization": "Bearer s3cret"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["processed"] == 2
    assert body["successCount"] == 2
    assert body["priceChanges"] == 1
    assert body["errors"] == []
    assert body["duration"].endswith("s")
    assert store.packages[1].needs_manual_quote is True


def test_cron_reports_per_item_errors(client, provider, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    provider.errors[9003] = TravelCompositorError("TC request failed: timeout")

    body = client.get("/api/cron/refresh-packages", headers={"Authorization": "Bearer s3cret"}).json()

    assert body["success"] is False
    assert body["failed"] == 1
    assert body["errors"] == [{"id": 3, "tc_id": 9003, "error": "TC request failed: timeout"}]


def test_pending_requotes(client):
    resp = client.get("/api/requote/run")

    assert resp.status_code == 200
    assert resp.json() == {
        "pendingCount": 1,
        "packages": [{"id": 1, "external_id": 9001, "title": "Package 1"}],
    }


def test_clear_pending(client, store):
    assert client.post("/api/requote/clear-pending").json() == {"success": True, "cleared": 2}
    assert store.packages[1].requote_status == "completed"


class ScriptedSupervisor:
    async def run(self, publisher, cancel_event=None):
        publisher.publish(StatusEvent(message="Starting requote bot...", stage="init"))
        publisher.publish(CompleteEvent(success=True, summary=publisher.run.summary()))
        publisher.close()
        return publisher.run


def test_requote_run_streams_sse(client):
    app.dependency_overrides[get_requote_supervisor] = lambda: ScriptedSupervisor()

    resp = client.post("/api/requote/run")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    frames = [json.loads(chunk[len("data: "):]) for chunk in resp.text.split("\n\n") if chunk]
    assert [f["type"] for f in frames] == ["status", "complete"]
    assert frames[-1]["summary"]["needsManual"] == 0


def test_manual_quote_count_and_check(client):
    assert client.get("/api/notifications/check-manual-quotes").json() == {"pendingCount": 1}

    body = client.post("/api/notifications/check-manual-quotes").json()
    assert body["sent"] == 1
    assert body["results"][0]["tc_package_id"] == 9003


def test_send_notification_validation(client):
    assert client.post("/api/notifications/send", json={"type": "price_change"}).status_code == 400
    assert client.post("/api/notifications/send", json={"type": "bogus", "package_id": 1}).status_code == 400
    assert client.post("/api/notifications/send", json={"type": "price_change", "package_id": 99}).status_code == 404


def test_send_notification_gate_result(client, store):
    resp = client.post("/api/notifications/send", json={
        "type": "price_change",
        "package_id": 1,
        "data": {"old_price": 1000, "new_price": 1030, "variance_pct": 3.0},
    })

    assert resp.json() == {"success": False, "reason": "Price change below threshold", "error": None}
    assert store.notification_logs == []


def test_notification_settings_roundtrip(client):
    resp = client.put("/api/notifications/settings", json={"price_change_threshold_pct": 8.0, "slack_enabled": False})

    assert resp.status_code == 200
    assert resp.json()["price_change_threshold_pct"] == 8.0
    assert client.get("/api/notifications/settings").json()["slack_enabled"] is False


def test_single_package_refresh(client, store):
    resp = client.post("/api/packages/1/refresh")

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "price_changed": True, "needs_manual": True, "variance_pct": 6.0}


def test_single_package_refresh_errors(client, provider):
    assert client.post("/api/packages/99/refresh").status_code == 404

    provider.errors[9001] = TravelCompositorError("TC API Error: 503 - down", 503)
    assert client.post("/api/packages/1/refresh").status_code == 502


def test_log_directory_comes_from_settings():
    assert main._LOG_DIR == Path(os.environ["LOG_DIR"])
    assert main._LOG_DIR.is_dir()
