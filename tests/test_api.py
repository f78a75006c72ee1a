"""
tests/test_api.py — FastAPI Route Tests
========================================
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from conftest import NOW
from troupesync.config import TroupeSyncConfig
from troupesync.database.models import TroupeLimit
from troupesync.services.lock_service import acquire_sync_lock
from troupesync.services.scheduler import SyncScheduler
from troupesync.services.sync_service import SyncOrchestrator


@pytest.fixture
def api(db_engine, fake_client):
    """TestClient against the SQLite engine with a scheduler that is not started."""
    from troupesync.api.deps import get_engine
    from troupesync.api.main import app

    scheduler = SyncScheduler(
        db_engine,
        SyncOrchestrator(db_engine, fake_client, clock=lambda: NOW),
        TroupeSyncConfig(service_name="test"),
    )
    app.dependency_overrides[get_engine] = lambda: db_engine
    app.state.scheduler = scheduler
    yield TestClient(app, raise_server_exceptions=False), scheduler
    app.dependency_overrides.clear()
    del app.state.scheduler


class TestHealthEndpoint:
    def test_health_returns_ok(self, api):
        client, _ = api
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestSyncTrigger:
    def test_queues_and_charges_quota(self, api, db_engine, troupe_id):
        client, scheduler = api
        resp = client.post(f"/api/troupes/{troupe_id}/sync")
        assert resp.status_code == 202
        assert resp.json() == {"troupe_id": troupe_id, "status": "queued"}
        assert scheduler.queue.get_nowait() == troupe_id
        with Session(db_engine) as session:
            assert session.get(TroupeLimit, troupe_id).manual_syncs_left == 4

    def test_unknown_troupe_404(self, api):
        client, _ = api
        assert client.post("/api/troupes/nope/sync").status_code == 404

    def test_locked_troupe_409(self, api, db_engine, troupe_id):
        client, scheduler = api
        acquire_sync_lock(db_engine, troupe_id, NOW)
        assert client.post(f"/api/troupes/{troupe_id}/sync").status_code == 409
        assert scheduler.queue.empty()

    def test_quota_exhausted_429(self, api, troupe_id):
        client, _ = api
        for _ in range(5):
            assert client.post(f"/api/troupes/{troupe_id}/sync").status_code == 202
        resp = client.post(f"/api/troupes/{troupe_id}/sync")
        assert resp.status_code == 429
        assert resp.json()["detail"]["error"] == "quota_exceeded"

    def test_no_scheduler_503(self, api, troupe_id):
        client, _ = api
        from troupesync.api.main import app

        app.state.scheduler = None
        assert client.post(f"/api/troupes/{troupe_id}/sync").status_code == 503


class TestSyncStatus:
    def test_reports_lock(self, api, db_engine, troupe_id):
        client, _ = api
        assert client.get(f"/api/troupes/{troupe_id}/sync").json()["sync_lock"] is False
        acquire_sync_lock(db_engine, troupe_id, NOW)
        body = client.get(f"/api/troupes/{troupe_id}/sync").json()
        assert body["sync_lock"] is True
        assert body["sync_locked_at"].startswith("2026-03-01T12:00:00")

    def test_unknown_troupe_404(self, api):
        client, _ = api
        assert client.get("/api/troupes/nope/sync").status_code == 404
