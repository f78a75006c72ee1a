"""
tests/test_scheduler.py — Sync Queue & Periodic Job Tests
==========================================================
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from unittest.mock import MagicMock

from sqlalchemy.orm import Session

from conftest import NOW, insert_event, sheet_uri
from troupesync.config import TroupeSyncConfig
from troupesync.database.models import Troupe, TroupeLimit
from troupesync.services.limit_service import increment_troupe_limits
from troupesync.services.lock_service import acquire_sync_lock
from troupesync.services.scheduler import SyncScheduler, list_troupe_ids
from troupesync.services.sync_service import SyncOrchestrator
from troupesync.services.troupe_service import create_troupe

CONFIG = TroupeSyncConfig(service_name="test")

ROSTER = "Member ID,First Name,Last Name,Email\nm1,Ann,Lee,ann@example.com\n"


def make_scheduler(engine, client) -> SyncScheduler:
    return SyncScheduler(engine, SyncOrchestrator(engine, client, clock=lambda: NOW), CONFIG)


class TestConsumer:
    def test_runs_queued_sync(self, db_engine, fake_client, troupe_id):
        fake_client.sheets["s1"] = ROSTER
        insert_event(db_engine, troupe_id, source_uri=sheet_uri("s1"))
        scheduler = make_scheduler(db_engine, fake_client)
        scheduler.enqueue(troupe_id)

        summary = asyncio.run(scheduler.consume_once())

        assert summary["members_created"] == 1
        assert scheduler.queue.empty()

    def test_locked_troupe_skipped(self, db_engine, fake_client, troupe_id):
        acquire_sync_lock(db_engine, troupe_id, NOW)
        scheduler = make_scheduler(db_engine, fake_client)
        scheduler.enqueue(troupe_id)
        assert asyncio.run(scheduler.consume_once()) is None

    def test_unknown_troupe_skipped(self, db_engine, fake_client):
        scheduler = make_scheduler(db_engine, fake_client)
        scheduler.enqueue("missing")
        assert asyncio.run(scheduler.consume_once()) is None

    def test_failed_sync_does_not_stop_consumer(self, db_engine):
        orchestrator = MagicMock(spec=SyncOrchestrator)
        orchestrator.sync.side_effect = [RuntimeError("boom"), {"troupe_id": "b"}]
        scheduler = SyncScheduler(db_engine, orchestrator, CONFIG)
        scheduler.enqueue("a")
        scheduler.enqueue("b")

        async def drain():
            return [await scheduler.consume_once(), await scheduler.consume_once()]

        assert asyncio.run(drain()) == [None, {"troupe_id": "b"}]


class TestPeriodicJobs:
    def test_schedule_all_queues_every_troupe(self, db_engine, fake_client, troupe_id):
        other = create_troupe(db_engine, "Brass", has_invite_code=True)["id"]
        scheduler = make_scheduler(db_engine, fake_client)

        assert asyncio.run(scheduler.schedule_all_once()) == 2

        queued = {scheduler.queue.get_nowait() for _ in range(2)}
        assert queued == {troupe_id, other}
        assert list_troupe_ids(db_engine) == sorted([troupe_id, other])

    def test_sweep_clears_stale_locks(self, db_engine, fake_client, troupe_id):
        acquire_sync_lock(db_engine, troupe_id, datetime(2020, 1, 1, tzinfo=UTC))
        scheduler = make_scheduler(db_engine, fake_client)
        assert asyncio.run(scheduler.sweep_once()) == 1
        with Session(db_engine) as session:
            assert not session.get(Troupe, troupe_id).sync_lock

    def test_refresh_restores_manual_syncs(self, db_engine, fake_client, troupe_id):
        with Session(db_engine) as session:
            increment_troupe_limits(session, troupe_id, {"manual_syncs_left": -5})
            session.commit()
        scheduler = make_scheduler(db_engine, fake_client)
        assert asyncio.run(scheduler.refresh_limits_once()) == {"invited": 1, "uninvited": 0}
        with Session(db_engine) as session:
            assert session.get(TroupeLimit, troupe_id).manual_syncs_left == 5


class TestLifecycle:
    def test_started_consumer_drains_queue(self, db_engine, fake_client, troupe_id):
        fake_client.sheets["s1"] = ROSTER
        insert_event(db_engine, troupe_id, source_uri=sheet_uri("s1"))
        scheduler = make_scheduler(db_engine, fake_client)

        async def run():
            scheduler.start()
            assert [t.get_name() for t in scheduler._tasks] == [
                "sync-consumer", "stale-lock-sweep", "limits-refresh", "scheduled-sync",
            ]
            scheduler.enqueue(troupe_id)
            await asyncio.wait_for(scheduler.queue.join(), timeout=10)
            scheduler.stop()

        asyncio.run(run())

        with Session(db_engine) as session:
            troupe = session.get(Troupe, troupe_id)
            assert not troupe.sync_lock
            assert len(troupe.members) == 1
        assert scheduler._tasks == []
