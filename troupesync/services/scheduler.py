"""
troupesync.services.scheduler — Sync Queue Consumer & Periodic Jobs
====================================================================

Background tasks on the API's event loop:

- **Queue consumer** — pulls ``troupe_id`` sync requests off an
  ``asyncio.Queue`` and runs the orchestrator on a worker thread, one
  request at a time.
- **Stale-lock sweep** — every ``stale_lock_sweep_minutes``, force-clears
  locks held longer than ``max_sync_minutes``.
- **Limits refresh** — every ``limits_refresh_hours``, resets the periodic
  quota counters.
- **Scheduled sync** — every ``scheduled_sync_hours``, queues every troupe.

Each loop logs and survives its own failures.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy import Engine, select

from troupesync.config import TroupeSyncConfig
from troupesync.database.engine import get_session, run_db
from troupesync.database.models import Troupe
from troupesync.errors import LockConflict, TroupeNotFound
from troupesync.services.limit_service import refresh_global_limits, refresh_troupe_limits
from troupesync.services.lock_service import sweep_stale_locks
from troupesync.services.sync_service import SyncOrchestrator

logger = logging.getLogger(__name__)


def list_troupe_ids(engine: Engine) -> list[str]:
    with get_session(engine) as session:
        return list(session.scalars(select(Troupe.id).order_by(Troupe.id)))


class SyncScheduler:
    """Owns the sync queue and the periodic maintenance loops."""

    def __init__(
        self, engine: Engine, orchestrator: SyncOrchestrator, config: TroupeSyncConfig
    ) -> None:
        self.engine = engine
        self.orchestrator = orchestrator
        self.config = config
        self.queue: asyncio.Queue[str] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: list[asyncio.Task] = []

    # -------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------
    def enqueue(self, troupe_id: str) -> None:
        """Queue a sync request.  Safe to call from worker threads."""
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self.queue.put_nowait, troupe_id)
        else:
            self.queue.put_nowait(troupe_id)

    async def consume_once(self) -> dict | None:
        """Run the orchestrator for the next queued request."""
        troupe_id = await self.queue.get()
        try:
            return await run_db(self.orchestrator.sync, troupe_id)
        except LockConflict:
            logger.info("Sync for troupe %s skipped: already in progress", troupe_id)
        except TroupeNotFound:
            logger.warning("Sync requested for unknown troupe %s", troupe_id)
        except Exception:
            logger.exception("Sync failed for troupe %s", troupe_id)
        finally:
            self.queue.task_done()
        return None

    # -------------------------------------------------------------------
    # Periodic jobs
    # -------------------------------------------------------------------
    async def sweep_once(self) -> int:
        cleared = await run_db(sweep_stale_locks, self.engine, self.config.max_sync_minutes)
        if cleared:
            logger.warning("Stale-lock sweep cleared %d troupe(s)", cleared)
        return cleared

    async def refresh_limits_once(self) -> dict[str, int]:
        await run_db(refresh_global_limits, self.engine)
        return await run_db(refresh_troupe_limits, self.engine)

    async def schedule_all_once(self) -> int:
        troupe_ids = await run_db(list_troupe_ids, self.engine)
        for troupe_id in troupe_ids:
            self.enqueue(troupe_id)
        logger.info("Scheduled sync queued for %d troupe(s)", len(troupe_ids))
        return len(troupe_ids)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start every background loop (idempotent)."""
        if self._tasks:
            return
        self._loop = loop or asyncio.get_running_loop()

        async def _consume_loop() -> None:
            while True:
                await self.consume_once()

        def _every(seconds: float, job: Callable[[], Awaitable], label: str):
            async def _loop() -> None:
                while True:
                    await asyncio.sleep(seconds)
                    try:
                        await job()
                    except Exception:
                        logger.exception("%s failed", label)
            return _loop()

        self._tasks = [
            self._loop.create_task(_consume_loop(), name="sync-consumer"),
            self._loop.create_task(
                _every(self.config.stale_lock_sweep_minutes * 60, self.sweep_once,
                       "Stale-lock sweep"),
                name="stale-lock-sweep",
            ),
            self._loop.create_task(
                _every(self.config.limits_refresh_hours * 3600, self.refresh_limits_once,
                       "Limits refresh"),
                name="limits-refresh",
            ),
            self._loop.create_task(
                _every(self.config.scheduled_sync_hours * 3600, self.schedule_all_once,
                       "Scheduled sync"),
                name="scheduled-sync",
            ),
        ]
        logger.info("Sync scheduler started (%d tasks)", len(self._tasks))

    def stop(self) -> None:
        """Cancel every background loop."""
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        logger.info("Sync scheduler stopped")
