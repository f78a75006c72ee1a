"""
troupesync.api.deps — FastAPI dependency injection
===================================================
"""

from __future__ import annotations

from functools import lru_cache

from fastapi import HTTPException, Request, status
from sqlalchemy import Engine

from troupesync.config import TroupeSyncConfig, load_config
from troupesync.database.engine import create_db_engine
from troupesync.services.scheduler import SyncScheduler


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> TroupeSyncConfig:
    return load_config()


def get_scheduler(request: Request) -> SyncScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync scheduler not running",
        )
    return scheduler
