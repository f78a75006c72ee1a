"""
troupesync.api.routes.sync — Sync Trigger Endpoints
====================================================

``POST /troupes/{troupe_id}/sync`` consumes one manual sync from the
troupe's quota and queues the request; the scheduler's consumer runs it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from troupesync.api.deps import get_engine, get_scheduler
from troupesync.database.models import Troupe
from troupesync.engine.coercion import as_utc
from troupesync.errors import QuotaExceeded, SyncInProgress, TroupeNotFound
from troupesync.services.scheduler import SyncScheduler
from troupesync.services.sync_service import request_manual_sync

router = APIRouter(prefix="/troupes", tags=["sync"])


class SyncQueued(BaseModel):
    troupe_id: str
    status: str


class SyncStatus(BaseModel):
    troupe_id: str
    sync_lock: bool
    sync_locked_at: datetime | None
    last_updated: datetime | None


@router.post("/{troupe_id}/sync", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    troupe_id: str,
    engine: Engine = Depends(get_engine),
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> SyncQueued:
    try:
        await asyncio.to_thread(request_manual_sync, engine, troupe_id, scheduler.enqueue)
    except TroupeNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except QuotaExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "quota_exceeded", "message": str(exc)},
        ) from exc
    except SyncInProgress as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return SyncQueued(troupe_id=troupe_id, status="queued")


@router.get("/{troupe_id}/sync")
def sync_status(troupe_id: str, engine: Engine = Depends(get_engine)) -> SyncStatus:
    with Session(engine) as session:
        troupe = session.get(Troupe, troupe_id)
        if troupe is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Troupe not found")
        return SyncStatus(
            troupe_id=troupe.id,
            sync_lock=troupe.sync_lock,
            sync_locked_at=as_utc(troupe.sync_locked_at) if troupe.sync_locked_at else None,
            last_updated=as_utc(troupe.last_updated) if troupe.last_updated else None,
        )
