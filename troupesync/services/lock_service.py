"""
troupesync.services.lock_service — Advisory Troupe Sync Lock
=============================================================

The sync lock is a persisted boolean on ``troupes``, so it survives process
restarts and is visible to every worker.  All transitions are conditional
writes checked through ``rowcount``:

- acquire: ``UPDATE … SET sync_lock = true WHERE sync_lock = false``
- mutation paths: :func:`claim_unlocked` touches the row only while it is
  unlocked, inside the caller's transaction
- sweep: force-clear locks older than the maximum sync duration
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, select, update
from sqlalchemy.orm import Session

from troupesync.database.engine import get_session
from troupesync.database.models import Troupe
from troupesync.errors import SyncInProgress, TroupeNotFound

logger = logging.getLogger(__name__)


def _raise_for_missed(session: Session, troupe_id: str) -> None:
    exists = session.scalar(select(Troupe.id).where(Troupe.id == troupe_id))
    if exists is None:
        raise TroupeNotFound(troupe_id)
    raise SyncInProgress(troupe_id)


def acquire_sync_lock(engine: Engine, troupe_id: str, now: datetime | None = None) -> None:
    """Set the lock in its own committed transaction.

    Raises
    ------
    TroupeNotFound
        If the troupe doesn't exist.
    SyncInProgress
        If the lock is already held.
    """
    now = now or datetime.now(UTC)
    with get_session(engine) as session:
        result = session.execute(
            update(Troupe)
            .where(Troupe.id == troupe_id, Troupe.sync_lock.is_(False))
            .values(sync_lock=True, sync_locked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            _raise_for_missed(session, troupe_id)
    logger.info("Sync lock acquired for troupe %s", troupe_id)


def release_sync_lock(engine: Engine, troupe_id: str) -> bool:
    """Clear the lock.  Returns False if it was not held."""
    with get_session(engine) as session:
        result = session.execute(
            update(Troupe)
            .where(Troupe.id == troupe_id, Troupe.sync_lock.is_(True))
            .values(sync_lock=False, sync_locked_at=None)
            .execution_options(synchronize_session=False)
        )
    released = result.rowcount == 1
    if released:
        logger.info("Sync lock released for troupe %s", troupe_id)
    return released


def claim_unlocked(session: Session, troupe_id: str, now: datetime | None = None) -> Troupe:
    """Touch the troupe inside the caller's transaction, refusing while locked.

    The conditional write holds the row until the caller commits, so a sync
    cannot take the lock halfway through the mutation.
    """
    result = session.execute(
        update(Troupe)
        .where(Troupe.id == troupe_id, Troupe.sync_lock.is_(False))
        .values(last_updated=now or datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        _raise_for_missed(session, troupe_id)
    troupe = session.get(Troupe, troupe_id)
    assert troupe is not None
    return troupe


def sweep_stale_locks(
    engine: Engine, max_sync_minutes: int, now: datetime | None = None
) -> int:
    """Force-clear locks held longer than *max_sync_minutes*.

    Returns the number of troupes unlocked.
    """
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(minutes=max_sync_minutes)
    with get_session(engine) as session:
        stale = session.scalars(
            select(Troupe.id).where(
                Troupe.sync_lock.is_(True),
                (Troupe.sync_locked_at.is_(None)) | (Troupe.sync_locked_at < cutoff),
            )
        ).all()
        if stale:
            session.execute(
                update(Troupe)
                .where(Troupe.id.in_(stale), Troupe.sync_lock.is_(True))
                .values(sync_lock=False, sync_locked_at=None)
                .execution_options(synchronize_session=False)
            )
    for troupe_id in stale:
        logger.warning("Stale sync lock force-cleared for troupe %s", troupe_id)
    return len(stale)
