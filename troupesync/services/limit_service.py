"""
troupesync.services.limit_service — Quota Service
==================================================

Every externally visible mutation is gated by per-troupe counters
(``troupe_limits``) and, for troupe creation, a global counter
(``global_limits``).

The pattern is always:

1. ``within_troupe_limits`` — side-effect-free pre-check that every touched
   counter stays ≥ 0.  Failure → :class:`QuotaExceeded`, nothing mutated.
2. The mutation.
3. ``increment_troupe_limits`` — one conditional ``UPDATE`` that applies all
   deltas only if each decremented counter is still large enough.  A miss
   here means the mutation happened but accounting did not, which is a
   :class:`DataIntegrityError`.

:func:`quota_guard` runs all three in one transaction, so a mutation that
raises leaves the counters untouched.  Bulk operations pass a
:class:`LimitScope`: per-item increments are collected in the scope and
applied once when the scope closes.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy import Engine, select, update
from sqlalchemy.orm import Session

from troupesync.constants import (
    GLOBAL_LIMITS,
    INVITED_TROUPE_LIMITS,
    REFRESHABLE_LIMITS,
    UNINVITED_TROUPE_LIMITS,
)
from troupesync.database.engine import get_session
from troupesync.database.models import GlobalLimit, TroupeLimit
from troupesync.errors import DataIntegrityError, QuotaExceeded, TroupeNotFound

logger = logging.getLogger(__name__)

GLOBAL_LIMIT_ID = 1


@dataclass(slots=True)
class LimitScope:
    """Suspends per-item accounting for one troupe during a bulk operation."""

    troupe_id: str
    pending: Counter = field(default_factory=Counter)

    def covers(self, troupe_id: str) -> bool:
        return self.troupe_id == troupe_id

    def add(self, modifications: Mapping[str, int]) -> None:
        self.pending.update(modifications)


def _check_names(model: type, modifications: Mapping[str, int]) -> None:
    for name in modifications:
        if not hasattr(model, name) or name in ("troupe_id", "id", "has_invite_code"):
            raise ValueError(f"Unknown limit counter: {name}")


def _apply_increment(
    session: Session, model: type, where, modifications: Mapping[str, int], label: str
) -> None:
    changes = {name: delta for name, delta in modifications.items() if delta}
    if not changes:
        return
    floor_checks = [getattr(model, name) >= -delta for name, delta in changes.items() if delta < 0]
    result = session.execute(
        update(model)
        .where(where, *floor_checks)
        .values({name: getattr(model, name) + delta for name, delta in changes.items()})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.critical("Quota accounting failed for %s: %s", label, changes)
        raise DataIntegrityError(f"Could not apply limit changes {changes} for {label}")
    # Loaded counters are stale now
    for obj in list(session.identity_map.values()):
        if isinstance(obj, model):
            session.expire(obj)


# ---------------------------------------------------------------------------
# Troupe limits
# ---------------------------------------------------------------------------
def within_troupe_limits(
    session: Session,
    troupe_id: str,
    modifications: Mapping[str, int],
    scope: LimitScope | None = None,
) -> bool:
    """True if applying *modifications* keeps every counter ≥ 0."""
    _check_names(TroupeLimit, modifications)
    if scope is not None and scope.covers(troupe_id):
        return True
    limits = session.get(TroupeLimit, troupe_id)
    if limits is None:
        raise TroupeNotFound(troupe_id)
    return all(getattr(limits, name) + delta >= 0 for name, delta in modifications.items())


def increment_troupe_limits(
    session: Session,
    troupe_id: str,
    modifications: Mapping[str, int],
    scope: LimitScope | None = None,
) -> None:
    """Atomically add *modifications* (usually negative) to the counters.

    Raises
    ------
    DataIntegrityError
        If a counter would drop below zero or the row is gone.
    """
    _check_names(TroupeLimit, modifications)
    if scope is not None and scope.covers(troupe_id):
        scope.add(modifications)
        return
    _apply_increment(
        session, TroupeLimit, TroupeLimit.troupe_id == troupe_id, modifications,
        f"troupe {troupe_id}",
    )


def require_within_limits(
    session: Session,
    troupe_id: str,
    modifications: Mapping[str, int],
    scope: LimitScope | None = None,
) -> None:
    """Raise :class:`QuotaExceeded` unless *modifications* fit."""
    if not within_troupe_limits(session, troupe_id, modifications, scope):
        logger.warning("Troupe %s over limits for %s", troupe_id, dict(modifications))
        raise QuotaExceeded()


@contextmanager
def limit_scope(session: Session, troupe_id: str) -> Iterator[LimitScope]:
    """Collect per-item increments and apply them as one update on exit."""
    scope = LimitScope(troupe_id)
    yield scope
    increment_troupe_limits(session, troupe_id, dict(scope.pending))


@contextmanager
def quota_guard(
    engine: Engine, troupe_id: str, modifications: Mapping[str, int]
) -> Iterator[Session]:
    """Pre-check, yield a session for the mutation, then account for it.

    Usage::

        with quota_guard(engine, troupe_id, {"modify_operations_left": -1}) as session:
            session.add(...)
    """
    with get_session(engine) as session:
        require_within_limits(session, troupe_id, modifications)
        yield session
        session.flush()
        increment_troupe_limits(session, troupe_id, modifications)


def init_troupe_limits(session: Session, troupe_id: str, has_invite_code: bool) -> TroupeLimit:
    preset = INVITED_TROUPE_LIMITS if has_invite_code else UNINVITED_TROUPE_LIMITS
    limits = TroupeLimit(troupe_id=troupe_id, has_invite_code=has_invite_code, **preset)
    session.add(limits)
    return limits


def remove_troupe_limits(session: Session, troupe_id: str) -> None:
    limits = session.get(TroupeLimit, troupe_id)
    if limits is not None:
        session.delete(limits)


def refresh_troupe_limits(engine: Engine) -> dict[str, int]:
    """Reset the periodic counters (get/modify/manual syncs) to their preset."""
    refreshed = {}
    with get_session(engine) as session:
        for label, invited, preset in (
            ("invited", True, INVITED_TROUPE_LIMITS),
            ("uninvited", False, UNINVITED_TROUPE_LIMITS),
        ):
            result = session.execute(
                update(TroupeLimit)
                .where(TroupeLimit.has_invite_code.is_(invited))
                .values({name: preset[name] for name in REFRESHABLE_LIMITS})
                .execution_options(synchronize_session=False)
            )
            refreshed[label] = result.rowcount
    logger.info("Troupe limits refreshed: %s", refreshed)
    return refreshed


# ---------------------------------------------------------------------------
# Global limits
# ---------------------------------------------------------------------------
def init_global_limits(engine: Engine) -> None:
    """Create the global counter row if missing (idempotent)."""
    with get_session(engine) as session:
        if session.get(GlobalLimit, GLOBAL_LIMIT_ID) is None:
            session.add(GlobalLimit(id=GLOBAL_LIMIT_ID, **GLOBAL_LIMITS))
            logger.info("Global limits initialized: %s", GLOBAL_LIMITS)


def refresh_global_limits(engine: Engine) -> None:
    """Reset the global counters to their preset, creating the row if missing."""
    with get_session(engine) as session:
        limits = session.get(GlobalLimit, GLOBAL_LIMIT_ID)
        if limits is None:
            session.add(GlobalLimit(id=GLOBAL_LIMIT_ID, **GLOBAL_LIMITS))
        else:
            for name, value in GLOBAL_LIMITS.items():
                setattr(limits, name, value)
    logger.info("Global limits refreshed: %s", GLOBAL_LIMITS)


def within_global_limits(session: Session, modifications: Mapping[str, int]) -> bool:
    _check_names(GlobalLimit, modifications)
    limits = session.scalar(select(GlobalLimit).where(GlobalLimit.id == GLOBAL_LIMIT_ID))
    if limits is None:
        return False
    return all(getattr(limits, name) + delta >= 0 for name, delta in modifications.items())


def increment_global_limits(session: Session, modifications: Mapping[str, int]) -> None:
    _check_names(GlobalLimit, modifications)
    _apply_increment(
        session, GlobalLimit, GlobalLimit.id == GLOBAL_LIMIT_ID, modifications, "global"
    )
