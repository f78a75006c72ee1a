"""
troupesync.services.sync_service — Sync Orchestrator
=====================================================

Runs one troupe's sync as a state machine::

    Idle → Locked → Discovering → Ingesting → Reconciling → Persisting → Unlocked

- **Locked** — conditional write on ``troupes.sync_lock``; a held lock
  aborts at once with :class:`SyncInProgress`.
- **Discovering** — event-type folders are listed; new forms/spreadsheets
  become events, vanished discovered events are marked for deletion.
- **Ingesting** — each event's adapter runs on a worker thread and merges
  candidates into a shared :class:`AttendeeMap`.
- **Reconciling** — candidates are merged with persisted members; points
  are recomputed from this pass's attendance.
- **Persisting** — one transaction writes events, members, points and
  buckets, adjusts quotas and clears the lock.

Everything before Persisting is held in memory.  On any failure the lock is
released in a separate transaction and the error re-raised, so the troupe
is never left locked and no partial pass is written.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import Engine, delete, select

from troupesync.constants import FORMS_REGEX, SHEETS_REGEX, TOTAL_POINT_TYPE
from troupesync.database.engine import get_session
from troupesync.database.models import Event, EventType, Member, Troupe, TroupeLimit, new_id
from troupesync.engine.coercion import as_utc, parse_property_types
from troupesync.engine.identity import (
    AttendedEvent,
    AttendeeMap,
    merge_into_persisted,
    missing_required,
    normalize_properties,
)
from troupesync.engine.matchers import dump_field_map, load_field_map, load_matchers
from troupesync.engine.points import PointRange, parse_point_types, tally
from troupesync.errors import PartialIngestFailure, TroupeNotFound
from troupesync.services.bucket_service import delete_member_buckets, write_member_buckets
from troupesync.services.limit_service import increment_troupe_limits, quota_guard
from troupesync.services.lock_service import (
    acquire_sync_lock,
    claim_unlocked,
    release_sync_lock,
)
from troupesync.services.log_sheet import LogSheetService
from troupesync.services.points_service import delete_member_points, write_member_points
from troupesync.sources.base import (
    EventDataSource,
    EventSnapshot,
    IngestResult,
    TroupeContext,
)
from troupesync.sources.folders import EventTypeSnapshot, FolderDiscovery
from troupesync.sources.forms import FormsSource
from troupesync.sources.sheets import SheetsSource

logger = logging.getLogger(__name__)

SOURCE_ADAPTERS: dict[str, type[EventDataSource]] = {
    SheetsSource.kind: SheetsSource,
    FormsSource.kind: FormsSource,
}

_PROVIDER_PATTERNS = {"sheets": SHEETS_REGEX, "forms": FORMS_REGEX}


def provider_key(source: str, uri: str) -> tuple[str, str] | None:
    """``(source, provider id)`` for an event URI, or None if it doesn't parse."""
    pattern = _PROVIDER_PATTERNS.get(source)
    match = pattern.search(uri or "") if pattern else None
    return (source, match.group("id")) if match else None


# ---------------------------------------------------------------------------
# In-memory state carried between phases
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class PersistedMember:
    id: str
    properties: dict


@dataclass(slots=True)
class MemberPlan:
    id: str
    key: str
    properties: dict
    events: list[AttendedEvent]
    totals: dict[str, float]
    created: bool = False


@dataclass(slots=True)
class SyncPlan:
    troupe: TroupeContext
    name: str
    log_sheet_uri: str | None
    point_types: list[PointRange]
    event_types: list[EventTypeSnapshot]
    events: dict[str, EventSnapshot]
    members: dict[str, PersistedMember]
    events_left: int
    members_left: int
    new_events: set[str] = field(default_factory=set)
    retyped_events: set[str] = field(default_factory=set)
    deleted_events: set[str] = field(default_factory=set)
    results: dict[str, IngestResult] = field(default_factory=dict)
    skipped_events: int = 0


@dataclass(slots=True)
class Reconciliation:
    members: dict[str, MemberPlan]
    deleted_members: list[str]
    skipped_members: int = 0


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------
class SyncOrchestrator:
    """Runs :meth:`sync` for one troupe at a time per call.

    Parameters
    ----------
    engine:
        Database engine.
    client:
        Provider client (:class:`~troupesync.sources.google.GoogleClient`).
    workers:
        Parallelism bound for the Ingesting state.
    log_sheet:
        Optional log sheet hook called after a successful sync.
    clock:
        Returns "now"; tests pin it.
    """

    def __init__(
        self,
        engine: Engine,
        client,
        *,
        workers: int = 4,
        log_sheet: LogSheetService | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.engine = engine
        self.client = client
        self.workers = max(1, workers)
        self.log_sheet = log_sheet
        self.clock = clock or (lambda: datetime.now(UTC))

    def sync(self, troupe_id: str) -> dict:
        """Synchronize one troupe.

        Raises
        ------
        TroupeNotFound, SyncInProgress
            Before anything is read.
        PartialIngestFailure
            If adapters failed unexpectedly; nothing is written.
        """
        now = self.clock()
        acquire_sync_lock(self.engine, troupe_id, now)
        try:
            plan = self._load(troupe_id)
            self._discover(plan)
            attendees = self._ingest(plan, now)
            reconciliation = self._reconcile(plan, attendees)
            summary = self._persist(plan, reconciliation, now)
        except BaseException:
            release_sync_lock(self.engine, troupe_id)
            logger.warning("Sync of troupe %s aborted; lock released", troupe_id)
            raise

        logger.info("Sync of troupe %s complete: %s", troupe_id, summary)
        if self.log_sheet is not None and plan.log_sheet_uri:
            self._update_log(plan, reconciliation)
        return summary

    # -------------------------------------------------------------------
    # Load
    # -------------------------------------------------------------------
    def _load(self, troupe_id: str) -> SyncPlan:
        with get_session(self.engine) as session:
            troupe = session.get(Troupe, troupe_id)
            if troupe is None:
                raise TroupeNotFound(troupe_id)
            limits = session.get(TroupeLimit, troupe_id)
            event_types = session.scalars(
                select(EventType).where(EventType.troupe_id == troupe_id).order_by(EventType.id)
            ).all()
            events = session.scalars(
                select(Event).where(Event.troupe_id == troupe_id).order_by(Event.id)
            ).all()
            members = session.scalars(select(Member).where(Member.troupe_id == troupe_id)).all()

            return SyncPlan(
                troupe=TroupeContext(
                    id=troupe.id,
                    property_types=parse_property_types(troupe.member_property_types or {}),
                    matchers=load_matchers(troupe.field_matchers or []),
                    origin_event_id=troupe.origin_event_id,
                ),
                name=troupe.name,
                log_sheet_uri=troupe.log_sheet_uri,
                point_types=parse_point_types(troupe.point_types or {}),
                event_types=[
                    EventTypeSnapshot(t.id, t.title, t.value, list(t.source_folder_uris or []))
                    for t in event_types
                ],
                events={
                    e.id: EventSnapshot(
                        id=e.id,
                        title=e.title,
                        start_date=as_utc(e.start_date),
                        source=e.source or "",
                        source_uri=e.source_uri,
                        value=e.value,
                        event_type_id=e.event_type_id,
                        field_map=load_field_map(e.field_to_property_map),
                        discovered=e.discovered,
                    )
                    for e in events
                },
                members={
                    m.member_key: PersistedMember(m.id, dict(m.properties or {}))
                    for m in members
                },
                events_left=limits.events_left if limits else 0,
                members_left=limits.members_left if limits else 0,
            )

    # -------------------------------------------------------------------
    # Discovering
    # -------------------------------------------------------------------
    def _discover(self, plan: SyncPlan) -> None:
        if not any(t.source_folder_uris for t in plan.event_types) and not any(
            e.discovered for e in plan.events.values()
        ):
            return

        discovery = FolderDiscovery(self.client).discover(plan.event_types)
        by_key = {}
        for event in plan.events.values():
            key = provider_key(event.source, event.source_uri)
            if key is not None:
                by_key.setdefault(key, event)

        found: set[tuple[str, str]] = set()
        events_left = plan.events_left
        for event_type in plan.event_types:
            for discovered in discovery.files_by_type.get(event_type.id, []):
                key = (discovered.source, discovered.file_id)
                found.add(key)
                existing = by_key.get(key)
                if existing is not None:
                    if existing.event_type_id is None:
                        existing.event_type_id = event_type.id
                        existing.value = event_type.value
                        plan.retyped_events.add(existing.id)
                    continue
                if events_left <= 0:
                    plan.skipped_events += 1
                    continue
                snapshot = EventSnapshot(
                    id=new_id(),
                    title=discovered.name,
                    start_date=discovered.created_time,
                    source=discovered.source,
                    source_uri=discovered.uri,
                    value=event_type.value,
                    event_type_id=event_type.id,
                    discovered=True,
                )
                plan.events[snapshot.id] = snapshot
                plan.new_events.add(snapshot.id)
                by_key[key] = snapshot
                events_left -= 1

        listed_types = set(discovery.files_by_type) - discovery.failed_types
        for event in plan.events.values():
            if (
                event.discovered
                and event.id not in plan.new_events
                and event.event_type_id in listed_types
                and provider_key(event.source, event.source_uri) not in found
            ):
                plan.deleted_events.add(event.id)

        if plan.skipped_events:
            logger.warning(
                "Troupe %s: %d discovered event(s) skipped, event limit reached",
                plan.troupe.id, plan.skipped_events,
            )

    # -------------------------------------------------------------------
    # Ingesting
    # -------------------------------------------------------------------
    def _ingest(self, plan: SyncPlan, now: datetime) -> AttendeeMap:
        attendees = AttendeeMap()
        todo = [
            event for event in plan.events.values()
            if event.id not in plan.deleted_events and event.source in SOURCE_ADAPTERS
        ]
        if not todo:
            return attendees

        adapters = {
            kind: adapter_cls(self.client, plan.troupe, attendees)
            for kind, adapter_cls in SOURCE_ADAPTERS.items()
        }
        for adapter in adapters.values():
            adapter.init()

        failures: dict[str, BaseException] = {}
        with ThreadPoolExecutor(
            max_workers=min(self.workers, len(todo)), thread_name_prefix="ingest"
        ) as pool:
            futures = {
                pool.submit(adapters[event.source].discover_audience, event, now): event
                for event in todo
            }
            for future in as_completed(futures):
                event = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    logger.exception("Ingesting event %s failed", event.id)
                    failures[event.id] = exc
                    continue
                plan.results[event.id] = result
                if result.delete:
                    plan.deleted_events.add(event.id)

        if failures:
            raise PartialIngestFailure(failures)
        return attendees

    # -------------------------------------------------------------------
    # Reconciling
    # -------------------------------------------------------------------
    def _reconcile(self, plan: SyncPlan, attendees: AttendeeMap) -> Reconciliation:
        types = plan.troupe.property_types
        result = Reconciliation(members={}, deleted_members=[])
        created = 0

        for key, candidate in attendees.snapshot().items():
            events = [
                attended for attended in candidate.events.values()
                if attended.event_id not in plan.deleted_events
            ]
            persisted = plan.members.get(key)
            properties = merge_into_persisted(
                persisted.properties if persisted else None, candidate, types
            )
            if persisted is None:
                if missing_required(properties, types):
                    continue
                if created >= plan.members_left:
                    result.skipped_members += 1
                    continue
                created += 1
            result.members[key] = MemberPlan(
                id=persisted.id if persisted else new_id(),
                key=key,
                properties=properties,
                events=events,
                totals=tally(events, plan.point_types),
                created=persisted is None,
            )

        for key, persisted in plan.members.items():
            if key in result.members:
                continue
            properties = normalize_properties(persisted.properties, types)
            if missing_required(properties, types):
                result.deleted_members.append(persisted.id)
                continue
            result.members[key] = MemberPlan(
                id=persisted.id,
                key=key,
                properties=properties,
                events=[],
                totals=tally([], plan.point_types),
            )

        for key, member in list(result.members.items()):
            if not member.created and missing_required(member.properties, types):
                result.deleted_members.append(member.id)
                del result.members[key]

        if result.skipped_members:
            logger.warning(
                "Troupe %s: %d new member(s) skipped, member limit reached",
                plan.troupe.id, result.skipped_members,
            )
        return result

    # -------------------------------------------------------------------
    # Persisting
    # -------------------------------------------------------------------
    def _persist(self, plan: SyncPlan, reconciliation: Reconciliation, now: datetime) -> dict:
        troupe_id = plan.troupe.id
        removed_events = sorted(plan.deleted_events - plan.new_events)
        created_events = plan.new_events - plan.deleted_events
        members_created = sum(1 for m in reconciliation.members.values() if m.created)
        members_updated = 0
        buckets_written = 0

        with get_session(self.engine) as session:
            troupe = session.get(Troupe, troupe_id)
            if troupe is None:
                raise TroupeNotFound(troupe_id)

            # Events
            if removed_events:
                session.execute(delete(Event).where(Event.id.in_(removed_events)))
            for event in plan.events.values():
                if event.id in plan.deleted_events:
                    continue
                result = plan.results.get(event.id)
                field_map = (
                    dump_field_map(result.field_map)
                    if result is not None and result.field_map is not None
                    else dump_field_map(event.field_map)
                )
                if event.id in plan.new_events:
                    session.add(Event(
                        id=event.id,
                        troupe_id=troupe_id,
                        title=event.title,
                        start_date=event.start_date,
                        source=event.source,
                        source_uri=event.source_uri,
                        event_type_id=event.event_type_id,
                        value=event.value,
                        discovered=True,
                        field_to_property_map=field_map,
                        last_updated=now,
                    ))
                    continue
                row = session.get(Event, event.id)
                if row is None:
                    continue
                if (
                    row.field_to_property_map != field_map
                    or row.event_type_id != event.event_type_id
                    or row.value != event.value
                ):
                    row.field_to_property_map = field_map
                    row.event_type_id = event.event_type_id
                    row.value = event.value
                    row.last_updated = now

            if troupe.origin_event_id in plan.deleted_events:
                troupe.origin_event_id = None

            # Members
            if reconciliation.deleted_members:
                delete_member_points(session, reconciliation.deleted_members)
                delete_member_buckets(session, reconciliation.deleted_members)
                session.execute(
                    delete(Member).where(Member.id.in_(reconciliation.deleted_members))
                )
            rows = {
                m.id: m
                for m in session.scalars(select(Member).where(Member.troupe_id == troupe_id))
            }
            for member in reconciliation.members.values():
                row = rows.get(member.id)
                if row is None:
                    session.add(Member(
                        id=member.id,
                        troupe_id=troupe_id,
                        member_key=member.key,
                        properties=member.properties,
                        last_updated=now,
                    ))
                elif row.properties != member.properties:
                    row.properties = member.properties
                    row.last_updated = now
                    members_updated += 1
            session.flush()

            for member in reconciliation.members.values():
                write_member_points(session, troupe_id, member.id, member.totals)
                buckets_written += write_member_buckets(
                    session, troupe_id, member.id, member.events
                )

            # Quotas
            increment_troupe_limits(session, troupe_id, {
                "events_left": len(removed_events) - len(created_events),
                "members_left": len(reconciliation.deleted_members) - members_created,
            })

            # Unlocked
            troupe.sync_lock = False
            troupe.sync_locked_at = None
            troupe.last_updated = now

        return {
            "troupe_id": troupe_id,
            "events_discovered": len(created_events),
            "events_deleted": len(removed_events),
            "events_ingested": len(plan.results),
            "events_skipped": plan.skipped_events,
            "members_created": members_created,
            "members_updated": members_updated,
            "members_deleted": len(reconciliation.deleted_members),
            "members_skipped": reconciliation.skipped_members,
            "buckets_written": buckets_written,
        }

    # -------------------------------------------------------------------
    # Log sheet
    # -------------------------------------------------------------------
    def _update_log(self, plan: SyncPlan, reconciliation: Reconciliation) -> None:
        events = sorted(
            (e for e in plan.events.values() if e.id not in plan.deleted_events),
            key=lambda e: (e.start_date, e.id),
        )
        audience = sorted(
            reconciliation.members.values(),
            key=lambda m: (m.totals.get(TOTAL_POINT_TYPE, 0.0), m.key),
        )
        try:
            self.log_sheet.update_log(
                {"id": plan.troupe.id, "name": plan.name, "log_sheet_uri": plan.log_sheet_uri},
                [
                    {
                        "id": e.id,
                        "title": e.title,
                        "start_date": e.start_date.isoformat(),
                        "value": e.value,
                        "event_type_id": e.event_type_id,
                    }
                    for e in events
                ],
                [
                    {
                        "member_id": m.id,
                        "properties": m.properties,
                        "points": m.totals,
                        "events": sorted(a.event_id for a in m.events),
                    }
                    for m in audience
                ],
            )
        except Exception:
            logger.exception("Log sheet update failed for troupe %s", plan.troupe.id)


# ---------------------------------------------------------------------------
# Manual sync requests
# ---------------------------------------------------------------------------
def request_manual_sync(
    engine: Engine, troupe_id: str, enqueue: Callable[[str], None]
) -> None:
    """Consume one manual sync and queue ``troupe_id`` for the orchestrator.

    Raises
    ------
    QuotaExceeded
        If the troupe has no manual syncs left.
    SyncInProgress
        If a sync already holds the lock.
    """
    with quota_guard(engine, troupe_id, {"manual_syncs_left": -1}) as session:
        claim_unlocked(session, troupe_id)
        enqueue(troupe_id)
    logger.info("Manual sync queued for troupe %s", troupe_id)
