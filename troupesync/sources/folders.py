"""
troupesync.sources.folders — Drive Folder Discovery
====================================================

Walks the Drive folders listed on each event type (sub-folders included)
and collects the forms and spreadsheets inside them.  Each file becomes a
candidate event of the event type whose folders contain it.

When a file is reachable from several event types, it goes to the type
that found fewer files overall; remaining ties go to the type with the
lower ``(title, id)``.

A folder that cannot be listed is recorded in
:attr:`DiscoveryResult.failed_types` so the caller keeps that type's
existing events instead of treating them as vanished.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime

from troupesync.constants import (
    DRIVE_FOLDER_REGEX,
    FOLDER_MIME_TYPE,
    FORMS_MIME_TYPE,
    SHEETS_MIME_TYPE,
)
from troupesync.engine.coercion import parse_date
from troupesync.errors import SourceError, SourceMalformed

logger = logging.getLogger(__name__)

_SOURCE_BY_MIME = {
    FORMS_MIME_TYPE: "forms",
    SHEETS_MIME_TYPE: "sheets",
}

_URI_BY_SOURCE = {
    "forms": "https://docs.google.com/forms/d/{id}/edit",
    "sheets": "https://docs.google.com/spreadsheets/d/{id}/edit",
}


@dataclass(frozen=True, slots=True)
class DiscoveredFile:
    file_id: str
    name: str
    source: str
    created_time: datetime

    @property
    def uri(self) -> str:
        return _URI_BY_SOURCE[self.source].format(id=self.file_id)


@dataclass(slots=True)
class EventTypeSnapshot:
    id: str
    title: str
    value: float
    source_folder_uris: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DiscoveryResult:
    files_by_type: dict[str, list[DiscoveredFile]] = field(default_factory=dict)
    failed_types: set[str] = field(default_factory=set)


def folder_id(uri: str) -> str:
    match = DRIVE_FOLDER_REGEX.search(uri or "")
    if match is None:
        raise SourceMalformed(f"Not a Drive folder URI: {uri!r}")
    return match.group("id")


class FolderDiscovery:
    def __init__(self, client) -> None:
        self.client = client

    def list_tree(self, uri: str) -> list[DiscoveredFile]:
        """Every form/spreadsheet under the folder at *uri*, breadth first."""
        pending = [folder_id(uri)]
        visited: set[str] = set()
        files: list[DiscoveredFile] = []
        while pending:
            current = pending.pop(0)
            if current in visited:
                continue
            visited.add(current)
            for item in self.client.list_folder(current):
                mime = item.get("mimeType")
                if mime == FOLDER_MIME_TYPE:
                    pending.append(item["id"])
                elif mime in _SOURCE_BY_MIME:
                    files.append(DiscoveredFile(
                        file_id=item["id"],
                        name=item.get("name") or "Untitled",
                        source=_SOURCE_BY_MIME[mime],
                        created_time=parse_date(item.get("createdTime"))
                        or datetime.now(UTC),
                    ))
        return files

    def discover(self, event_types: list[EventTypeSnapshot]) -> DiscoveryResult:
        result = DiscoveryResult()
        found: dict[str, dict[str, DiscoveredFile]] = {}
        for event_type in event_types:
            files: dict[str, DiscoveredFile] = {}
            for uri in event_type.source_folder_uris:
                try:
                    for discovered in self.list_tree(uri):
                        files.setdefault(discovered.file_id, discovered)
                except SourceError as exc:
                    logger.warning(
                        "Folder %s of event type %s skipped: %s", uri, event_type.id, exc
                    )
                    result.failed_types.add(event_type.id)
            found[event_type.id] = files

        claims: dict[str, list[EventTypeSnapshot]] = defaultdict(list)
        for event_type in event_types:
            for file_id in found[event_type.id]:
                claims[file_id].append(event_type)

        result.files_by_type = {event_type.id: [] for event_type in event_types}
        for file_id, claimants in claims.items():
            winner = min(
                claimants, key=lambda t: (len(found[t.id]), t.title, t.id)
            )
            result.files_by_type[winner.id].append(found[winner.id][file_id])

        for files in result.files_by_type.values():
            files.sort(key=lambda f: (f.created_time, f.file_id))
        return result
