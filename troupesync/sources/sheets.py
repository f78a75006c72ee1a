"""
troupesync.sources.sheets — Spreadsheet Adapter
================================================

Reads a Google Sheet through its CSV export.  Row 1 holds the field
labels, the remaining rows are attendance records.  Fields are identified by
column index, so correcting a header keeps a manual mapping on that column;
inserting or moving columns does not.  Spreadsheet cells carry no
true/false declaration, so no column can map to a boolean property.
"""

from __future__ import annotations

import csv
import io
from datetime import datetime

from troupesync.constants import SHEETS_REGEX
from troupesync.engine.coercion import BaseType, PropertyType
from troupesync.errors import SourceMalformed
from troupesync.sources.base import EventDataSource, EventSnapshot, SourceTable


def _allowed(field_id: str, ptype: PropertyType) -> bool:
    return ptype.base is not BaseType.BOOLEAN


class SheetsSource(EventDataSource):
    kind = "sheets"
    uri_pattern = SHEETS_REGEX

    def fetch(self, event: EventSnapshot, as_of: datetime) -> SourceTable:
        text = self.client.export_sheet_csv(self.resolve_id(event.source_uri))
        if text.lstrip().startswith("<"):
            raise SourceMalformed(f"Spreadsheet export for {event.source_uri} is not CSV")
        try:
            rows = list(csv.reader(io.StringIO(text)))
        except csv.Error as exc:
            raise SourceMalformed(f"Unreadable CSV export: {exc}") from exc
        if not rows:
            raise SourceMalformed(f"Spreadsheet {event.source_uri} is empty")

        fields = {
            str(column): label.strip() or f"Column {column + 1}"
            for column, label in enumerate(rows[0])
        }

        field_ids = list(fields)
        records = []
        for row in rows[1:]:
            if not any(cell.strip() for cell in row):
                continue
            padded = row[: len(field_ids)] + [""] * (len(field_ids) - len(row))
            records.append(dict(zip(field_ids, padded)))

        return SourceTable(fields, records, allowed=_allowed)
