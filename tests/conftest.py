"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite has no JSONB; we register a compiler so it renders as TEXT while
# SQLAlchemy's JSON serialization still applies.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from troupesync.database.models import Base, Event
from troupesync.errors import SourceUnreachable

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def sheet_uri(sheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{sheet_id}/edit"


def form_uri(form_id: str) -> str:
    return f"https://docs.google.com/forms/d/{form_id}/edit"


def folder_uri(folder_id: str) -> str:
    return f"https://drive.google.com/drive/folders/{folder_id}"


# ---------------------------------------------------------------------------
# Fake provider client: same surface as GoogleClient
# ---------------------------------------------------------------------------
class FakeGoogleClient:
    """In-memory Drive / Sheets / Forms.

    ``failures`` maps a provider id to the exception raised when it is read.
    """

    def __init__(self) -> None:
        self.sheets: dict[str, str] = {}
        self.forms: dict[str, dict] = {}
        self.responses: dict[str, list[dict]] = {}
        self.folders: dict[str, list[dict]] = {}
        self.failures: dict[str, BaseException] = {}
        self.opened = 0

    def open(self) -> None:
        self.opened += 1

    def close(self) -> None:
        pass

    def _check(self, provider_id: str, store: dict) -> None:
        if provider_id in self.failures:
            raise self.failures[provider_id]
        if provider_id not in store:
            raise SourceUnreachable(f"{provider_id} answered 404")

    def export_sheet_csv(self, spreadsheet_id: str) -> str:
        self._check(spreadsheet_id, self.sheets)
        return self.sheets[spreadsheet_id]

    def get_form(self, form_id: str) -> dict:
        self._check(form_id, self.forms)
        return self.forms[form_id]

    def list_form_responses(self, form_id: str) -> list[dict]:
        self._check(form_id, self.forms)
        return self.responses.get(form_id, [])

    def list_folder(self, folder_id: str) -> list[dict]:
        self._check(folder_id, self.folders)
        return self.folders[folder_id]


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all troupesync tables.

    Uses StaticPool so every thread shares the same in-memory database.
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def fake_client() -> FakeGoogleClient:
    return FakeGoogleClient()


@pytest.fixture
def troupe_id(db_engine: Engine) -> str:
    """An invited troupe with default configuration."""
    from troupesync.services.troupe_service import create_troupe

    return create_troupe(db_engine, "Strings", has_invite_code=True)["id"]


def insert_event(
    engine: Engine,
    troupe_id: str,
    *,
    title: str = "Rehearsal",
    start_date: datetime = datetime(2026, 2, 1, tzinfo=UTC),
    source: str = "sheets",
    source_uri: str,
    value: float = 10.0,
    event_type_id: str | None = None,
    discovered: bool = False,
    field_to_property_map: dict | None = None,
) -> str:
    """Insert an event directly (no quota, no lock check)."""
    with Session(engine) as session:
        event = Event(
            troupe_id=troupe_id,
            title=title,
            start_date=start_date,
            source=source,
            source_uri=source_uri,
            value=value,
            event_type_id=event_type_id,
            discovered=discovered,
            field_to_property_map=field_to_property_map or {},
        )
        session.add(event)
        session.commit()
        return event.id
