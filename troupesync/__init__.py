"""
troupesync — Attendance Synchronization Engine
===============================================
Tracks troupe membership and event attendance.  Rosters are pulled from
Google Sheets, Google Forms and Drive folder hierarchies, mapped onto typed
member properties, merged into one identity per member and turned into
date-ranged point totals.

Package layout::

    troupesync/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Defaults, URL patterns, quota presets
    ├── errors.py          # Exception taxonomy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + session helpers
    │   └── models.py      # ORM models (troupes, events, members, buckets, limits)
    ├── engine/
    │   ├── coercion.py    # Property type parsing + value coercion
    │   ├── matchers.py    # Field label → member property resolution
    │   ├── identity.py    # Candidate members + concurrent attendee map
    │   ├── points.py      # Point-type ranges and deltas
    │   └── buckets.py     # Attendance page layout
    ├── sources/
    │   ├── google.py      # Bounded, retrying Google API client
    │   ├── base.py        # EventDataSource contract
    │   ├── sheets.py      # Spreadsheet adapter
    │   ├── forms.py       # Form adapter
    │   └── folders.py     # Drive folder discovery
    ├── services/
    │   ├── limit_service.py   # Quota checks + atomic counters
    │   ├── lock_service.py    # Advisory sync lock + stale sweep
    │   ├── sync_service.py    # Sync orchestrator state machine
    │   ├── event_service.py   # Event / event-type mutations
    │   ├── member_service.py  # Member mutations
    │   ├── troupe_service.py  # Troupe configuration mutations
    │   ├── points_service.py  # Bulk point delta updates
    │   ├── bucket_service.py  # Bucket persistence
    │   ├── log_sheet.py       # Log sheet hook interface
    │   └── scheduler.py       # Queue consumer + periodic jobs
    └── api/
        ├── main.py        # FastAPI app
        └── routes/        # Sync trigger endpoints
"""

__version__ = "1.0.0"
