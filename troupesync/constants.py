"""
troupesync.constants — Shared Constants
========================================

Single source of truth for troupe defaults, provider URL patterns and
quota presets.  Import from here instead of duplicating in services,
sources and tests.
"""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Attendance pages
# ---------------------------------------------------------------------------
MAX_PAGE_SIZE = 30

# ---------------------------------------------------------------------------
# Member properties
# ---------------------------------------------------------------------------
MEMBER_ID_PROPERTY = "Member ID"

BASE_MEMBER_PROPERTY_TYPES: dict[str, str] = {
    "Member ID": "string!",
    "First Name": "string!",
    "Last Name": "string!",
    "Email": "string!",
    "Birthday": "date?",
}

# ---------------------------------------------------------------------------
# Point types: ISO dates, inclusive on both ends
# ---------------------------------------------------------------------------
TOTAL_POINT_TYPE = "Total"

BASE_POINT_TYPES: dict[str, dict[str, str]] = {
    TOTAL_POINT_TYPE: {
        "start_date": "1970-01-01T00:00:00+00:00",
        "end_date": "3000-01-01T00:00:00+00:00",
    },
}

# ---------------------------------------------------------------------------
# Field matchers applied to a new troupe
# ---------------------------------------------------------------------------
DEFAULT_MATCHERS: list[dict] = [
    {"match_condition": "contains", "field_expression": "ID",
     "member_property": "Member ID", "filters": ["nocase"], "priority": 0},
    {"match_condition": "contains", "field_expression": "First Name",
     "member_property": "First Name", "filters": ["nocase"], "priority": 1},
    {"match_condition": "contains", "field_expression": "Last Name",
     "member_property": "Last Name", "filters": ["nocase"], "priority": 2},
    {"match_condition": "contains", "field_expression": "Email",
     "member_property": "Email", "filters": ["nocase"], "priority": 3},
    {"match_condition": "contains", "field_expression": "Birthday",
     "member_property": "Birthday", "filters": ["nocase"], "priority": 4},
]

# ---------------------------------------------------------------------------
# Google provider URLs
# ---------------------------------------------------------------------------
DRIVE_FOLDER_REGEX = re.compile(r"https://drive\.google\.com/drive/folders/(?P<id>[^/&?#]+)")
SHEETS_REGEX = re.compile(r"https://docs\.google\.com/spreadsheets/d/(?P<id>[^/&?#]+)")
FORMS_REGEX = re.compile(r"https://docs\.google\.com/forms/d/(?P<id>[^/&?#]+)")

FORMS_MIME_TYPE = "application/vnd.google-apps.form"
SHEETS_MIME_TYPE = "application/vnd.google-apps.spreadsheet"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

DRIVE_API = "https://www.googleapis.com/drive/v3"
FORMS_API = "https://forms.googleapis.com/v1"
SHEETS_EXPORT_URL = "https://docs.google.com/spreadsheets/d/{id}/gviz/tq?tqx=out:csv"

# ---------------------------------------------------------------------------
# Quota presets
# ---------------------------------------------------------------------------
INVITED_TROUPE_LIMITS: dict[str, int] = {
    "get_operations_left": 30,
    "modify_operations_left": 30,
    "manual_syncs_left": 5,
    "member_property_types_left": 10,
    "point_types_left": 5,
    "field_matchers_left": 15,
    "event_types_left": 10,
    "source_folder_uris_left": 20,
    "events_left": 100,
    "members_left": 200,
}

UNINVITED_TROUPE_LIMITS: dict[str, int] = {
    "get_operations_left": 10,
    "modify_operations_left": 10,
    "manual_syncs_left": 2,
    "member_property_types_left": 7,
    "point_types_left": 2,
    "field_matchers_left": 10,
    "event_types_left": 2,
    "source_folder_uris_left": 2,
    "events_left": 20,
    "members_left": 200,
}

# Counters reset by the periodic refresh; the rest track stored objects.
REFRESHABLE_LIMITS: tuple[str, ...] = (
    "get_operations_left",
    "modify_operations_left",
    "manual_syncs_left",
)

GLOBAL_LIMITS: dict[str, int] = {
    "uninvited_users_left": 5,
}
