"""
tests/test_matchers.py — Field Matcher Engine Tests
====================================================
"""

from __future__ import annotations

from troupesync.engine.coercion import BaseType, PropertyType, parse_property_types
from troupesync.engine.matchers import (
    FieldMapping,
    FieldMatcher,
    resolve_matcher,
    synchronize_fields,
)

PROPERTY_TYPES = parse_property_types({
    "Member ID": "string!",
    "First Name": "string!",
    "Email": "string!",
    "Paid": "boolean?",
})


def matcher(mid, expression, prop, priority, condition="contains", filters=("nocase",)):
    return FieldMatcher(mid, condition, expression, prop, tuple(filters), priority)


ID_MATCHER = matcher("m-id", "ID", "Member ID", 0)
NAME_MATCHER = matcher("m-name", "Name", "First Name", 1)


class TestResolveMatcher:
    """Priority order decides which rule claims a label."""

    def test_lowest_priority_number_wins(self):
        assert resolve_matcher("Student ID Name", [NAME_MATCHER, ID_MATCHER]) is ID_MATCHER

    def test_equal_priority_first_declared_wins(self):
        first = matcher("a", "Name", "First Name", 3)
        second = matcher("b", "Name", "Email", 3)
        assert resolve_matcher("Name", [first, second]) is first
        assert resolve_matcher("Name", [second, first]) is second

    def test_no_match_returns_none(self):
        assert resolve_matcher("Timestamp", [ID_MATCHER, NAME_MATCHER]) is None

    def test_exact_condition_needs_full_label(self):
        exact = matcher("x", "Email", "Email", 0, condition="exact")
        assert exact.matches("email")
        assert not exact.matches("Email Address")

    def test_case_sensitive_without_nocase(self):
        strict = matcher("x", "ID", "Member ID", 0, filters=())
        assert strict.matches("Student ID")
        assert not strict.matches("student id")

    def test_invalid_regex_matched_literally(self):
        literal = matcher("x", "Name (", "First Name", 0)
        assert literal.matches("Name (preferred)")


class TestSynchronizeFields:
    def test_fields_resolved_in_source_order(self):
        result = synchronize_fields(
            {}, {"c0": "Student ID Name", "c1": "Name"}, [ID_MATCHER, NAME_MATCHER], PROPERTY_TYPES
        )
        assert result["c0"].property == "Member ID"
        assert result["c0"].matcher_id == "m-id"
        assert result["c1"].property == "First Name"

    def test_manual_override_untouched(self):
        existing = {"c0": FieldMapping("Student ID Name", "Email", None, override=True)}
        result = synchronize_fields(
            existing, {"c0": "Student ID Name"}, [ID_MATCHER], PROPERTY_TYPES
        )
        assert result["c0"].property == "Email"
        assert result["c0"].override is True

    def test_override_claims_property_before_matching(self):
        existing = {"c1": FieldMapping("Badge", "Member ID", None, override=True)}
        result = synchronize_fields(
            existing, {"c0": "Student ID", "c1": "Badge"}, [ID_MATCHER], PROPERTY_TYPES
        )
        assert result["c1"].property == "Member ID"
        assert result["c0"].property is None

    def test_one_field_per_property(self):
        result = synchronize_fields(
            {}, {"c0": "ID", "c1": "Backup ID"}, [ID_MATCHER], PROPERTY_TYPES
        )
        assert result["c0"].property == "Member ID"
        assert result["c1"].property is None

    def test_removed_fields_dropped(self):
        existing = {"gone": FieldMapping("Old", "Email", None, override=True)}
        result = synchronize_fields(existing, {"c0": "ID"}, [ID_MATCHER], PROPERTY_TYPES)
        assert set(result) == {"c0"}

    def test_incompatible_type_left_unmapped(self):
        paid = matcher("m-paid", "Paid", "Paid", 0)

        def no_booleans(fid, ptype: PropertyType) -> bool:
            return ptype.base is not BaseType.BOOLEAN

        result = synchronize_fields({}, {"c0": "Paid"}, [paid], PROPERTY_TYPES, no_booleans)
        assert result["c0"].property is None
        assert result["c0"].matcher_id == "m-paid"

    def test_matcher_for_unknown_property_ignored(self):
        stray = matcher("m-x", "Shoe", "Shoe Size", 0)
        result = synchronize_fields({}, {"c0": "Shoe"}, [stray], PROPERTY_TYPES)
        assert result["c0"].property is None
