"""
troupesync.engine.matchers — Field Matcher Engine
==================================================

Maps free-text field labels from spreadsheets and forms onto member
properties.  A troupe stores an ordered list of matcher rules; each rule
has a regular expression, a match condition (``contains`` or ``exact``),
optional filters and a priority.

Resolution walks the rules in ascending priority.  The sort is stable, so
rules sharing a priority are tried in stored order and the first declared
one wins.

:func:`synchronize_fields` applies the rules to a whole source at once and
enforces that at most one field maps to any property.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from troupesync.engine.coercion import PropertyType

MATCH_CONDITIONS = frozenset({"contains", "exact"})
MATCH_FILTERS = frozenset({"nocase"})


@dataclass(frozen=True, slots=True)
class FieldMatcher:
    id: str
    match_condition: str
    field_expression: str
    member_property: str
    filters: tuple[str, ...] = ()
    priority: int = 0

    @classmethod
    def from_dict(cls, raw: Mapping) -> FieldMatcher:
        return cls(
            id=str(raw["id"]),
            match_condition=raw.get("match_condition", "contains"),
            field_expression=raw["field_expression"],
            member_property=raw["member_property"],
            filters=tuple(raw.get("filters") or ()),
            priority=int(raw.get("priority", 0)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "match_condition": self.match_condition,
            "field_expression": self.field_expression,
            "member_property": self.member_property,
            "filters": list(self.filters),
            "priority": self.priority,
        }

    def pattern(self) -> re.Pattern:
        flags = re.IGNORECASE if "nocase" in self.filters else 0
        try:
            return re.compile(self.field_expression, flags)
        except re.error:
            # Not a usable regex; match it literally
            return re.compile(re.escape(self.field_expression), flags)

    def matches(self, label: str) -> bool:
        pattern = self.pattern()
        if self.match_condition == "exact":
            return pattern.fullmatch(label) is not None
        return pattern.search(label) is not None


def sort_matchers(matchers: Iterable[FieldMatcher]) -> list[FieldMatcher]:
    """Ascending priority, stored order within equal priorities."""
    return sorted(matchers, key=lambda m: m.priority)


def load_matchers(raw: Iterable[Mapping]) -> list[FieldMatcher]:
    return sort_matchers(FieldMatcher.from_dict(item) for item in raw)


def resolve_matcher(label: str, matchers: Iterable[FieldMatcher]) -> FieldMatcher | None:
    """Return the first matcher (by priority) whose condition holds for *label*."""
    for matcher in sort_matchers(matchers):
        if matcher.matches(label):
            return matcher
    return None


# ---------------------------------------------------------------------------
# Field maps
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class FieldMapping:
    """One entry of an event's field-to-property map."""

    field: str
    property: str | None = None
    matcher_id: str | None = None
    override: bool = False

    @classmethod
    def from_dict(cls, raw: Mapping) -> FieldMapping:
        return cls(
            field=raw.get("field", ""),
            property=raw.get("property"),
            matcher_id=raw.get("matcher_id"),
            override=bool(raw.get("override", False)),
        )

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "property": self.property,
            "matcher_id": self.matcher_id,
            "override": self.override,
        }


def load_field_map(raw: Mapping[str, Mapping] | None) -> dict[str, FieldMapping]:
    return {fid: FieldMapping.from_dict(entry) for fid, entry in (raw or {}).items()}


def dump_field_map(mappings: Mapping[str, FieldMapping]) -> dict[str, dict]:
    return {fid: mapping.to_dict() for fid, mapping in mappings.items()}


def synchronize_fields(
    existing: Mapping[str, FieldMapping],
    fields: Mapping[str, str],
    matchers: Iterable[FieldMatcher],
    property_types: Mapping[str, PropertyType],
    allowed: Callable[[str, PropertyType], bool] | None = None,
) -> dict[str, FieldMapping]:
    """Build the field map for a source whose current fields are *fields*.

    Parameters
    ----------
    existing:
        The event's stored field map (field id → mapping).
    fields:
        Field id → human-readable label, in source order.
    matchers:
        The troupe's matcher rules.
    property_types:
        The troupe's declared member properties.
    allowed:
        Optional ``(field_id, type) -> bool`` compatibility check supplied
        by the source (e.g. form question kinds).

    Fields that disappeared from the source are dropped.  Manually
    overridden mappings are kept as-is and claim their property first; the
    remaining fields are re-matched in source order.  A property already
    claimed by another field leaves the later field unmapped.
    """
    ordered = sort_matchers(matchers)
    result: dict[str, FieldMapping] = {}
    claimed: set[str] = set()

    for fid, label in fields.items():
        previous = existing.get(fid)
        if previous is not None and previous.override:
            mapping = FieldMapping(label, previous.property, previous.matcher_id, True)
            if mapping.property is not None:
                if mapping.property in claimed or mapping.property not in property_types:
                    mapping.property = None
                else:
                    claimed.add(mapping.property)
            result[fid] = mapping

    for fid, label in fields.items():
        if fid in result:
            continue
        matcher = resolve_matcher(label, ordered)
        mapping = FieldMapping(field=label)
        if matcher is not None:
            mapping.matcher_id = matcher.id
            prop = matcher.member_property
            ptype = property_types.get(prop)
            if (
                ptype is not None
                and prop not in claimed
                and (allowed is None or allowed(fid, ptype))
            ):
                mapping.property = prop
                claimed.add(prop)
        result[fid] = mapping

    # Keep source order
    return {fid: result[fid] for fid in fields}
