"""
troupesync.sources.forms — Form Adapter
========================================

Reads a Google Form's question schema and its responses separately.  The
question kind limits which property types a question may feed:

============  ==============================================================
Question      Allowed property types
============  ==============================================================
text          string
choice        string; number if every option is numeric; date if every
              option is a date; boolean if there are exactly two options
              (the first one means true).  Radio and drop-down only.
scale         string, number; boolean for a 1..2 scale (2 means true)
date          string, date
time          string
other         nothing
============  ==============================================================

Responses submitted after the sync started are ignored.  Unanswered
questions are not observations.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime

from troupesync.constants import FORMS_REGEX
from troupesync.engine.coercion import BaseType, PropertyType, parse_date, parse_number
from troupesync.errors import SourceMalformed
from troupesync.sources.base import EventDataSource, EventSnapshot, SourceTable

_SINGLE_CHOICE = frozenset({"RADIO", "DROP_DOWN"})


def _options(question: Mapping) -> list[str]:
    choice = question.get("choiceQuestion") or {}
    return [str(option.get("value", "")) for option in choice.get("options", [])]


def question_allows(question: Mapping, ptype: PropertyType) -> bool:
    """Whether *question* may feed a property of type *ptype*."""
    base = ptype.base
    if "textQuestion" in question:
        return base is BaseType.STRING
    if "choiceQuestion" in question:
        if question["choiceQuestion"].get("type") not in _SINGLE_CHOICE:
            return False
        options = _options(question)
        if base is BaseType.STRING:
            return True
        if base is BaseType.NUMBER:
            return bool(options) and all(parse_number(o) is not None for o in options)
        if base is BaseType.DATE:
            return bool(options) and all(parse_date(o) is not None for o in options)
        return len(options) == 2
    if "scaleQuestion" in question:
        scale = question["scaleQuestion"]
        if base in (BaseType.STRING, BaseType.NUMBER):
            return True
        if base is BaseType.BOOLEAN:
            return int(scale.get("low", 0)) == 1 and int(scale.get("high", 0)) == 2
        return False
    if "dateQuestion" in question:
        return base in (BaseType.STRING, BaseType.DATE)
    if "timeQuestion" in question:
        return base is BaseType.STRING
    return False


def boolean_pair(question: Mapping) -> tuple[str, str] | None:
    """(true_label, false_label) declared by the question, if any."""
    if "choiceQuestion" in question:
        options = _options(question)
        if len(options) == 2:
            return options[0], options[1]
    if "scaleQuestion" in question:
        scale = question["scaleQuestion"]
        if int(scale.get("low", 0)) == 1 and int(scale.get("high", 0)) == 2:
            return "2", "1"
    return None


class FormsSource(EventDataSource):
    kind = "forms"
    uri_pattern = FORMS_REGEX

    def fetch(self, event: EventSnapshot, as_of: datetime) -> SourceTable:
        form_id = self.resolve_id(event.source_uri)
        form = self.client.get_form(form_id)
        responses = self.client.list_form_responses(form_id)

        items = form.get("items", [])
        if not isinstance(items, list):
            raise SourceMalformed(f"Form {form_id} has no item list")

        fields: dict[str, str] = {}
        questions: dict[str, Mapping] = {}
        pairs: dict[str, tuple[str, str]] = {}
        for item in items:
            question = (item.get("questionItem") or {}).get("question")
            if not question:
                continue
            qid = question.get("questionId")
            if not qid:
                raise SourceMalformed(f"Form {form_id} has a question without an id")
            fields[qid] = str(item.get("title", "")).strip()
            questions[qid] = question
            pair = boolean_pair(question)
            if pair is not None:
                pairs[qid] = pair

        def allowed(qid: str, ptype: PropertyType) -> bool:
            return question_allows(questions[qid], ptype)

        dated = []
        for response in responses:
            if not isinstance(response, dict):
                raise SourceMalformed(f"Form {form_id} returned a non-object response")
            submitted = parse_date(response.get("lastSubmittedTime"))
            if submitted is not None and submitted > as_of:
                continue
            dated.append((submitted or as_of, str(response.get("responseId", "")), response))
        dated.sort(key=lambda entry: entry[:2])

        records = []
        for _, _, response in dated:
            record = {}
            for qid, answer in (response.get("answers") or {}).items():
                if qid not in fields:
                    continue
                values = [
                    a.get("value")
                    for a in (answer.get("textAnswers") or {}).get("answers", [])
                    if a.get("value") is not None
                ]
                if values:
                    record[qid] = values[0] if len(values) == 1 else ", ".join(values)
            records.append(record)

        return SourceTable(fields, records, pairs, allowed)
