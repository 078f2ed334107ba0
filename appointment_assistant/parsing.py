"""Lenient parsing of the model's JSON replies.

Models wrap JSON in prose or code fences often enough that a plain
``json.loads`` is not enough.  ``parse_reply`` tries an ordered list of
strategies and returns either ``Parsed(data)`` or ``Unparseable(raw_text)``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", re.IGNORECASE)

# appointmentDetails keys the model may use → SlotSet field
FIELD_ALIASES: dict[str, str] = {
    "reason": "reason",
    "Reason_for_Visit__c": "reason",
    "date": "date",
    "Appointment_Date__c": "date",
    "time": "time",
    "Appointment_Time__c": "time",
    "location": "location",
    "Location__c": "location",
    "banker": "banker_id",
    "bankerId": "banker_id",
    "banker_id": "banker_id",
    "Banker__c": "banker_id",
}


@dataclass(frozen=True)
class Parsed:
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Unparseable:
    raw_text: str


ParseResult = Parsed | Unparseable


def _load_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def _direct(text: str) -> dict[str, Any] | None:
    return _load_object(text.strip())


def _fenced(text: str) -> dict[str, Any] | None:
    for match in _FENCE_RE.finditer(text):
        value = _load_object(match.group(1))
        if value is not None:
            return value
    return None


def _balanced(text: str) -> dict[str, Any] | None:
    """First balanced ``{...}`` span that parses as an object."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    value = _load_object(text[start : i + 1])
                    if value is not None:
                        return value
                    break
        start = text.find("{", start + 1)
    return None


STRATEGIES: list[Callable[[str], dict[str, Any] | None]] = [_direct, _fenced, _balanced]


def parse_reply(text: str | None) -> ParseResult:
    """Run each strategy in order; the first object found wins."""
    raw = text or ""
    for strategy in STRATEGIES:
        data = strategy(raw)
        if data is not None:
            return Parsed(data)
    return Unparseable(raw)


def extract_details(data: dict[str, Any]) -> dict[str, Any]:
    """Map ``appointmentDetails`` (any accepted alias) onto SlotSet field names."""
    details = data.get("appointmentDetails") or {}
    if not isinstance(details, dict):
        return {}
    fields: dict[str, Any] = {}
    for key, value in details.items():
        name = FIELD_ALIASES.get(key)
        if name and value not in (None, "") and name not in fields:
            fields[name] = value
    return fields


def reply_text(data: dict[str, Any], fallback: str = "") -> str:
    response = data.get("response")
    if isinstance(response, str) and response.strip():
        return response.strip()
    return fallback
