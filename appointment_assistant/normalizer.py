"""Pure date/time normalisation helpers.

Everything here fails closed: malformed input raises
``InvalidDateTimeError`` (or its ``InvalidTimeFormatError`` subclass) and is
never replaced by a best-effort guess.  Callers must treat an error as
"cannot book".

Canonical timestamp format: ``YYYY-MM-DDTHH:MM:SS.000Z`` (UTC).
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, time

from appointment_assistant.errors import InvalidDateTimeError, InvalidTimeFormatError

_CANONICAL_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
# H, HH, H:MM, HHMM, HH:MM:SS with an optional AM/PM modifier
_TIME_RE = re.compile(
    r"^(\d{1,2}):?(\d{2})?(?::(\d{2}))?\s*([AaPp][Mm])?$"
)
# "March 10th, 2025, 04:00 PM" (ordinal suffix optional)
_DISPLAY_RE = re.compile(
    r"^([A-Za-z]+) (\d{1,2})(?:st|nd|rd|th)?, (\d{4}), (\d{1,2}:\d{2} [AaPp][Mm])$"
)


def is_canonical(value: str) -> bool:
    """Return True if *value* is already a canonical UTC timestamp string."""
    return bool(_CANONICAL_RE.match(value.strip()))


def normalize_time(raw: str) -> time:
    """Convert a clock string to a ``datetime.time``.

    Accepts canonical timestamps (their clock part passes through
    unchanged), bare 24-hour values and 12-hour values with an ``AM``/``PM``
    modifier.

    Raises:
        InvalidTimeFormatError: if *raw* is empty, does not match, or is
            out of range (hour > 23, minute > 59, or a 12-hour value
            outside 1..12).
    """
    if raw is None or not str(raw).strip():
        raise InvalidTimeFormatError("Empty time string")
    text = str(raw).strip()

    if is_canonical(text):
        return parse_timestamp(text).time()

    match = _TIME_RE.match(text)
    if not match:
        raise InvalidTimeFormatError(f"Unrecognised time format: {text!r}")

    hours = int(match.group(1))
    minutes = int(match.group(2)) if match.group(2) else 0
    seconds = int(match.group(3)) if match.group(3) else 0
    modifier = match.group(4).upper() if match.group(4) else None

    if hours > 23 or minutes > 59 or seconds > 59:
        raise InvalidTimeFormatError(f"Time out of range: {text!r}")

    if modifier:
        if not 1 <= hours <= 12:
            raise InvalidTimeFormatError(f"12-hour time out of range: {text!r}")
        if modifier == "PM" and hours != 12:
            hours += 12
        elif modifier == "AM" and hours == 12:
            hours = 0

    return time(hours, minutes, seconds)


def parse_date(raw: str) -> date:
    """Parse a strict ``YYYY-MM-DD`` calendar date."""
    text = str(raw).strip() if raw is not None else ""
    if not _DATE_RE.match(text):
        raise InvalidDateTimeError(f"Invalid date format, expected YYYY-MM-DD: {text!r}")
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise InvalidDateTimeError(f"Invalid calendar date: {text!r}") from exc


def combine(date_value: str | date, time_value: str | time) -> datetime:
    """Combine a date and a clock time into a UTC ``datetime``.

    The date is always validated. A canonical timestamp passed as
    *time_value* contributes only its clock part, so ``combine`` is
    idempotent over its own output for the same date.
    """
    day = date_value if isinstance(date_value, date) else parse_date(date_value)
    clock = time_value if isinstance(time_value, time) else normalize_time(time_value)
    return datetime.combine(day, clock.replace(tzinfo=None), tzinfo=UTC)


def format_timestamp(value: datetime) -> str:
    """Render *value* as the canonical ``YYYY-MM-DDTHH:MM:SS.000Z`` string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(text: str) -> datetime:
    """Parse a canonical or general ISO 8601 timestamp into an aware UTC datetime."""
    if not text or not str(text).strip():
        raise InvalidDateTimeError("Empty timestamp")
    raw = str(text).strip()
    try:
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise InvalidDateTimeError(f"Invalid timestamp: {raw!r}") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return f"{day}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def format_for_display(value: datetime) -> str:
    """Friendly UTC rendering, e.g. ``"March 10th, 2025, 04:00 PM"``."""
    value = value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)
    return (
        f"{value.strftime('%B')} {_ordinal(value.day)}, {value.year}, "
        f"{value.strftime('%I:%M %p')}"
    )


def parse_display(text: str) -> tuple[str, str]:
    """Reverse ``format_for_display`` into ``(YYYY-MM-DD, "HH:MM AM")``."""
    match = _DISPLAY_RE.match(text.strip()) if text else None
    if not match:
        raise InvalidDateTimeError(f"Unrecognised date/time: {text!r}")
    month_name, day, year, clock = match.groups()
    try:
        parsed = datetime.strptime(f"{month_name} {day} {year}", "%B %d %Y")
    except ValueError as exc:
        raise InvalidDateTimeError(f"Invalid date part: {text!r}") from exc
    return parsed.date().isoformat(), clock.upper()


def parse_selection(text: str) -> datetime:
    """Parse a picked slot: canonical/ISO timestamp or a display string."""
    try:
        return parse_timestamp(text)
    except InvalidDateTimeError:
        day, clock = parse_display(text)
        return combine(day, clock)
