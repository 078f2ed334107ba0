"""Slot model: the structured shape of an in-progress appointment request.

``SlotSet`` holds what has been negotiated so far; ``ConversationState`` is
the per-session value (transcript + slots + guided step) that every turn
receives and returns.  Both are frozen pydantic models: a turn never mutates
the state it was given, it returns a new one for the session store to save.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from appointment_assistant.errors import InvalidDateTimeError
from appointment_assistant.normalizer import combine, format_for_display, format_timestamp

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: tuple[str, ...] = ("reason", "date", "time", "location")

# Salesforce User ids (the bank's staff records): "005" + 12 or 15 chars
BANKER_ID_RE = re.compile(r"^005[A-Za-z0-9]{12}(?:[A-Za-z0-9]{3})?$")


class Location(str, Enum):
    """Branches that take appointments."""

    BROOKLYN = "Brooklyn"
    MANHATTAN = "Manhattan"
    NEW_YORK = "New York"

    @classmethod
    def coerce(cls, value: Any) -> Location | None:
        """Map loose text ("brooklyn branch", "NewYork") to a branch, else None."""
        if value is None or isinstance(value, cls):
            return value
        text = re.sub(r"\s+branch$", "", str(value).strip(), flags=re.IGNORECASE)
        key = text.replace(" ", "").lower()
        for location in cls:
            if location.value.replace(" ", "").lower() == key:
                return location
        return None


class CustomerType(str, Enum):
    REGULAR = "regular"
    GUEST = "guest"

    @classmethod
    def parse(cls, value: str | CustomerType | None) -> CustomerType:
        """``Regular``/``customer`` are regular customers; anything else is a guest."""
        if isinstance(value, cls):
            return value
        if value and str(value).strip().lower() in ("regular", "customer"):
            return cls.REGULAR
        return cls.GUEST


class GuidedStep(str, Enum):
    NONE = "none"
    REASON = "reason"
    TIME = "time"
    LOCATION = "location"
    CONFIRMATION = "confirmation"
    COMPLETED = "completed"


class SlotSet(BaseModel):
    """The slots negotiated so far for one booking.

    ``date`` and ``time`` keep the raw extracted text; ``timestamp`` is
    derived from them and is never stored.
    """

    model_config = ConfigDict(frozen=True)

    reason: str | None = None
    date: str | None = None
    time: str | None = None
    location: Location | None = None
    banker_id: str | None = None

    @field_validator("reason", "date", "time", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("location", mode="before")
    @classmethod
    def _coerce_location(cls, value: Any) -> Location | None:
        location = Location.coerce(value)
        if value is not None and location is None:
            logger.debug("Dropping unknown location %r", value)
        return location

    @field_validator("banker_id", mode="before")
    @classmethod
    def _drop_invalid_banker(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        if BANKER_ID_RE.match(text):
            return text
        logger.debug("Dropping banker id %r (not a staff record id)", value)
        return None

    # ── Derived fields ───────────────────────────────────────────────

    @property
    def missing_fields(self) -> list[str]:
        return [name for name in REQUIRED_FIELDS if getattr(self, name) is None]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields

    @property
    def timestamp(self) -> datetime | None:
        """Combined UTC instant, or None when date/time are absent or malformed."""
        if self.date is None or self.time is None:
            return None
        try:
            return combine(self.date, self.time)
        except InvalidDateTimeError:
            return None

    def require_timestamp(self) -> datetime:
        """Like ``timestamp`` but raises instead of returning None."""
        if self.date is None or self.time is None:
            raise InvalidDateTimeError(
                "Both date and time are required",
                user_message="I still need both a date and a time for your appointment.",
            )
        return combine(self.date, self.time)

    # ── Updates ──────────────────────────────────────────────────────

    def merge(self, fields: Mapping[str, Any]) -> SlotSet:
        """Return a new SlotSet with non-null *fields* overwriting current values.

        Values go through validation, so an invalid banker id or unknown
        location simply leaves that slot as it was.
        """
        current = self.model_dump()
        candidate = SlotSet.model_validate(
            {k: v for k, v in fields.items() if k in current and v is not None}
        )
        updates = {
            name: getattr(candidate, name)
            for name in current
            if getattr(candidate, name) is not None
        }
        return self.model_copy(update=updates)

    def to_details(self) -> dict[str, Any]:
        """Appointment details as returned to API callers."""
        timestamp = self.timestamp
        return {
            "reason": self.reason,
            "date": self.date,
            "time": self.time,
            "location": self.location.value if self.location else None,
            "bankerId": self.banker_id,
            "timestamp": format_timestamp(timestamp) if timestamp else None,
        }


class AppointmentRecord(BaseModel):
    """An appointment as stored in the CRM."""

    id: str
    reason: str | None = None
    timestamp: datetime | None = None
    location: str | None = None
    banker_id: str | None = None
    banker_name: str | None = None
    customer_ref: str | None = None
    created_at: datetime | None = None

    def to_details(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "reason": self.reason,
            "timestamp": format_timestamp(self.timestamp) if self.timestamp else None,
            "display": format_for_display(self.timestamp) if self.timestamp else None,
            "location": self.location,
            "bankerId": self.banker_id,
        }


class NewAppointment(BaseModel):
    """Write-side record handed to the CRM."""

    reason: str
    timestamp: datetime
    location: Location
    customer_ref: str
    banker_id: str | None = None


class AvailableSlot(BaseModel):
    """An open slot advertised by the CRM (or generated as an alternative)."""

    date: str
    time: str
    location: str | None = None


class Turn(BaseModel):
    model_config = ConfigDict(frozen=True)

    speaker: Literal["user", "assistant", "system"]
    text: str


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ConversationState(BaseModel):
    """Everything one session knows about its conversation."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    turn_log: list[Turn] = Field(default_factory=list)
    active_slots: SlotSet = Field(default_factory=SlotSet)
    guided_step: GuidedStep = GuidedStep.NONE
    offered_time_slots: list[str] = Field(default_factory=list)
    offered_locations: list[str] = Field(default_factory=list)
    last_appointment: AppointmentRecord | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    def with_turn(self, speaker: Literal["user", "assistant", "system"], text: str) -> ConversationState:
        return self.model_copy(
            update={"turn_log": [*self.turn_log, Turn(speaker=speaker, text=text)]},
        )

    def with_slots(self, slots: SlotSet) -> ConversationState:
        return self.model_copy(update={"active_slots": slots})

    def free_form(self) -> ConversationState:
        """Leave any guided flow: step back to ``none`` and drop offered choices."""
        return self.model_copy(
            update={"guided_step": GuidedStep.NONE, "offered_time_slots": [], "offered_locations": []},
        )

    def transcript(self, limit: int | None = None) -> list[dict[str, str]]:
        """User/assistant turns as ``{role, content}`` dicts for the LLM."""
        turns = [t for t in self.turn_log if t.speaker != "system"]
        if limit is not None:
            turns = turns[-limit:]
        return [{"role": t.speaker, "content": t.text} for t in turns]

    def visible_messages(self) -> list[dict[str, str]]:
        """Transcript for UI replay (system instructions filtered out)."""
        return [
            {"type": t.speaker, "text": t.text}
            for t in self.turn_log
            if t.speaker != "system"
        ]
