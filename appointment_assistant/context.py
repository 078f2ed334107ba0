"""Customer context fed to the booking prompt.

For a regular customer the CRM history is read (newest first) and reduced to
preferences: the banker and the branch they book with most often.  Guests
get no CRM read at all.  Whatever is already known about the booking in
progress is rendered for both.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from typing import TypeVar

from pydantic import BaseModel, Field

from appointment_assistant.errors import CRMUnavailableError
from appointment_assistant.normalizer import format_for_display
from appointment_assistant.services.crm_client import CRM_ERRORS, CRMStore
from appointment_assistant.slots import AppointmentRecord, CustomerType, SlotSet

logger = logging.getLogger(__name__)

MAX_HISTORY_LINES = 5

T = TypeVar("T")


def most_frequent(values: Iterable[T | None]) -> T | None:
    """Majority vote over the non-empty *values*; ties go to the first seen."""
    counts = Counter(v for v in values if v not in (None, ""))
    if not counts:
        return None
    # Counter preserves insertion order and most_common is stable
    return counts.most_common(1)[0][0]


class HistorySnapshot(BaseModel):
    records: list[AppointmentRecord] = Field(default_factory=list)
    preferred_banker_id: str | None = None
    preferred_banker_name: str | None = None
    preferred_location: str | None = None

    @classmethod
    def from_records(cls, records: list[AppointmentRecord]) -> HistorySnapshot:
        banker_id = most_frequent(r.banker_id for r in records)
        banker_name = next(
            (r.banker_name for r in records if r.banker_id == banker_id and r.banker_name),
            None,
        )
        return cls(
            records=records,
            preferred_banker_id=banker_id,
            preferred_banker_name=banker_name,
            preferred_location=most_frequent(r.location for r in records),
        )


class ContextBlock(BaseModel):
    customer_type: CustomerType
    history: HistorySnapshot = Field(default_factory=HistorySnapshot)
    slots: SlotSet = Field(default_factory=SlotSet)

    def render(self) -> str:
        """Text block injected into the system prompt."""
        lines: list[str] = []
        records = self.history.records
        if records:
            lines.append("Previous Appointments:")
            for record in records[:MAX_HISTORY_LINES]:
                when = format_for_display(record.timestamp) if record.timestamp else "unknown time"
                banker = f", Banker ID: {record.banker_id}" if record.banker_id else ""
                lines.append(
                    f"- Reason: {record.reason or 'n/a'}, When: {when}, "
                    f"Location: {record.location or 'n/a'}{banker}"
                )
            if len(records) > MAX_HISTORY_LINES:
                lines.append(f"  ({len(records) - MAX_HISTORY_LINES} older appointment(s) omitted)")
        if self.history.preferred_banker_id:
            name = self.history.preferred_banker_name
            suffix = f" ({name})" if name else ""
            lines.append(f"Preferred Banker ID: {self.history.preferred_banker_id}{suffix}")
        if self.history.preferred_location:
            lines.append(f"Preferred Location: {self.history.preferred_location}")

        known = {k: v for k, v in self.slots.to_details().items() if v and k != "timestamp"}
        if known:
            lines.append("Details collected so far:")
            lines.extend(f"- {key}: {value}" for key, value in known.items())
            missing = self.slots.missing_fields
            if missing:
                lines.append(f"Still missing: {', '.join(missing)}")

        return "\n".join(lines)


class ContextAssembler:
    def __init__(self, crm: CRMStore):
        self._crm = crm

    async def build(
        self,
        customer_ref: str | None,
        customer_type: CustomerType,
        slots: SlotSet,
    ) -> ContextBlock:
        if customer_type is not CustomerType.REGULAR or not customer_ref:
            return ContextBlock(customer_type=customer_type, slots=slots)

        try:
            records = await self._crm.query_appointments(customer_ref)
        except CRM_ERRORS as exc:
            raise CRMUnavailableError(f"History lookup failed for {customer_ref}: {exc}") from exc

        logger.debug("Loaded %d prior appointment(s) for %s", len(records), customer_ref)
        return ContextBlock(
            customer_type=customer_type,
            history=HistorySnapshot.from_records(records),
            slots=slots,
        )
