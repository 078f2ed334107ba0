"""Booking committer: conflict check, alternatives, single CRM write."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from appointment_assistant.errors import (
    ConflictError,
    CRMUnavailableError,
    InvalidDateTimeError,
    PersistenceError,
)
from appointment_assistant.normalizer import combine, format_for_display
from appointment_assistant.services.crm_client import CRM_ERRORS, CRMStore
from appointment_assistant.slots import (
    AppointmentRecord,
    AvailableSlot,
    Location,
    NewAppointment,
    SlotSet,
)

logger = logging.getLogger(__name__)

ALTERNATIVE_DAYS_BEFORE = 1
ALTERNATIVE_DAYS_AFTER = 3
MAX_ALTERNATIVES = 5


def _same_slot(slot: AvailableSlot, timestamp: datetime, location: Location) -> bool:
    try:
        at = combine(slot.date, slot.time)
    except InvalidDateTimeError:
        return False
    return at == timestamp and Location.coerce(slot.location) is location


class BookingCommitter:
    """Turns a complete ``SlotSet`` into exactly one CRM appointment.

    Conflicting requests raise ``ConflictError`` carrying alternatives and
    never write.  A failed write raises ``PersistenceError`` and is not
    retried.
    """

    def __init__(self, crm: CRMStore):
        self._crm = crm

    async def commit(self, slots: SlotSet, customer_ref: str) -> AppointmentRecord:
        missing = slots.missing_fields
        if missing:
            raise InvalidDateTimeError(
                f"Cannot book with missing fields: {missing}",
                user_message=f"I still need your {', '.join(missing)} before I can book.",
            )
        timestamp = slots.require_timestamp()
        location = slots.location

        try:
            existing = await self._crm.find_appointments(timestamp, timestamp, location)
        except CRM_ERRORS as exc:
            raise CRMUnavailableError(f"Conflict check failed: {exc}") from exc

        if existing:
            alternatives = await self.suggest_alternatives(timestamp, location)
            logger.info(
                "Slot %s at %s already booked (%d record(s)); offering %d alternative(s)",
                timestamp.isoformat(), location.value, len(existing), len(alternatives),
            )
            raise ConflictError(
                f"Slot {timestamp.isoformat()} at {location.value} is already booked",
                alternatives=alternatives,
                user_message=(
                    f"{format_for_display(timestamp)} at our {location.value} branch "
                    "is already booked. Would one of the suggested times work instead?"
                ),
            )

        new = NewAppointment(
            reason=slots.reason,
            timestamp=timestamp,
            location=location,
            customer_ref=customer_ref,
            banker_id=slots.banker_id,
        )
        try:
            record_id = await self._crm.create_appointment(new)
        except CRM_ERRORS as exc:
            logger.error("Appointment write failed: %s", exc)
            raise PersistenceError(f"Failed to create appointment: {exc}") from exc

        return AppointmentRecord(
            id=record_id,
            reason=new.reason,
            timestamp=timestamp,
            location=location.value,
            banker_id=new.banker_id,
            customer_ref=customer_ref,
            created_at=datetime.now(UTC),
        )

    async def suggest_alternatives(
        self, timestamp: datetime, location: Location,
    ) -> list[AvailableSlot]:
        """Open slots near *timestamp*: same branch first, then any branch.

        When the CRM advertises nothing, same-time candidates on the
        following days are offered if they are not already booked.
        """
        day = timestamp.date()
        start = day - timedelta(days=ALTERNATIVE_DAYS_BEFORE)
        end = day + timedelta(days=ALTERNATIVE_DAYS_AFTER)

        for branch in (location, None):
            try:
                found = await self._crm.find_available_slots(
                    start, end, branch, limit=MAX_ALTERNATIVES,
                )
            except CRM_ERRORS as exc:
                logger.warning("Availability lookup failed: %s", exc)
                break
            found = [s for s in found if not _same_slot(s, timestamp, location)]
            if found:
                return found

        generated: list[AvailableSlot] = []
        for offset in range(1, ALTERNATIVE_DAYS_AFTER + 1):
            candidate = timestamp + timedelta(days=offset)
            try:
                taken = await self._crm.find_appointments(candidate, candidate, location)
            except CRM_ERRORS as exc:
                logger.warning("Alternative check failed for %s: %s", candidate.isoformat(), exc)
                continue
            if not taken:
                generated.append(AvailableSlot(
                    date=candidate.date().isoformat(),
                    time=candidate.strftime("%I:%M %p"),
                    location=location.value,
                ))
        return generated
