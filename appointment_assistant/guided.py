"""Guided booking flow: Reason → Time → Location → Confirmation → Completed.

The current step always comes from ``ConversationState.guided_step``; it is
never re-derived from the transcript.  Every move goes through the
``TRANSITIONS`` table, and anything not listed there is rejected.

Steps ``none`` and ``completed`` behave like ``reason``: the next selection
starts a new booking.  A cancel at any step returns to ``reason`` and
discards the partial slots.

Usage:
    flow = GuidedFlow(llm, committer, extractor)
    outcome = await flow.step(conversation, "Open a new account", customer_ref="003...")
    assert outcome.step == GuidedStep.TIME
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from appointment_assistant.booking import BookingCommitter
from appointment_assistant.config import MAX_TRANSCRIPT_TURNS
from appointment_assistant.errors import (
    AssistantError,
    ConflictError,
    GuidedStepMismatchError,
    InvalidDateTimeError,
    InvalidSelectionError,
    PersistenceError,
)
from appointment_assistant.normalizer import (
    format_for_display,
    format_timestamp,
    parse_selection,
    parse_timestamp,
)
from appointment_assistant.options import OptionExtractor
from appointment_assistant.parsing import Parsed, parse_reply, reply_text
from appointment_assistant.prompts import PERSONA_PROMPT, get_guided_prompt
from appointment_assistant.services.llm import CompletionClient
from appointment_assistant.slots import (
    AppointmentRecord,
    AvailableSlot,
    ConversationState,
    GuidedStep,
    Location,
    SlotSet,
)

logger = logging.getLogger(__name__)

GUIDED_MAX_TOKENS = 500
GUIDED_TEMPERATURE = 0.7
MAX_TIME_SLOTS = 3

GUIDED_REASONS: list[str] = [
    "Open a new account",
    "Apply for a credit card",
    "Manage spending and saving",
    "Build credit and reduce debt",
    "Death of a loved one",
    "Questions or assistance with Wells Fargo products and services",
    "Save for retirement",
]

CONFIRM_OPTIONS = ["Confirm", "Cancel"]

# First words accepted as "go ahead and book" at the confirmation step
_AFFIRMATIVE_WORDS = {"confirm", "confirmed", "yes", "yep", "yeah", "ok", "okay", "sure", "book"}


def is_affirmative(selection: str) -> bool:
    words = re.findall(r"[a-z]+", selection.lower())
    return bool(words) and words[0] in _AFFIRMATIVE_WORDS


# Step names used by older clients
_STEP_ALIASES = {
    "reasonselection": GuidedStep.REASON,
    "timeselection": GuidedStep.TIME,
    "locationselection": GuidedStep.LOCATION,
}


class GuidedAction(str, Enum):
    SELECT = "select"
    CANCEL = "cancel"


class GuidedTrigger(str, Enum):
    REASON_SELECTED = "reason_selected"
    TIME_SELECTED = "time_selected"
    LOCATION_SELECTED = "location_selected"
    CONFIRMED = "confirmed"
    BOOKING_FAILED = "booking_failed"
    CANCELLED = "cancelled"


TRANSITIONS: dict[tuple[GuidedStep, GuidedTrigger], GuidedStep] = {
    (GuidedStep.REASON, GuidedTrigger.REASON_SELECTED): GuidedStep.TIME,
    (GuidedStep.TIME, GuidedTrigger.TIME_SELECTED): GuidedStep.LOCATION,
    (GuidedStep.LOCATION, GuidedTrigger.LOCATION_SELECTED): GuidedStep.CONFIRMATION,
    (GuidedStep.CONFIRMATION, GuidedTrigger.CONFIRMED): GuidedStep.COMPLETED,
    (GuidedStep.CONFIRMATION, GuidedTrigger.BOOKING_FAILED): GuidedStep.CONFIRMATION,
    **{(step, GuidedTrigger.CANCELLED): GuidedStep.REASON for step in GuidedStep},
}


def effective_step(step: GuidedStep) -> GuidedStep:
    """``none`` and ``completed`` both mean "start a new booking"."""
    if step in (GuidedStep.NONE, GuidedStep.COMPLETED):
        return GuidedStep.REASON
    return step


def next_step(step: GuidedStep, trigger: GuidedTrigger) -> GuidedStep:
    try:
        return TRANSITIONS[(effective_step(step), trigger)]
    except KeyError:
        raise GuidedStepMismatchError(
            f"No transition from {step.value} on {trigger.value}"
        ) from None


def parse_client_step(value: str | GuidedStep | None) -> GuidedStep | None:
    if value is None or isinstance(value, GuidedStep):
        return value
    text = str(value).strip()
    if not text:
        return None
    alias = _STEP_ALIASES.get(text.replace("_", "").lower())
    if alias is not None:
        return alias
    try:
        return GuidedStep(text.lower())
    except ValueError:
        raise GuidedStepMismatchError(f"Unknown guided step {value!r}") from None


@dataclass
class GuidedOutcome:
    conversation: ConversationState
    reply: str
    step: GuidedStep
    time_slots: list[dict[str, str]] = field(default_factory=list)
    location_options: list[str] = field(default_factory=list)
    details: dict[str, Any] | None = None
    record: AppointmentRecord | None = None
    alternatives: list[AvailableSlot] = field(default_factory=list)
    quick_replies: list[str] = field(default_factory=list)
    error: AssistantError | None = None


def time_slot_view(raw: str) -> dict[str, str]:
    return {"display": format_for_display(parse_timestamp(raw)), "raw": raw}


class GuidedFlow:
    def __init__(
        self,
        llm: CompletionClient,
        committer: BookingCommitter,
        extractor: OptionExtractor,
    ):
        self._llm = llm
        self._committer = committer
        self._extractor = extractor
        self._handlers = {
            GuidedStep.REASON: self._on_reason,
            GuidedStep.TIME: self._on_time,
            GuidedStep.LOCATION: self._on_location,
            GuidedStep.CONFIRMATION: self._on_confirmation,
        }

    async def step(
        self,
        conversation: ConversationState,
        selection: str,
        *,
        customer_ref: str,
        action: GuidedAction = GuidedAction.SELECT,
        client_step: str | GuidedStep | None = None,
    ) -> GuidedOutcome:
        current = effective_step(conversation.guided_step)
        claimed = parse_client_step(client_step)
        if claimed is not None and effective_step(claimed) is not current:
            raise GuidedStepMismatchError(
                f"Client is at {claimed.value}, session is at {current.value}"
            )

        if action is GuidedAction.CANCEL or selection.strip().lower() == "cancel":
            return self._cancel(conversation, selection)

        logger.debug("Guided step %s with selection %r", current.value, selection)
        return await self._handlers[current](conversation, selection, customer_ref)

    # ── Steps ────────────────────────────────────────────────────────

    async def _on_reason(self, conversation, selection, customer_ref) -> GuidedOutcome:
        reason = selection.strip()
        if not reason:
            raise InvalidSelectionError("Empty reason", user_message="Please choose a reason for your visit.")

        conversation = conversation.with_slots(SlotSet(reason=reason))
        data, reply, conversation = await self._ask(
            conversation, selection, get_guided_prompt("reason", reason=reason), "guided_reason",
        )
        offered = self._valid_time_slots(data.get("timeSlots"))
        quick_replies = [] if offered else await self._extractor.extract(reply)

        step = next_step(GuidedStep.REASON, GuidedTrigger.REASON_SELECTED)
        conversation = conversation.with_turn("assistant", reply).model_copy(update={
            "guided_step": step,
            "offered_time_slots": offered,
            "offered_locations": [],
        })
        return GuidedOutcome(
            conversation=conversation,
            reply=reply,
            step=step,
            time_slots=[time_slot_view(raw) for raw in offered],
            details=conversation.active_slots.to_details(),
            quick_replies=quick_replies,
        )

    async def _on_time(self, conversation, selection, customer_ref) -> GuidedOutcome:
        picked = parse_selection(selection.strip())
        if picked <= datetime.now(UTC):
            raise InvalidSelectionError(
                f"Selected time {picked.isoformat()} is in the past",
                user_message="That time has already passed. Please pick another slot.",
            )

        slots = conversation.active_slots.merge({
            "date": picked.date().isoformat(),
            "time": picked.strftime("%H:%M:%S"),
        })
        conversation = conversation.with_slots(slots)
        data, reply, conversation = await self._ask(
            conversation,
            selection,
            get_guided_prompt("time", time=format_for_display(picked)),
            "guided_time",
        )
        locations = self._valid_locations(data.get("locationOptions"))

        step = next_step(GuidedStep.TIME, GuidedTrigger.TIME_SELECTED)
        conversation = conversation.with_turn("assistant", reply).model_copy(update={
            "guided_step": step,
            "offered_locations": locations,
        })
        return GuidedOutcome(
            conversation=conversation,
            reply=reply,
            step=step,
            location_options=locations,
            details=slots.to_details(),
            quick_replies=list(locations),
        )

    async def _on_location(self, conversation, selection, customer_ref) -> GuidedOutcome:
        location = Location.coerce(selection)
        if location is None:
            raise InvalidSelectionError(
                f"Unknown location {selection!r}",
                user_message="Please choose Brooklyn, Manhattan or New York.",
            )

        slots = conversation.active_slots.merge({"location": location})
        conversation = conversation.with_slots(slots)
        timestamp = slots.timestamp
        data, reply, conversation = await self._ask(
            conversation,
            selection,
            get_guided_prompt(
                "location",
                reason=slots.reason,
                time=format_for_display(timestamp) if timestamp else None,
                location=location.value,
            ),
            "guided_location",
        )
        if not isinstance(data.get("response"), str):
            reply = self._summary(slots)

        step = next_step(GuidedStep.LOCATION, GuidedTrigger.LOCATION_SELECTED)
        conversation = conversation.with_turn("assistant", reply).model_copy(
            update={"guided_step": step},
        )
        return GuidedOutcome(
            conversation=conversation,
            reply=reply,
            step=step,
            details=slots.to_details(),
            quick_replies=list(CONFIRM_OPTIONS),
        )

    async def _on_confirmation(self, conversation, selection, customer_ref) -> GuidedOutcome:
        if not is_affirmative(selection):
            raise InvalidSelectionError(
                f"Confirmation expected, got {selection!r}",
                user_message="Please choose Confirm to book this appointment, or Cancel to start over.",
            )
        slots = conversation.active_slots
        conversation = conversation.with_turn("user", selection)
        try:
            record = await self._committer.commit(slots, customer_ref)
        except (ConflictError, PersistenceError, InvalidDateTimeError) as exc:
            logger.info("Guided booking not committed: %s", exc.message)
            step = next_step(GuidedStep.CONFIRMATION, GuidedTrigger.BOOKING_FAILED)
            conversation = conversation.with_turn("assistant", exc.user_message).model_copy(
                update={"guided_step": step},
            )
            return GuidedOutcome(
                conversation=conversation,
                reply=exc.user_message,
                step=step,
                details=slots.to_details(),
                alternatives=list(getattr(exc, "alternatives", [])),
                quick_replies=list(CONFIRM_OPTIONS),
                error=exc,
            )

        reply = (
            f"Your appointment for {record.reason} on {format_for_display(record.timestamp)} "
            f"at our {record.location} branch is booked. Confirmation number: {record.id}."
        )
        step = next_step(GuidedStep.CONFIRMATION, GuidedTrigger.CONFIRMED)
        conversation = conversation.with_turn("assistant", reply).with_slots(SlotSet()).model_copy(
            update={
                "guided_step": step,
                "last_appointment": record,
                "offered_time_slots": [],
                "offered_locations": [],
            },
        )
        logger.info("Guided booking %s created", record.id)
        return GuidedOutcome(
            conversation=conversation,
            reply=reply,
            step=step,
            details={**slots.to_details(), "id": record.id},
            record=record,
        )

    def _cancel(self, conversation: ConversationState, selection: str) -> GuidedOutcome:
        step = next_step(conversation.guided_step, GuidedTrigger.CANCELLED)
        reply = "No problem, I've cancelled this booking. What would you like to meet with us about?"
        conversation = (
            conversation
            .with_turn("user", selection.strip() or "Cancel")
            .with_turn("assistant", reply)
            .with_slots(SlotSet())
            .model_copy(update={
                "guided_step": step,
                "offered_time_slots": [],
                "offered_locations": [],
            })
        )
        return GuidedOutcome(
            conversation=conversation,
            reply=reply,
            step=step,
            quick_replies=list(GUIDED_REASONS),
        )

    # ── Helpers ──────────────────────────────────────────────────────

    async def _ask(
        self,
        conversation: ConversationState,
        selection: str,
        instructions: str,
        operation: str,
    ) -> tuple[dict[str, Any], str, ConversationState]:
        """Log the step instruction and the pick, then call the model.

        Returns the parsed payload, the reply text and the conversation with
        the system and user turns appended (the caller appends the reply).
        """
        conversation = conversation.with_turn("system", instructions).with_turn("user", selection)
        messages = [
            {"role": "system", "content": PERSONA_PROMPT},
            *conversation.transcript(limit=MAX_TRANSCRIPT_TURNS),
            {"role": "system", "content": instructions},
        ]
        raw = await self._llm.complete(
            messages,
            max_tokens=GUIDED_MAX_TOKENS,
            temperature=GUIDED_TEMPERATURE,
            operation=operation,
        )
        result = parse_reply(raw)
        if isinstance(result, Parsed):
            data = result.data
            reply = reply_text(data, fallback="Here are your next options.")
        else:
            logger.warning("Guided %s reply was not JSON", operation)
            data = {}
            reply = raw.strip() or "Here are your next options."
        return data, reply, conversation

    @staticmethod
    def _valid_time_slots(values: Any) -> list[str]:
        """Canonical future timestamps from the model, at most three."""
        if not isinstance(values, list):
            return []
        now = datetime.now(UTC)
        offered: list[str] = []
        for value in values:
            try:
                ts = parse_timestamp(str(value))
            except InvalidDateTimeError:
                logger.debug("Dropping unparseable time slot %r", value)
                continue
            canonical = format_timestamp(ts)
            if ts > now and canonical not in offered:
                offered.append(canonical)
            if len(offered) == MAX_TIME_SLOTS:
                break
        return offered

    @staticmethod
    def _valid_locations(values: Any) -> list[str]:
        locations: list[str] = []
        for value in values if isinstance(values, list) else []:
            location = Location.coerce(value)
            if location is not None and location.value not in locations:
                locations.append(location.value)
        return locations or [location.value for location in Location]

    @staticmethod
    def _summary(slots: SlotSet) -> str:
        timestamp = slots.timestamp
        when = format_for_display(timestamp) if timestamp else "the selected time"
        return (
            f"Here's your appointment: {slots.reason} on {when} at our "
            f"{slots.location.value} branch. Please confirm your appointment."
        )
