"""Tests for the guided booking flow.

Covers:
  - The transition table and client step parsing
  - Each step's handler (reason, time, location, confirmation)
  - Cancel from any step and client/session step mismatches
"""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest
from conftest import InMemoryCRM, ScriptedLLM

from appointment_assistant.booking import BookingCommitter
from appointment_assistant.errors import (
    ConflictError,
    GuidedStepMismatchError,
    InvalidSelectionError,
    PersistenceError,
)
from appointment_assistant.guided import (
    CONFIRM_OPTIONS,
    GUIDED_REASONS,
    GuidedAction,
    GuidedFlow,
    GuidedTrigger,
    effective_step,
    is_affirmative,
    next_step,
    parse_client_step,
)
from appointment_assistant.options import OTHER_OPTION, OptionExtractor
from appointment_assistant.services.crm_client import CRMAPIError
from appointment_assistant.slots import (
    AppointmentRecord,
    ConversationState,
    GuidedStep,
    Location,
    SlotSet,
)

CONTACT = "003dM000005H5A7QAK"
SLOT_1 = "2030-03-11T15:00:00.000Z"
SLOT_2 = "2030-03-12T16:00:00.000Z"
SLOT_3 = "2030-03-13T17:00:00.000Z"


# ── Helpers ──────────────────────────────────────────────────────────


def _flow(llm, crm, options_llm=None):
    return GuidedFlow(llm, BookingCommitter(crm), OptionExtractor(options_llm or ScriptedLLM()))


def _at(step, **slots):
    return ConversationState(session_id="g1", guided_step=step, active_slots=SlotSet(**slots))


def _ready_to_confirm():
    return _at(
        GuidedStep.CONFIRMATION,
        reason="Open a new account",
        date="2030-03-11",
        time="15:00:00",
        location="Brooklyn",
    )


# ── Transition table ─────────────────────────────────────────────────


class TestTransitions:
    def test_happy_path_order(self):
        assert next_step(GuidedStep.REASON, GuidedTrigger.REASON_SELECTED) is GuidedStep.TIME
        assert next_step(GuidedStep.TIME, GuidedTrigger.TIME_SELECTED) is GuidedStep.LOCATION
        assert next_step(GuidedStep.LOCATION, GuidedTrigger.LOCATION_SELECTED) is GuidedStep.CONFIRMATION
        assert next_step(GuidedStep.CONFIRMATION, GuidedTrigger.CONFIRMED) is GuidedStep.COMPLETED

    def test_failed_booking_stays_at_confirmation(self):
        assert (
            next_step(GuidedStep.CONFIRMATION, GuidedTrigger.BOOKING_FAILED)
            is GuidedStep.CONFIRMATION
        )

    @pytest.mark.parametrize("step", list(GuidedStep))
    def test_cancel_allowed_everywhere(self, step):
        assert next_step(step, GuidedTrigger.CANCELLED) is GuidedStep.REASON

    def test_skipping_a_step_is_rejected(self):
        with pytest.raises(GuidedStepMismatchError):
            next_step(GuidedStep.TIME, GuidedTrigger.CONFIRMED)

    def test_none_and_completed_start_over(self):
        assert effective_step(GuidedStep.NONE) is GuidedStep.REASON
        assert effective_step(GuidedStep.COMPLETED) is GuidedStep.REASON
        assert next_step(GuidedStep.COMPLETED, GuidedTrigger.REASON_SELECTED) is GuidedStep.TIME


class TestParseClientStep:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("time", GuidedStep.TIME),
            ("Location", GuidedStep.LOCATION),
            ("timeSelection", GuidedStep.TIME),
            ("reason_selection", GuidedStep.REASON),
            (None, None),
            ("", None),
        ],
    )
    def test_known_values(self, value, expected):
        assert parse_client_step(value) is expected

    def test_unknown_value(self):
        with pytest.raises(GuidedStepMismatchError):
            parse_client_step("payment")


# ── Reason step ──────────────────────────────────────────────────────


class TestReasonStep:
    @pytest.mark.asyncio
    async def test_reason_moves_to_time_with_offered_slots(self, crm):
        llm = ScriptedLLM([json.dumps({
            "response": "Here are some times that work.",
            "timeSlots": [SLOT_1, SLOT_2, SLOT_3],
        })])
        outcome = await _flow(llm, crm).step(
            ConversationState(session_id="g1"), "Open a new account", customer_ref=CONTACT,
        )

        assert outcome.step is GuidedStep.TIME
        assert outcome.conversation.guided_step is GuidedStep.TIME
        assert outcome.conversation.active_slots.reason == "Open a new account"
        assert outcome.details["timestamp"] is None
        assert [s["raw"] for s in outcome.time_slots] == [SLOT_1, SLOT_2, SLOT_3]
        assert outcome.conversation.offered_time_slots == [SLOT_1, SLOT_2, SLOT_3]
        assert llm.calls[0]["operation"] == "guided_reason"
        assert llm.calls[0]["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_turn_log_records_instruction_pick_and_reply(self, crm):
        llm = ScriptedLLM([json.dumps({"response": "Pick a time.", "timeSlots": [SLOT_1]})])
        outcome = await _flow(llm, crm).step(
            ConversationState(session_id="g1"), "Save for retirement", customer_ref=CONTACT,
        )
        speakers = [t.speaker for t in outcome.conversation.turn_log]
        assert speakers == ["system", "user", "assistant"]
        # System instructions never reach the UI replay
        assert [m["type"] for m in outcome.conversation.visible_messages()] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_past_and_malformed_slots_are_dropped(self, crm):
        llm = ScriptedLLM([json.dumps({
            "response": "Times:",
            "timeSlots": ["2001-01-01T10:00:00.000Z", "soon", SLOT_1, SLOT_1],
        })])
        outcome = await _flow(llm, crm).step(
            ConversationState(session_id="g1"), "Open a new account", customer_ref=CONTACT,
        )
        assert [s["raw"] for s in outcome.time_slots] == [SLOT_1]

    @pytest.mark.asyncio
    async def test_no_slots_falls_back_to_quick_replies(self, crm):
        llm = ScriptedLLM(["Would Monday at 10 AM or Tuesday at 2 PM work?"])
        options_llm = ScriptedLLM(['["Monday 10 AM", "Tuesday 2 PM"]'])
        outcome = await _flow(llm, crm, options_llm).step(
            ConversationState(session_id="g1"), "Open a new account", customer_ref=CONTACT,
        )
        assert outcome.time_slots == []
        assert outcome.quick_replies == ["Monday 10 AM", "Tuesday 2 PM", OTHER_OPTION]

    @pytest.mark.asyncio
    async def test_completed_session_starts_a_new_booking(self, crm):
        llm = ScriptedLLM([json.dumps({"response": "Times:", "timeSlots": [SLOT_1]})])
        outcome = await _flow(llm, crm).step(
            _at(GuidedStep.COMPLETED), "Apply for a credit card", customer_ref=CONTACT,
        )
        assert outcome.step is GuidedStep.TIME
        assert outcome.conversation.active_slots.reason == "Apply for a credit card"

    @pytest.mark.asyncio
    async def test_empty_reason_is_rejected(self, crm):
        llm = ScriptedLLM()
        with pytest.raises(InvalidSelectionError):
            await _flow(llm, crm).step(ConversationState(session_id="g1"), "  ", customer_ref=CONTACT)
        assert llm.calls == []


# ── Time step ────────────────────────────────────────────────────────


class TestTimeStep:
    @pytest.mark.asyncio
    async def test_time_moves_to_location(self, crm):
        llm = ScriptedLLM([json.dumps({
            "response": "Which branch?",
            "locationOptions": ["Brooklyn", "Manhattan", "Gotham"],
        })])
        outcome = await _flow(llm, crm).step(
            _at(GuidedStep.TIME, reason="Open a new account"), SLOT_1, customer_ref=CONTACT,
        )
        assert outcome.step is GuidedStep.LOCATION
        assert outcome.details["timestamp"] == SLOT_1
        assert outcome.conversation.active_slots.reason == "Open a new account"
        assert outcome.location_options == ["Brooklyn", "Manhattan"]
        assert outcome.quick_replies == ["Brooklyn", "Manhattan"]

    @pytest.mark.asyncio
    async def test_missing_location_options_offer_every_branch(self, crm):
        llm = ScriptedLLM([json.dumps({"response": "Which branch?"})])
        outcome = await _flow(llm, crm).step(
            _at(GuidedStep.TIME, reason="Open a new account"), SLOT_1, customer_ref=CONTACT,
        )
        assert outcome.location_options == [location.value for location in Location]

    @pytest.mark.asyncio
    async def test_past_time_is_rejected(self, crm):
        llm = ScriptedLLM()
        with pytest.raises(InvalidSelectionError):
            await _flow(llm, crm).step(
                _at(GuidedStep.TIME, reason="Open a new account"),
                "2001-01-01T10:00:00.000Z",
                customer_ref=CONTACT,
            )
        assert llm.calls == []


# ── Location step ────────────────────────────────────────────────────


class TestLocationStep:
    @pytest.mark.asyncio
    async def test_location_moves_to_confirmation(self, crm):
        llm = ScriptedLLM([json.dumps({
            "response": "Open a new account, Mon 11 Mar at 3 PM, Brooklyn. Please confirm your appointment.",
        })])
        outcome = await _flow(llm, crm).step(
            _at(GuidedStep.LOCATION, reason="Open a new account", date="2030-03-11", time="15:00:00"),
            "brooklyn",
            customer_ref=CONTACT,
        )
        assert outcome.step is GuidedStep.CONFIRMATION
        assert outcome.details["location"] == "Brooklyn"
        assert outcome.quick_replies == CONFIRM_OPTIONS
        assert crm.created == []

    @pytest.mark.asyncio
    async def test_prose_reply_falls_back_to_summary(self, crm):
        llm = ScriptedLLM(["Sounds good!"])
        outcome = await _flow(llm, crm).step(
            _at(GuidedStep.LOCATION, reason="Open a new account", date="2030-03-11", time="15:00:00"),
            "Manhattan",
            customer_ref=CONTACT,
        )
        assert "Open a new account" in outcome.reply
        assert "Manhattan" in outcome.reply
        assert outcome.reply.endswith("Please confirm your appointment.")

    @pytest.mark.asyncio
    async def test_unknown_location_is_rejected(self, crm):
        with pytest.raises(InvalidSelectionError):
            await _flow(ScriptedLLM(), crm).step(
                _at(GuidedStep.LOCATION, reason="Open a new account"), "Gotham", customer_ref=CONTACT,
            )


# ── Confirmation step ────────────────────────────────────────────────


class TestConfirmationStep:
    @pytest.mark.asyncio
    async def test_confirm_books_and_completes(self, crm):
        llm = ScriptedLLM()  # confirmation uses a templated reply
        outcome = await _flow(llm, crm).step(_ready_to_confirm(), "Confirm", customer_ref=CONTACT)

        assert outcome.step is GuidedStep.COMPLETED
        assert len(crm.created) == 1
        assert outcome.details["id"] == outcome.record.id
        assert outcome.record.id in outcome.reply
        assert outcome.conversation.active_slots == SlotSet()
        assert outcome.conversation.last_appointment.id == outcome.record.id
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_legacy_confirmation_sentence_books(self, crm):
        outcome = await _flow(ScriptedLLM(), crm).step(
            _ready_to_confirm(),
            f"Confirm appointment with reason: Open a new account and slot: {SLOT_1}",
            customer_ref=CONTACT,
        )
        assert outcome.step is GuidedStep.COMPLETED
        assert len(crm.created) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("selection", ["change the time", "Brooklyn", "no", ""])
    async def test_non_affirmative_selection_does_not_book(self, crm, selection):
        with pytest.raises(InvalidSelectionError):
            await _flow(ScriptedLLM(), crm).step(_ready_to_confirm(), selection, customer_ref=CONTACT)
        assert crm.created == []

    @pytest.mark.parametrize("selection", ["Confirm", "yes, please", "OK!", "Book it"])
    def test_affirmative_selections(self, selection):
        assert is_affirmative(selection)

    @pytest.mark.asyncio
    async def test_conflict_stays_at_confirmation_with_alternatives(self):
        crm = InMemoryCRM(records=[AppointmentRecord(
            id="a0X000000000050",
            reason="Other",
            timestamp=datetime(2030, 3, 11, 15, 0, tzinfo=UTC),
            location="Brooklyn",
            customer_ref="003OTHER",
        )])
        outcome = await _flow(ScriptedLLM(), crm).step(
            _ready_to_confirm(), "Confirm", customer_ref=CONTACT,
        )
        assert outcome.step is GuidedStep.CONFIRMATION
        assert isinstance(outcome.error, ConflictError)
        assert outcome.alternatives
        assert crm.created == []
        assert outcome.conversation.active_slots.is_complete

    @pytest.mark.asyncio
    async def test_write_failure_stays_at_confirmation(self, crm):
        crm.fail_create = CRMAPIError("Server error 503", status_code=503)
        outcome = await _flow(ScriptedLLM(), crm).step(
            _ready_to_confirm(), "Confirm", customer_ref=CONTACT,
        )
        assert outcome.step is GuidedStep.CONFIRMATION
        assert isinstance(outcome.error, PersistenceError)
        assert outcome.reply == outcome.error.user_message
        assert outcome.quick_replies == CONFIRM_OPTIONS


# ── Cancel and mismatches ────────────────────────────────────────────


class TestCancelAndMismatch:
    @pytest.mark.asyncio
    async def test_cancel_action_resets_to_reason(self, crm):
        llm = ScriptedLLM()
        outcome = await _flow(llm, crm).step(
            _ready_to_confirm(), "", customer_ref=CONTACT, action=GuidedAction.CANCEL,
        )
        assert outcome.step is GuidedStep.REASON
        assert outcome.conversation.active_slots == SlotSet()
        assert outcome.quick_replies == GUIDED_REASONS
        assert llm.calls == []
        assert crm.created == []

    @pytest.mark.asyncio
    async def test_cancel_text_is_treated_as_cancel(self, crm):
        outcome = await _flow(ScriptedLLM(), crm).step(
            _at(GuidedStep.TIME, reason="Open a new account"), "Cancel", customer_ref=CONTACT,
        )
        assert outcome.step is GuidedStep.REASON
        assert outcome.conversation.turn_log[0].text == "Cancel"

    @pytest.mark.asyncio
    async def test_client_step_mismatch_is_rejected(self, crm):
        llm = ScriptedLLM()
        with pytest.raises(GuidedStepMismatchError):
            await _flow(llm, crm).step(
                _at(GuidedStep.LOCATION, reason="Open a new account"),
                "Brooklyn",
                customer_ref=CONTACT,
                client_step="time",
            )
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_matching_legacy_step_name_is_accepted(self, crm):
        llm = ScriptedLLM([json.dumps({"response": "Which branch?"})])
        outcome = await _flow(llm, crm).step(
            _at(GuidedStep.TIME, reason="Open a new account"),
            SLOT_1,
            customer_ref=CONTACT,
            client_step="timeSelection",
        )
        assert outcome.step is GuidedStep.LOCATION
