"""Tests for the chat-turn graph.

Covers:
  - Canned-intent bypass (no LLM, no CRM)
  - End-to-end booking, conflict and partial-details turns
  - Degraded turns (unparseable reply, malformed time)
  - Collaborator failures propagating out of the graph
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from conftest import InMemoryCRM, ScriptedLLM, llm_json

from appointment_assistant.agent import (
    TurnProcessor,
    ask_for_missing,
    route_by_intent,
    should_commit,
)
from appointment_assistant.booking import BookingCommitter
from appointment_assistant.context import ContextAssembler
from appointment_assistant.errors import (
    ConflictError,
    InvalidDateTimeError,
    LLMParseError,
    LLMUnavailableError,
)
from appointment_assistant.intents import CANNED_INTENTS
from appointment_assistant.slots import (
    AppointmentRecord,
    ConversationState,
    CustomerType,
    SlotSet,
)

CONTACT = "003dM000005H5A7QAK"
BOOKING_UTTERANCE = "book a loan consultation tomorrow at 2pm in Brooklyn"
BRANCH_QUERY = "Find me a branch within 5 miles with 24hrs Drive-thru ATM service"


# ── Helpers ──────────────────────────────────────────────────────────


def _processor(llm, crm):
    return TurnProcessor(llm, ContextAssembler(crm), BookingCommitter(crm))


def _full_details_reply():
    return llm_json(
        "Great, I'll book your loan consultation for tomorrow at 2 PM in Brooklyn.",
        reason="Loan consultation",
        date="2030-03-10",
        time="2:00 PM",
        location="Brooklyn",
    )


async def _run(llm, crm, utterance, conversation=None, customer_type=CustomerType.GUEST):
    return await _processor(llm, crm).process_turn(
        utterance,
        conversation or ConversationState(session_id="s1"),
        customer_type,
        CONTACT,
    )


# ── Canned intents ───────────────────────────────────────────────────


class TestCannedIntent:
    @pytest.mark.asyncio
    async def test_branch_locator_bypasses_llm(self, crm):
        llm = ScriptedLLM()  # any call would fail the test
        outcome = await _run(llm, crm, BRANCH_QUERY, customer_type=CustomerType.REGULAR)
        assert llm.calls == []
        assert crm.history_queries == []
        assert outcome.canned
        assert outcome.reply == CANNED_INTENTS[0].response
        assert [t.speaker for t in outcome.conversation.turn_log] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_canned_match_is_case_insensitive(self, crm):
        outcome = await _run(ScriptedLLM(), crm, BRANCH_QUERY.upper())
        assert outcome.canned


# ── End-to-end scenarios ─────────────────────────────────────────────


class TestBookingScenarios:
    @pytest.mark.asyncio
    async def test_all_details_books_one_record(self, crm):
        llm = ScriptedLLM([_full_details_reply()])
        outcome = await _run(llm, crm, BOOKING_UTTERANCE)

        assert outcome.missing_fields == []
        assert outcome.error is None
        assert len(crm.created) == 1
        assert outcome.record is not None
        assert outcome.record.id in outcome.reply
        assert outcome.details["id"] == outcome.record.id
        assert outcome.details["timestamp"] == "2030-03-10T14:00:00.000Z"

    @pytest.mark.asyncio
    async def test_successful_booking_resets_working_slots(self, crm):
        outcome = await _run(ScriptedLLM([_full_details_reply()]), crm, BOOKING_UTTERANCE)
        assert outcome.conversation.active_slots == SlotSet()
        assert outcome.conversation.last_appointment.id == outcome.record.id

    @pytest.mark.asyncio
    async def test_taken_slot_returns_conflict_and_creates_nothing(self):
        existing = AppointmentRecord(
            id="a0X000000000077",
            reason="Mortgage",
            timestamp=datetime(2030, 3, 10, 14, 0, tzinfo=UTC),
            location="Brooklyn",
            customer_ref="003SOMEONEELSE",
        )
        crm = InMemoryCRM(records=[existing])
        outcome = await _run(ScriptedLLM([_full_details_reply()]), crm, BOOKING_UTTERANCE)

        assert isinstance(outcome.error, ConflictError)
        assert len(outcome.error.alternatives) >= 1
        assert crm.created == []
        # Slots are kept so the user only has to change the time
        assert outcome.conversation.active_slots.is_complete
        assert "already booked" in outcome.reply

    @pytest.mark.asyncio
    async def test_reason_only_reports_missing_fields(self, crm):
        llm = ScriptedLLM([
            llm_json(
                "Happy to help with a loan consultation! What date and time suit you, and which branch?",
                reason="Loan consultation",
            )
        ])
        outcome = await _run(llm, crm, "I need a loan consultation")

        assert set(outcome.missing_fields) == {"date", "time", "location"}
        assert crm.created == []
        assert outcome.record is None
        assert "date" in outcome.reply
        assert [t.speaker for t in outcome.conversation.turn_log] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_details_accumulate_across_turns(self, crm):
        first = await _run(
            ScriptedLLM([llm_json("When would you like to come in?", reason="Loan consultation")]),
            crm,
            "I need a loan consultation",
        )
        llm = ScriptedLLM([
            llm_json("Booking it now.", date="2030-03-10", time="2pm", location="Brooklyn"),
        ])
        second = await _run(llm, crm, "tomorrow at 2pm in Brooklyn", conversation=first.conversation)

        assert second.record is not None
        assert crm.created[0].reason == "Loan consultation"
        sent = [m["content"] for m in llm.calls[0]["messages"] if m["role"] != "system"]
        assert sent == [
            "I need a loan consultation",
            "When would you like to come in?",
            "tomorrow at 2pm in Brooklyn",
        ]


# ── Prompt and context ───────────────────────────────────────────────


class TestPromptAssembly:
    @pytest.mark.asyncio
    async def test_regular_customer_gets_history_in_prompt(self):
        crm = InMemoryCRM(records=[
            AppointmentRecord(
                id="a0X000000000001",
                reason="Mortgage",
                timestamp=datetime(2029, 5, 1, 15, 0, tzinfo=UTC),
                location="Manhattan",
                banker_id="005dM000001AbCdQAK",
                customer_ref=CONTACT,
            )
        ])
        llm = ScriptedLLM([llm_json("What can I help you with today?")])
        outcome = await _run(llm, crm, "hi", customer_type=CustomerType.REGULAR)

        prompt = llm.calls[0]["messages"][-1]["content"]
        assert "Preferred Banker ID: 005dM000001AbCdQAK" in prompt
        assert "Preferred Location: Manhattan" in prompt
        assert [r.id for r in outcome.previous_appointments] == ["a0X000000000001"]

    @pytest.mark.asyncio
    async def test_guest_turn_reads_no_history(self, crm):
        llm = ScriptedLLM([llm_json("Hello! How can I help?")])
        outcome = await _run(llm, crm, "hi")
        assert crm.history_queries == []
        assert outcome.previous_appointments == []
        assert "No prior context available." in llm.calls[0]["messages"][-1]["content"]

    @pytest.mark.asyncio
    async def test_uses_chat_sampling_settings(self, crm):
        llm = ScriptedLLM([llm_json("Hello!")])
        await _run(llm, crm, "hi")
        assert llm.calls[0]["temperature"] == 0.5
        assert llm.calls[0]["max_tokens"] == 500
        assert llm.calls[0]["messages"][0]["role"] == "system"

    @pytest.mark.asyncio
    async def test_invalid_banker_is_dropped(self, crm):
        llm = ScriptedLLM([llm_json("Noted.", reason="Mortgage", banker="12345")])
        outcome = await _run(llm, crm, "mortgage with banker 12345")
        assert outcome.slots.banker_id is None
        assert outcome.slots.reason == "Mortgage"


# ── Degraded turns ───────────────────────────────────────────────────


class TestDegradedTurns:
    @pytest.mark.asyncio
    async def test_prose_reply_degrades_with_parse_error(self, crm):
        llm = ScriptedLLM(["Sorry, could you say that again?"])
        outcome = await _run(llm, crm, "blah")
        assert isinstance(outcome.error, LLMParseError)
        assert outcome.reply == "Sorry, could you say that again?"
        assert outcome.slots == SlotSet()

    @pytest.mark.asyncio
    async def test_parse_error_returns_empty_details_but_keeps_slots(self, crm):
        known = ConversationState(session_id="s1", active_slots=SlotSet(reason="Mortgage"))
        outcome = await _run(ScriptedLLM(["Hmm, let me think."]), crm, "blah", conversation=known)
        assert isinstance(outcome.error, LLMParseError)
        assert outcome.details == {}
        assert outcome.conversation.active_slots.reason == "Mortgage"

    @pytest.mark.asyncio
    async def test_fenced_reply_is_parsed(self, crm):
        raw = "Here:\n```json\n" + llm_json("Which branch?", reason="Savings") + "\n```"
        outcome = await _run(ScriptedLLM([raw]), crm, "savings")
        assert outcome.error is None
        assert outcome.slots.reason == "Savings"

    @pytest.mark.asyncio
    async def test_malformed_time_returns_invalid_datetime(self, crm):
        llm = ScriptedLLM([
            llm_json("Booking now.", reason="Loan", date="2030-03-10", time="25:00", location="Brooklyn"),
        ])
        outcome = await _run(llm, crm, "loan at 25:00")
        assert isinstance(outcome.error, InvalidDateTimeError)
        assert crm.created == []
        assert outcome.conversation.active_slots.time == "25:00"
        assert outcome.conversation.turn_log[-1].text == outcome.reply

    @pytest.mark.asyncio
    async def test_llm_failure_propagates(self, crm):
        llm = ScriptedLLM([LLMUnavailableError("provider timeout")])
        with pytest.raises(LLMUnavailableError):
            await _run(llm, crm, "hi")


# ── Edges and helpers ────────────────────────────────────────────────


class TestRouting:
    def test_route_by_intent(self):
        assert route_by_intent({"intent": CANNED_INTENTS[0]}) == "canned_reply"
        assert route_by_intent({"intent": None}) == "assemble_context"

    def test_should_commit_only_when_complete(self):
        complete = SlotSet(reason="Loan", date="2030-03-10", time="2pm", location="Brooklyn")
        state = ConversationState(session_id="s1", active_slots=complete)
        assert should_commit({"conversation": state}) == "commit_booking"
        assert should_commit({"conversation": state, "error": LLMParseError("x")}) == "respond"
        assert should_commit({"conversation": ConversationState(session_id="s1")}) == "respond"

    def test_ask_for_missing(self):
        assert ask_for_missing(["date"]) == "Could you tell me the date?"
        assert ask_for_missing(["date", "time"]) == "Could you tell me the date and a time?"
