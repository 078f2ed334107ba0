"""LangGraph turn processor for free-form booking chat.

Architecture:
  Each chat turn runs through a compiled ``StateGraph``:

    1. **intent_router**    — checks the canned-intent list (no LLM)
    2. **canned_reply**     — answers a canned intent and ends the turn
    3. **assemble_context** — CRM history for regular customers
    4. **call_llm**         — booking prompt + recent transcript → model
    5. **parse_reply**      — lenient JSON parse, merge into the SlotSet
    6. **commit_booking**   — only when no required slot is missing
    7. **respond**          — appends the assistant turn

  Routing:
    intent_router → (canned?) → canned_reply → END
                  → assemble_context → call_llm → parse_reply
                      → (complete?) → commit_booking → respond → END
                      → (missing?)  → respond → END

  State:
    The graph has no checkpointer.  The caller passes the session's
    ``ConversationState`` in and receives the new one back; persistence is
    the session store's job.

  Errors:
    Date/time, conflict and persistence failures end the turn normally with
    an explanatory reply and ``error`` set; the slots are kept so the user
    can correct one field.  LLM and CRM outages propagate
    (``LLMUnavailableError`` / ``CRMUnavailableError``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from appointment_assistant.booking import BookingCommitter
from appointment_assistant.config import MAX_TRANSCRIPT_TURNS
from appointment_assistant.context import ContextAssembler, ContextBlock
from appointment_assistant.errors import (
    AssistantError,
    ConflictError,
    InvalidDateTimeError,
    LLMParseError,
    PersistenceError,
)
from appointment_assistant.intents import CANNED_INTENTS, CannedIntent, match_intent
from appointment_assistant.normalizer import combine, format_for_display
from appointment_assistant.parsing import Parsed, extract_details, parse_reply, reply_text
from appointment_assistant.prompts import PERSONA_PROMPT, get_booking_prompt
from appointment_assistant.services.llm import CompletionClient
from appointment_assistant.slots import (
    AppointmentRecord,
    ConversationState,
    CustomerType,
    SlotSet,
)

logger = logging.getLogger(__name__)

CHAT_MAX_TOKENS = 500
CHAT_TEMPERATURE = 0.5

_FIELD_PROMPTS = {
    "reason": "the reason for your visit",
    "date": "the date",
    "time": "a time",
    "location": "the branch (Brooklyn, Manhattan or New York)",
}


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict, total=False):
    """The state that flows through the graph for one turn.

    Every node returns only the keys it changes.  ``conversation`` is the
    immutable session value and is replaced, never mutated.
    """

    utterance: str
    customer_type: CustomerType
    customer_ref: str
    conversation: ConversationState
    intent: CannedIntent | None
    context: ContextBlock
    raw_output: str
    reply: str
    booked_slots: SlotSet | None
    record: AppointmentRecord | None
    error: AssistantError | None


@dataclass
class TurnOutcome:
    conversation: ConversationState
    reply: str
    slots: SlotSet
    record: AppointmentRecord | None = None
    previous_appointments: list[AppointmentRecord] = field(default_factory=list)
    error: AssistantError | None = None
    canned: bool = False

    @property
    def missing_fields(self) -> list[str]:
        return self.slots.missing_fields

    @property
    def details(self) -> dict[str, Any]:
        # A reply nothing could be read from carries no details of its own
        if isinstance(self.error, LLMParseError):
            return {}
        details = self.slots.to_details()
        if self.record is not None:
            details["id"] = self.record.id
        return details


def ask_for_missing(missing: list[str]) -> str:
    """Fallback question when the model gave details but no prose."""
    parts = [_FIELD_PROMPTS[name] for name in missing]
    if not parts:
        return "Thanks, I have everything I need."
    if len(parts) == 1:
        wanted = parts[0]
    else:
        wanted = ", ".join(parts[:-1]) + f" and {parts[-1]}"
    return f"Could you tell me {wanted}?"


def describe_alternatives(error: ConflictError) -> str:
    lines = [error.user_message]
    for alt in error.alternatives:
        try:
            when = format_for_display(combine(alt.date, alt.time))
        except InvalidDateTimeError:
            when = f"{alt.date} {alt.time}"
        lines.append(f"- {when}" + (f" at {alt.location}" if alt.location else ""))
    return "\n".join(lines)


# ── Nodes ────────────────────────────────────────────────────────────


def _make_intent_router_node(intents: list[CannedIntent]):
    def intent_router(state: TurnState) -> dict:
        intent = match_intent(state["utterance"], intents)
        if intent is not None:
            logger.debug("Canned intent matched: %s", intent.name)
        return {"intent": intent}

    return intent_router


def canned_reply(state: TurnState) -> dict:
    """Answer a canned intent without touching the model or the CRM."""
    intent = state["intent"]
    conversation = (
        state["conversation"]
        .free_form()
        .with_turn("user", state["utterance"])
        .with_turn("assistant", intent.response)
    )
    return {"conversation": conversation, "reply": intent.response}


def _make_assemble_context_node(assembler: ContextAssembler):
    async def assemble_context(state: TurnState) -> dict:
        context = await assembler.build(
            state.get("customer_ref"),
            state["customer_type"],
            state["conversation"].active_slots,
        )
        return {"context": context}

    return assemble_context


def _make_call_llm_node(llm: CompletionClient):
    async def call_llm(state: TurnState) -> dict:
        conversation = state["conversation"].free_form().with_turn("user", state["utterance"])
        context = state["context"]
        messages = [
            {"role": "system", "content": PERSONA_PROMPT},
            *conversation.transcript(limit=MAX_TRANSCRIPT_TURNS),
            {
                "role": "system",
                "content": get_booking_prompt(context.customer_type.value, context.render()),
            },
        ]
        raw = await llm.complete(
            messages,
            max_tokens=CHAT_MAX_TOKENS,
            temperature=CHAT_TEMPERATURE,
            operation="chat_turn",
        )
        return {"conversation": conversation, "raw_output": raw}

    return call_llm


def parse_reply_node(state: TurnState) -> dict:
    """Merge whatever details the model produced into the working SlotSet."""
    conversation = state["conversation"]
    raw = state.get("raw_output", "")
    result = parse_reply(raw)

    if not isinstance(result, Parsed):
        logger.warning("Model reply was not JSON; degrading to prose (%d chars)", len(raw))
        error = LLMParseError(f"Unparseable model output: {raw[:200]!r}")
        return {"reply": raw.strip() or error.user_message, "error": error}

    slots = conversation.active_slots.merge(extract_details(result.data))
    logger.debug("Slots after merge: %s (missing: %s)", slots.to_details(), slots.missing_fields)
    return {
        "conversation": conversation.with_slots(slots),
        "reply": reply_text(result.data, fallback=ask_for_missing(slots.missing_fields)),
    }


def _make_commit_booking_node(committer: BookingCommitter):
    async def commit_booking(state: TurnState) -> dict:
        conversation = state["conversation"]
        slots = conversation.active_slots
        try:
            record = await committer.commit(slots, state["customer_ref"])
        except ConflictError as exc:
            return {"reply": describe_alternatives(exc), "error": exc}
        except (InvalidDateTimeError, PersistenceError) as exc:
            logger.info("Booking not committed: %s", exc.message)
            return {"reply": exc.user_message, "error": exc}

        logger.info("Booked appointment %s for %s", record.id, state["customer_ref"])
        confirmation = (
            f"Your appointment is booked for {format_for_display(record.timestamp)} "
            f"at our {record.location} branch. Confirmation number: {record.id}."
        )
        conversation = conversation.with_slots(SlotSet()).model_copy(
            update={"last_appointment": record},
        )
        return {
            "conversation": conversation,
            "reply": f"{state['reply']}\n\n{confirmation}",
            "booked_slots": slots,
            "record": record,
        }

    return commit_booking


def respond(state: TurnState) -> dict:
    return {"conversation": state["conversation"].with_turn("assistant", state["reply"])}


# ── Conditional edges ────────────────────────────────────────────────


def route_by_intent(state: TurnState) -> str:
    return "canned_reply" if state.get("intent") is not None else "assemble_context"


def should_commit(state: TurnState) -> str:
    if state.get("error") is None and state["conversation"].active_slots.is_complete:
        return "commit_booking"
    return "respond"


# ── Graph assembly ───────────────────────────────────────────────────


def create_turn_graph(
    llm: CompletionClient,
    assembler: ContextAssembler,
    committer: BookingCommitter,
    intents: list[CannedIntent] | None = None,
):
    """Build and compile the chat-turn graph.

    Returns a compiled graph that can be invoked with:
        await graph.ainvoke({
            "utterance": "...",
            "customer_type": CustomerType.GUEST,
            "customer_ref": "003...",
            "conversation": ConversationState(session_id="..."),
        })
    """
    graph = StateGraph(TurnState)

    graph.add_node("intent_router", _make_intent_router_node(
        CANNED_INTENTS if intents is None else intents,
    ))
    graph.add_node("canned_reply", canned_reply)
    graph.add_node("assemble_context", _make_assemble_context_node(assembler))
    graph.add_node("call_llm", _make_call_llm_node(llm))
    graph.add_node("parse_reply", parse_reply_node)
    graph.add_node("commit_booking", _make_commit_booking_node(committer))
    graph.add_node("respond", respond)

    graph.set_entry_point("intent_router")
    graph.add_conditional_edges(
        "intent_router",
        route_by_intent,
        {"canned_reply": "canned_reply", "assemble_context": "assemble_context"},
    )
    graph.add_edge("canned_reply", END)

    graph.add_edge("assemble_context", "call_llm")
    graph.add_edge("call_llm", "parse_reply")
    graph.add_conditional_edges(
        "parse_reply",
        should_commit,
        {"commit_booking": "commit_booking", "respond": "respond"},
    )
    graph.add_edge("commit_booking", "respond")
    graph.add_edge("respond", END)

    return graph.compile()


class TurnProcessor:
    """Runs one free-form chat turn against the compiled graph."""

    def __init__(
        self,
        llm: CompletionClient,
        assembler: ContextAssembler,
        committer: BookingCommitter,
        intents: list[CannedIntent] | None = None,
    ):
        self._graph = create_turn_graph(llm, assembler, committer, intents)

    async def process_turn(
        self,
        utterance: str,
        conversation: ConversationState,
        customer_type: CustomerType,
        customer_ref: str,
    ) -> TurnOutcome:
        final = await self._graph.ainvoke({
            "utterance": utterance,
            "customer_type": customer_type,
            "customer_ref": customer_ref,
            "conversation": conversation,
        })
        new_conversation: ConversationState = final["conversation"]
        context: ContextBlock | None = final.get("context")
        return TurnOutcome(
            conversation=new_conversation,
            reply=final["reply"],
            slots=final.get("booked_slots") or new_conversation.active_slots,
            record=final.get("record"),
            previous_appointments=context.history.records if context else [],
            error=final.get("error"),
            canned=final.get("intent") is not None,
        )
