"""Turn boundary: session handling around the chat and guided processors.

``BookingAssistant`` is what the API routes and the CLI talk to.  For every
turn it

  1. takes the per-session lock (concurrent turns run one at a time),
  2. loads the ``ConversationState`` (expiry is checked here, before any
     collaborator call),
  3. runs the chat graph or the guided flow,
  4. saves the returned state.

Every ``AssistantError`` is converted into a result with ``error`` set and
a user-facing reply; when that happens the stored state is left untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from appointment_assistant.agent import TurnProcessor
from appointment_assistant.booking import BookingCommitter
from appointment_assistant.config import CRM_DEFAULT_CONTACT_ID
from appointment_assistant.context import ContextAssembler
from appointment_assistant.errors import AssistantError, CRMUnavailableError, InvalidSelectionError
from appointment_assistant.guided import GUIDED_REASONS, GuidedAction, GuidedFlow, time_slot_view
from appointment_assistant.options import OptionExtractor
from appointment_assistant.services.crm_client import CRM_ERRORS, CRMStore
from appointment_assistant.services.llm import CompletionClient
from appointment_assistant.services.metrics import metrics
from appointment_assistant.services.session_store import SessionStore
from appointment_assistant.slots import ConversationState, CustomerType, GuidedStep

logger = logging.getLogger(__name__)


@dataclass
class ChatResult:
    session_id: str
    reply: str
    details: dict[str, Any]
    missing_fields: list[str]
    previous_appointments: list[dict[str, Any]] | None = None
    quick_replies: list[str] = field(default_factory=list)
    error: AssistantError | None = None


@dataclass
class GuidedResult:
    session_id: str
    reply: str
    step: GuidedStep
    time_slots: list[dict[str, str]] = field(default_factory=list)
    location_options: list[str] = field(default_factory=list)
    details: dict[str, Any] | None = None
    alternatives: list[dict[str, Any]] = field(default_factory=list)
    quick_replies: list[str] = field(default_factory=list)
    error: AssistantError | None = None


@dataclass
class StateView:
    session_id: str
    messages: list[dict[str, str]]
    details: dict[str, Any]
    step: GuidedStep
    time_slots: list[dict[str, str]]
    location_options: list[str]
    last_appointment: dict[str, Any] | None


def _outcome_name(error: AssistantError | None, booked: bool) -> str:
    if error is not None:
        return error.code.lower()
    return "booked" if booked else "in_progress"


class BookingAssistant:
    def __init__(
        self,
        llm: CompletionClient,
        crm: CRMStore,
        sessions: SessionStore,
        *,
        options_llm: CompletionClient | None = None,
        default_customer_ref: str = CRM_DEFAULT_CONTACT_ID,
    ):
        committer = BookingCommitter(crm)
        self._crm = crm
        self._sessions = sessions
        self._extractor = OptionExtractor(options_llm or llm)
        self._turns = TurnProcessor(llm, ContextAssembler(crm), committer)
        self._guided = GuidedFlow(llm, committer, self._extractor)
        self._default_customer_ref = default_customer_ref

    @property
    def reasons(self) -> list[str]:
        return list(GUIDED_REASONS)

    @property
    def default_customer_ref(self) -> str:
        return self._default_customer_ref

    async def _load(self, session_id: str) -> ConversationState:
        conversation = await self._sessions.get(session_id)
        if conversation is None:
            logger.info("Starting session %s", session_id)
            return ConversationState(session_id=session_id)
        return conversation

    # ── Free-form chat ───────────────────────────────────────────────

    async def chat(
        self,
        session_id: str,
        query: str,
        customer_type: str | CustomerType | None = None,
        customer_ref: str | None = None,
    ) -> ChatResult:
        kind = CustomerType.parse(customer_type)
        ref = customer_ref or self._default_customer_ref
        conversation: ConversationState | None = None

        async with self._sessions.lock(session_id):
            try:
                conversation = await self._load(session_id)
                outcome = await self._turns.process_turn(query, conversation, kind, ref)
            except AssistantError as exc:
                logger.warning("Chat turn failed for %s: %s", session_id, exc.message)
                metrics.record_turn_outcome("chat", _outcome_name(exc, False))
                slots = conversation.active_slots if conversation else None
                return ChatResult(
                    session_id=session_id,
                    reply=exc.user_message,
                    details=slots.to_details() if slots else {},
                    missing_fields=slots.missing_fields if slots else [],
                    error=exc,
                )
            await self._sessions.save(outcome.conversation)

        metrics.record_turn_outcome(
            "chat", "canned" if outcome.canned else _outcome_name(outcome.error, outcome.record is not None),
        )
        quick_replies: list[str] = []
        if outcome.missing_fields and outcome.error is None and not outcome.canned:
            quick_replies = await self._extractor.extract(outcome.reply)

        previous = None
        if kind is CustomerType.REGULAR and not outcome.canned:
            previous = [record.to_details() for record in outcome.previous_appointments]

        return ChatResult(
            session_id=session_id,
            reply=outcome.reply,
            details=outcome.details,
            missing_fields=outcome.missing_fields,
            previous_appointments=previous,
            quick_replies=quick_replies,
            error=outcome.error,
        )

    # ── Guided flow ──────────────────────────────────────────────────

    async def guided(
        self,
        session_id: str,
        query: str,
        customer_type: str | CustomerType | None = None,
        guided_step: str | None = None,
        action: str = GuidedAction.SELECT.value,
        customer_ref: str | None = None,
    ) -> GuidedResult:
        ref = customer_ref or self._default_customer_ref
        logger.debug("Guided turn for %s (%s)", session_id, CustomerType.parse(customer_type).value)
        conversation: ConversationState | None = None

        async with self._sessions.lock(session_id):
            try:
                try:
                    guided_action = GuidedAction(str(action).lower())
                except ValueError:
                    raise InvalidSelectionError(f"Unknown guided action {action!r}") from None
                conversation = await self._load(session_id)
                outcome = await self._guided.step(
                    conversation,
                    query,
                    customer_ref=ref,
                    action=guided_action,
                    client_step=guided_step,
                )
            except AssistantError as exc:
                logger.warning("Guided turn failed for %s: %s", session_id, exc.message)
                metrics.record_turn_outcome("guided", _outcome_name(exc, False))
                return GuidedResult(
                    session_id=session_id,
                    reply=exc.user_message,
                    step=conversation.guided_step if conversation else GuidedStep.NONE,
                    details=conversation.active_slots.to_details() if conversation else None,
                    error=exc,
                )
            await self._sessions.save(outcome.conversation)

        metrics.record_turn_outcome("guided", _outcome_name(outcome.error, outcome.record is not None))
        return GuidedResult(
            session_id=session_id,
            reply=outcome.reply,
            step=outcome.step,
            time_slots=outcome.time_slots,
            location_options=outcome.location_options,
            details=outcome.details,
            alternatives=[alt.model_dump(mode="json") for alt in outcome.alternatives],
            quick_replies=outcome.quick_replies,
            error=outcome.error,
        )

    # ── Session ──────────────────────────────────────────────────────

    async def state(self, session_id: str) -> StateView:
        """Replay view of a session: visible transcript plus current details."""
        conversation = await self._load(session_id)
        last = conversation.last_appointment
        return StateView(
            session_id=session_id,
            messages=conversation.visible_messages(),
            details=conversation.active_slots.to_details(),
            step=conversation.guided_step,
            time_slots=[time_slot_view(raw) for raw in conversation.offered_time_slots],
            location_options=list(conversation.offered_locations),
            last_appointment=last.to_details() if last else None,
        )

    async def check_session(self, session_id: str) -> bool:
        """True if the session holds a conversation; raises if it expired."""
        return await self._sessions.get(session_id) is not None

    async def end_session(self, session_id: str) -> bool:
        async with self._sessions.lock(session_id):
            return await self._sessions.destroy(session_id)

    # ── Appointments ─────────────────────────────────────────────────

    async def appointments(self, customer_ref: str | None = None) -> list[dict[str, Any]]:
        """Stored appointments for one customer, newest first."""
        ref = customer_ref or self._default_customer_ref
        try:
            records = await self._crm.query_appointments(ref)
        except CRM_ERRORS as exc:
            raise CRMUnavailableError(f"Appointment listing failed for {ref}: {exc}") from exc
        return [record.to_details() for record in records]
