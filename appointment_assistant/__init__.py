"""Bank Appointment Assistant — conversational booking for bank branches.

Architecture Overview
=====================

A customer books an appointment (reason, date/time, branch, optionally a
banker) in one of two ways:

1. **Free-form chat** — a LangGraph ``StateGraph`` (``agent.py``) runs one
   turn: canned-intent shortcut, CRM context, one Claude call returning
   ``{"response", "appointmentDetails"}``, lenient JSON parsing, slot merge
   and, once nothing is missing, the booking commit.

2. **Guided flow** — an explicit state machine (``guided.py``):
   Reason → Time → Location → Confirmation → Completed.  Each step is one
   Claude call asked for a specific structured array (``timeSlots``,
   ``locationOptions``).

Key Design Decisions
--------------------
- **State**: each turn receives the session's ``ConversationState`` and
  returns a new one; the session store persists it.  A per-session lock
  serialises concurrent requests for the same session.
- **Fail closed on time**: malformed dates/times raise
  ``InvalidDateTimeError``; nothing is guessed or booked.
- **CRM**: Salesforce REST API via ``httpx``.  Reads retry with exponential
  backoff; the appointment write is sent once and never retried.
- **Conflicts**: a taken slot is reported with alternatives, never
  double-booked.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development).

Package Structure
-----------------
- ``appointment_assistant/agent.py`` — chat-turn LangGraph
- ``appointment_assistant/guided.py`` — guided-flow state machine
- ``appointment_assistant/assistant.py`` — turn boundary (sessions, errors)
- ``appointment_assistant/booking.py`` — conflict check and CRM write
- ``appointment_assistant/context.py`` — customer history context
- ``appointment_assistant/slots.py`` — slot and conversation models
- ``appointment_assistant/normalizer.py`` — date/time normalisation
- ``appointment_assistant/parsing.py`` — JSON reply parsing
- ``appointment_assistant/options.py`` — quick-reply extraction
- ``appointment_assistant/intents.py`` — canned intents
- ``appointment_assistant/config.py`` — configuration from env / SSM
- ``appointment_assistant/services/`` — LLM, CRM, cache, sessions, metrics
- ``appointment_assistant/api/`` — FastAPI routes and Pydantic schemas
- ``appointment_assistant/server.py`` — FastAPI application
- ``appointment_assistant/main.py`` — CLI chat interface
"""
