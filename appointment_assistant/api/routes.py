"""FastAPI route definitions for the booking assistant API."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from appointment_assistant.api.schemas import (
    AppointmentsResponse,
    ChatRequest,
    ChatResponse,
    ChatStateResponse,
    ErrorBody,
    GuidedFlowRequest,
    GuidedFlowResponse,
    HealthResponse,
    ReasonsResponse,
    SessionEndResponse,
    SessionHealthResponse,
)
from appointment_assistant.errors import AssistantError

logger = logging.getLogger(__name__)

router = APIRouter()

_INTERNAL_ERROR = "An internal error occurred. Please try again."


def _get_assistant(request: Request):
    """Retrieve the ``BookingAssistant`` built during the FastAPI lifespan."""
    assistant = getattr(request.app.state, "assistant", None)
    if assistant is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return assistant


def _error_body(error: AssistantError | None) -> ErrorBody | None:
    return ErrorBody(**error.to_dict()) if error is not None else None


def _respond(payload: BaseModel, error: AssistantError | None):
    """Send *payload* with the error's HTTP status, or 200 when there is none."""
    if error is None or error.status_code == 200:
        return payload
    return JSONResponse(
        status_code=error.status_code,
        content=payload.model_dump(mode="json", by_alias=True),
    )


def _error_response(error: AssistantError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={"error": error.to_dict()},
    )


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Process one free-form chat turn.

    Domain errors (conflict, invalid date/time, expired session...) come
    back as a normal response body with ``error`` set and the matching
    HTTP status.  Anything else is logged and answered with a generic 500.
    """
    assistant = _get_assistant(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        result = await assistant.chat(
            request.session_id,
            request.query,
            customer_type=request.customer_type,
            customer_ref=request.customer_ref,
        )
    except Exception as e:
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR) from e

    if result.error is not None:
        logger.info("[%s] Chat turn ended with %s", request_id, result.error.code)
    payload = ChatResponse(
        session_id=result.session_id,
        response=result.reply,
        appointment_details=result.details,
        missing_fields=result.missing_fields,
        previous_appointments=result.previous_appointments,
        quick_replies=result.quick_replies,
        error=_error_body(result.error),
    )
    return _respond(payload, result.error)


@router.post("/guided-flow", response_model=GuidedFlowResponse)
async def guided_flow(request: GuidedFlowRequest, http_request: Request):
    """Advance the guided booking flow by one step."""
    assistant = _get_assistant(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        result = await assistant.guided(
            request.session_id,
            request.query,
            customer_type=request.customer_type,
            guided_step=request.guided_step,
            action=request.action,
            customer_ref=request.customer_ref,
        )
    except Exception as e:
        logger.exception("[%s] Error processing guided-flow request", request_id)
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR) from e

    if result.error is not None:
        logger.info("[%s] Guided step ended with %s", request_id, result.error.code)
    payload = GuidedFlowResponse(
        session_id=result.session_id,
        response=result.reply,
        guided_step=result.step.value,
        time_slots=result.time_slots,
        location_options=result.location_options,
        appointment_details=result.details,
        alternatives=result.alternatives,
        quick_replies=result.quick_replies,
        error=_error_body(result.error),
    )
    return _respond(payload, result.error)


@router.get("/guided-flow/reasons", response_model=ReasonsResponse)
async def guided_reasons(http_request: Request):
    """The fixed list of visit reasons offered at the first guided step."""
    return ReasonsResponse(reasons=_get_assistant(http_request).reasons)


@router.get("/chat/state", response_model=ChatStateResponse)
async def chat_state(http_request: Request, session_id: str = Query(..., alias="sessionId")):
    """Replay the visible transcript and current details of a session."""
    assistant = _get_assistant(http_request)
    try:
        view = await assistant.state(session_id)
    except AssistantError as exc:
        return _error_response(exc)
    return ChatStateResponse(
        session_id=view.session_id,
        messages=view.messages,
        appointment_details=view.details,
        guided_step=view.step.value,
        time_slots=view.time_slots,
        location_options=view.location_options,
        last_appointment=view.last_appointment,
    )


@router.get("/session-health", response_model=SessionHealthResponse)
async def session_health(http_request: Request, session_id: str = Query(..., alias="sessionId")):
    """200 while the session is usable; 401 ``SESSION_EXPIRED`` once it is not."""
    assistant = _get_assistant(http_request)
    try:
        active = await assistant.check_session(session_id)
    except AssistantError as exc:
        return _error_response(exc)
    return SessionHealthResponse(session_id=session_id, active=active)


@router.delete("/session/{session_id}", response_model=SessionEndResponse)
async def end_session(session_id: str, http_request: Request):
    """Forget a conversation (logout)."""
    ended = await _get_assistant(http_request).end_session(session_id)
    return SessionEndResponse(session_id=session_id, ended=ended)


@router.get("/appointments", response_model=AppointmentsResponse)
async def list_appointments(
    http_request: Request,
    customer_ref: str | None = Query(None, alias="customerRef", max_length=18),
):
    """A customer's stored appointments, newest first."""
    assistant = _get_assistant(http_request)
    ref = customer_ref or assistant.default_customer_ref
    try:
        appointments = await assistant.appointments(ref)
    except AssistantError as exc:
        return _error_response(exc)
    return AppointmentsResponse(customer_ref=ref, appointments=appointments)
