"""Pydantic schemas for the FastAPI endpoints.

Payloads are camelCase on the wire; snake_case is accepted on input too.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorBody(_CamelModel):
    code: str
    message: str
    alternatives: list[dict[str, Any]] | None = None


class ChatRequest(_CamelModel):
    """Incoming free-form chat message."""

    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )
    query: str = Field(..., min_length=1, max_length=2000, description="The user's message")
    customer_type: str = Field("Guest", description="Regular or Guest")
    customer_ref: str | None = Field(None, max_length=18, description="CRM contact id")


class ChatResponse(_CamelModel):
    session_id: str
    response: str
    appointment_details: dict[str, Any]
    missing_fields: list[str]
    previous_appointments: list[dict[str, Any]] | None = None
    quick_replies: list[str] = Field(default_factory=list)
    error: ErrorBody | None = None


class GuidedFlowRequest(_CamelModel):
    session_id: str = Field(..., min_length=1, max_length=100)
    query: str = Field("", max_length=2000)
    customer_type: str = "Guest"
    guided_step: str | None = None
    action: str = "select"
    customer_ref: str | None = Field(None, max_length=18)


class TimeSlot(BaseModel):
    display: str
    raw: str


class GuidedFlowResponse(_CamelModel):
    session_id: str
    response: str
    guided_step: str
    time_slots: list[TimeSlot] = Field(default_factory=list)
    location_options: list[str] = Field(default_factory=list)
    appointment_details: dict[str, Any] | None = None
    alternatives: list[dict[str, Any]] = Field(default_factory=list)
    quick_replies: list[str] = Field(default_factory=list)
    error: ErrorBody | None = None


class ReasonsResponse(BaseModel):
    reasons: list[str]


class ChatStateResponse(_CamelModel):
    session_id: str
    messages: list[dict[str, str]]
    appointment_details: dict[str, Any]
    guided_step: str
    time_slots: list[TimeSlot] = Field(default_factory=list)
    location_options: list[str] = Field(default_factory=list)
    last_appointment: dict[str, Any] | None = None


class SessionHealthResponse(_CamelModel):
    status: str = "ok"
    session_id: str
    active: bool


class SessionEndResponse(_CamelModel):
    session_id: str
    ended: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "bank-appointment-assistant"


class AppointmentsResponse(_CamelModel):
    customer_ref: str
    appointments: list[dict[str, Any]]
