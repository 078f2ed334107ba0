"""Error taxonomy for the booking assistant.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer should answer with.  ``message`` is the diagnostic text for logs;
``user_message`` is the text shown to the customer (defaults to a
per-class, non-technical sentence).

All of these are caught at the turn boundary (``assistant.py``) and turned
into a structured response; none should escape as an unhandled fault.
"""

from __future__ import annotations

from typing import Any


class AssistantError(Exception):
    """Base class for every error the assistant reports to its callers."""

    code = "ASSISTANT_ERROR"
    status_code = 500
    default_user_message = "Sorry, something went wrong. Please try again."

    def __init__(self, message: str, *, user_message: str | None = None):
        self.message = message
        self.user_message = user_message or self.default_user_message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialisable ``{code, message}`` payload for API responses."""
        return {"code": self.code, "message": self.user_message}


class ConfigurationError(AssistantError):
    """A required credential or endpoint is missing.  Fatal for the process."""

    code = "CONFIGURATION_ERROR"
    default_user_message = "The booking service is not configured correctly."


class SessionExpiredError(AssistantError):
    """The caller's session expired; it must refresh before continuing."""

    code = "SESSION_EXPIRED"
    status_code = 401
    default_user_message = "Your session has expired. Please refresh and start again."


class InvalidDateTimeError(AssistantError):
    """A date/time could not be normalised.  Never guessed, never booked."""

    code = "INVALID_DATETIME"
    status_code = 400
    default_user_message = (
        "I couldn't understand that date or time. "
        "Could you give me the date as YYYY-MM-DD and a time like 2:30 PM?"
    )


class InvalidTimeFormatError(InvalidDateTimeError):
    """A clock time string did not match any accepted format."""


class LLMParseError(AssistantError):
    """The model's reply could not be coerced into the expected shape.

    The turn degrades to an empty-details response, so the HTTP status
    stays 200.
    """

    code = "LLM_PARSE_ERROR"
    status_code = 200
    default_user_message = "I didn't quite catch the appointment details. Could you rephrase?"


class ConflictError(AssistantError):
    """The requested slot is already booked at that location."""

    code = "SLOT_CONFLICT"
    status_code = 409
    default_user_message = "That time is already booked."

    def __init__(
        self,
        message: str,
        *,
        alternatives: list[Any] | None = None,
        user_message: str | None = None,
    ):
        self.alternatives = list(alternatives or [])
        super().__init__(message, user_message=user_message)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["alternatives"] = [
            alt.model_dump(mode="json") if hasattr(alt, "model_dump") else alt
            for alt in self.alternatives
        ]
        return payload


class PersistenceError(AssistantError):
    """The CRM rejected or failed the write.  Never retried automatically."""

    code = "PERSISTENCE_ERROR"
    status_code = 502
    default_user_message = (
        "I couldn't save your appointment right now. Please try again in a moment."
    )


class LLMUnavailableError(AssistantError):
    """The LLM completion call failed (timeout, auth, provider error)."""

    code = "LLM_UNAVAILABLE"
    status_code = 502
    default_user_message = (
        "Our assistant is temporarily unavailable. Please try again in a moment."
    )


class CRMUnavailableError(AssistantError):
    """A CRM read failed while assembling context or checking conflicts."""

    code = "CRM_UNAVAILABLE"
    status_code = 502
    default_user_message = (
        "I couldn't reach our appointment system. Please try again in a moment."
    )


class InvalidSelectionError(AssistantError):
    """A guided-flow pick is not usable for the current step."""

    code = "INVALID_SELECTION"
    status_code = 400
    default_user_message = "Please choose one of the options shown."


class GuidedStepMismatchError(AssistantError):
    """The client's idea of the guided step disagrees with the session's."""

    code = "GUIDED_STEP_MISMATCH"
    status_code = 409
    default_user_message = (
        "It looks like this booking moved on in another window. "
        "Please continue from the current step."
    )
