"""Shared test fixtures for the booking assistant test suite."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("CRM_ACCESS_TOKEN", "test-crm-token-456")
    os.environ.setdefault("CRM_INSTANCE_URL", "https://example.my.salesforce.com")
    os.environ.setdefault("METRICS_ENABLED", "false")


# ── Collaborator fakes ───────────────────────────────────────────────


class ScriptedLLM:
    """Returns canned replies in order and records every call.

    A reply that is an exception instance is raised instead of returned.
    """

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls: list[dict] = []

    async def complete(self, messages, *, max_tokens=500, temperature=0.5, operation="complete"):
        self.calls.append({
            "messages": list(messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
            "operation": operation,
        })
        if not self.replies:
            raise AssertionError(f"Unexpected LLM call ({operation})")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


class InMemoryCRM:
    """CRM double with the same async surface as ``CRMClient``."""

    def __init__(self, records=None, available=None):
        self.records = list(records or [])
        self.available = list(available or [])
        self.created = []
        self.history_queries: list[str] = []
        self.fail_create: Exception | None = None
        self.fail_reads: Exception | None = None

    @staticmethod
    def _location(value):
        return getattr(value, "value", value)

    async def query_appointments(self, customer_ref):
        if self.fail_reads:
            raise self.fail_reads
        self.history_queries.append(customer_ref)
        return [r for r in self.records if r.customer_ref == customer_ref]

    async def find_appointments(self, start, end, location=None):
        if self.fail_reads:
            raise self.fail_reads
        wanted = self._location(location)
        return [
            r for r in self.records
            if r.timestamp is not None
            and start <= r.timestamp <= end
            and (wanted is None or r.location == wanted)
        ]

    async def find_available_slots(self, start_date, end_date, location=None, limit=5):
        wanted = self._location(location)
        found = [
            s for s in self.available
            if start_date.isoformat() <= s.date <= end_date.isoformat()
            and (wanted is None or s.location == wanted)
        ]
        return found[:limit]

    async def create_appointment(self, appointment):
        from appointment_assistant.slots import AppointmentRecord

        if self.fail_create:
            raise self.fail_create
        self.created.append(appointment)
        record_id = f"a0X{len(self.created):012d}"
        self.records.append(AppointmentRecord(
            id=record_id,
            reason=appointment.reason,
            timestamp=appointment.timestamp,
            location=appointment.location.value,
            banker_id=appointment.banker_id,
            customer_ref=appointment.customer_ref,
            created_at=datetime.now(UTC),
        ))
        return record_id


def llm_json(response: str, **details) -> str:
    """Serialise a model reply in the booking prompt's output shape."""
    return json.dumps({"response": response, "appointmentDetails": details})


@pytest.fixture
def crm():
    return InMemoryCRM()


@pytest.fixture
def mock_crm_response():
    """Factory fixture for creating mock CRM HTTP responses."""

    def _make(data, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
