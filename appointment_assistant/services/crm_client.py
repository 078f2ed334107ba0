"""Async HTTP client for the CRM (Salesforce REST API) appointment store.

Reads go through SOQL ``/query`` with exponential-backoff retries on
transport errors and 5xx responses.  Writes (``create_appointment``) are sent
exactly once: a create is not idempotent, so the caller decides whether to
retry the whole turn.

Objects used:
  * ``Appointment__c`` — Reason_for_Visit__c, Appointment_Time__c (datetime),
    Appointment_Date__c (legacy), Location__c, Banker__c, Contact__c
  * ``Available_Slot__c`` — Date__c, Time__c, Branch__c, Is_Available__c
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, datetime
from typing import Any, Protocol

import httpx

from appointment_assistant.config import CRM_ACCESS_TOKEN, CRM_API_VERSION, CRM_INSTANCE_URL
from appointment_assistant.errors import InvalidDateTimeError
from appointment_assistant.normalizer import combine, format_timestamp, parse_timestamp
from appointment_assistant.services.cache import LRUCache
from appointment_assistant.services.metrics import metrics
from appointment_assistant.slots import AppointmentRecord, AvailableSlot, Location, NewAppointment

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

# ── Cache key prefixes ──────────────────────────────────────────────
_CK_HISTORY = "history:"

_APPOINTMENT_FIELDS = (
    "Id, Reason_for_Visit__c, Appointment_Date__c, Appointment_Time__c, "
    "Location__c, Banker__c, Banker__r.Name, Contact__c, CreatedDate"
)


class CRMAPIError(Exception):
    """Raised when a CRM call fails (after retries, for reads)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


# What a CRMStore call may raise when the system of record is unreachable.
CRM_ERRORS = (CRMAPIError, httpx.HTTPError)


class CRMStore(Protocol):
    """What the booking core needs from the system of record."""

    async def query_appointments(self, customer_ref: str) -> list[AppointmentRecord]: ...

    async def find_appointments(
        self, start: datetime, end: datetime, location: Location | str | None = None,
    ) -> list[AppointmentRecord]: ...

    async def find_available_slots(
        self,
        start_date: date,
        end_date: date,
        location: Location | str | None = None,
        limit: int = 5,
    ) -> list[AvailableSlot]: ...

    async def create_appointment(self, appointment: NewAppointment) -> str: ...


def _soql_quote(value: str) -> str:
    """Quote a string literal for SOQL."""
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _soql_datetime(value: datetime) -> str:
    return format_timestamp(value).split(".")[0] + "Z"


def _location_value(location: Location | str) -> str:
    return location.value if isinstance(location, Location) else str(location)


def _record_timestamp(raw: dict[str, Any]) -> datetime | None:
    """Best-effort timestamp for a stored record.

    Newer records carry a datetime in ``Appointment_Time__c``; legacy ones
    split it into a date plus a clock string.
    """
    time_value = raw.get("Appointment_Time__c")
    date_value = raw.get("Appointment_Date__c")
    if time_value:
        try:
            return parse_timestamp(time_value)
        except InvalidDateTimeError:
            pass
    if date_value and time_value:
        try:
            return combine(date_value, time_value)
        except InvalidDateTimeError:
            logger.debug("Record %s has an unreadable date/time", raw.get("Id"))
    return None


def record_from_crm(raw: dict[str, Any]) -> AppointmentRecord:
    """Map a raw ``Appointment__c`` row onto an ``AppointmentRecord``."""
    banker = raw.get("Banker__r") or {}
    created = raw.get("CreatedDate")
    created_at = None
    if created:
        try:
            created_at = parse_timestamp(created)
        except InvalidDateTimeError:
            created_at = None
    return AppointmentRecord(
        id=raw["Id"],
        reason=raw.get("Reason_for_Visit__c"),
        timestamp=_record_timestamp(raw),
        location=raw.get("Location__c"),
        banker_id=raw.get("Banker__c"),
        banker_name=banker.get("Name"),
        customer_ref=raw.get("Contact__c"),
        created_at=created_at,
    )


class CRMClient:
    """Thin async wrapper around the Salesforce REST API.

    Customer history reads are cached per contact and invalidated by
    ``create_appointment`` for that contact.  Conflict and availability
    lookups are never cached: they must reflect the latest bookings.
    """

    def __init__(
        self,
        token: str | None = None,
        instance_url: str | None = None,
        *,
        api_version: str | None = None,
        cache: LRUCache | None = None,
    ):
        self._token = token or CRM_ACCESS_TOKEN
        self._base_url = (instance_url or CRM_INSTANCE_URL).rstrip("/")
        self._api_path = f"/services/data/{api_version or CRM_API_VERSION}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._cache = cache or LRUCache()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        max_attempts: int = MAX_RETRIES,
    ) -> Any:
        """Execute an HTTP request, retrying transport errors and 5xx up to *max_attempts*.

        Every failure surfaces as ``CRMAPIError``, including non-JSON bodies
        and httpx errors that are not worth retrying.
        """
        operation = f"{method} {path.rsplit('/', 1)[-1] or path}"
        last_error: Exception | None = None
        t0 = time.perf_counter()
        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._client.request(
                    method, f"{self._api_path}{path}", params=params, json=json_body,
                )
                if response.status_code >= 500:
                    raise CRMAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise CRMAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                try:
                    data = response.json()
                except ValueError as exc:
                    raise CRMAPIError(
                        f"Unreadable response body ({response.status_code}): {response.text[:200]!r}",
                        status_code=response.status_code,
                    ) from exc
                metrics.record_success(
                    "crm", operation, latency_ms=(time.perf_counter() - t0) * 1000,
                )
                return data

            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "CRM attempt %d/%d failed (%s)", attempt, max_attempts, type(exc).__name__,
                )
            except httpx.HTTPError as exc:
                metrics.record_failure(
                    "crm", operation, error_type=type(exc).__name__,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                raise CRMAPIError(f"CRM request failed: {exc}") from exc
            except CRMAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "CRM server error on attempt %d/%d", attempt, max_attempts,
                    )
                else:
                    error_type = "4xx" if (exc.status_code or 0) >= 400 else "bad_body"
                    metrics.record_failure(
                        "crm", operation, error_type=error_type,
                        latency_ms=(time.perf_counter() - t0) * 1000,
                    )
                    raise

            if attempt < max_attempts:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        metrics.record_failure(
            "crm", operation,
            error_type=type(last_error).__name__,
            latency_ms=(time.perf_counter() - t0) * 1000,
        )
        raise CRMAPIError(f"CRM request failed after {max_attempts} attempt(s): {last_error}")

    async def _query(self, soql: str) -> list[dict[str, Any]]:
        logger.debug("SOQL: %s", soql)
        data = await self._request("GET", "/query", params={"q": soql})
        return data.get("records", [])

    # ── Public API ───────────────────────────────────────────────────

    async def query_appointments(self, customer_ref: str) -> list[AppointmentRecord]:
        """Prior appointments for one contact, newest first (cached)."""
        cache_key = f"{_CK_HISTORY}{customer_ref}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        rows = await self._query(
            f"SELECT {_APPOINTMENT_FIELDS} FROM Appointment__c "
            f"WHERE Contact__c = {_soql_quote(customer_ref)} "
            "ORDER BY CreatedDate DESC"
        )
        records = [record_from_crm(row) for row in rows]
        self._cache.put(cache_key, records)
        return records

    async def find_appointments(
        self,
        start: datetime,
        end: datetime,
        location: Location | str | None = None,
    ) -> list[AppointmentRecord]:
        """Appointments whose time falls in ``[start, end]``, optionally at one branch."""
        soql = (
            f"SELECT {_APPOINTMENT_FIELDS} FROM Appointment__c "
            f"WHERE Appointment_Time__c >= {_soql_datetime(start)} "
            f"AND Appointment_Time__c <= {_soql_datetime(end)}"
        )
        if location is not None:
            soql += f" AND Location__c = {_soql_quote(_location_value(location))}"
        rows = await self._query(soql + " ORDER BY Appointment_Time__c ASC")
        return [record_from_crm(row) for row in rows]

    async def find_available_slots(
        self,
        start_date: date,
        end_date: date,
        location: Location | str | None = None,
        limit: int = 5,
    ) -> list[AvailableSlot]:
        """Open slots between two dates (inclusive), optionally at one branch."""
        soql = (
            "SELECT Date__c, Time__c, Branch__c FROM Available_Slot__c "
            f"WHERE Date__c >= {start_date.isoformat()} "
            f"AND Date__c <= {end_date.isoformat()} "
            "AND Is_Available__c = true"
        )
        if location is not None:
            soql += f" AND Branch__c = {_soql_quote(_location_value(location))}"
        soql += f" ORDER BY Date__c ASC, Time__c ASC LIMIT {int(limit)}"
        rows = await self._query(soql)
        return [
            AvailableSlot(date=row["Date__c"], time=row["Time__c"], location=row.get("Branch__c"))
            for row in rows
            if row.get("Date__c") and row.get("Time__c")
        ]

    async def create_appointment(self, appointment: NewAppointment) -> str:
        """Create one ``Appointment__c`` record and return its id.  Not retried."""
        payload: dict[str, Any] = {
            "Reason_for_Visit__c": appointment.reason,
            "Appointment_Time__c": format_timestamp(appointment.timestamp),
            "Location__c": appointment.location.value,
            "Contact__c": appointment.customer_ref,
        }
        if appointment.banker_id:
            payload["Banker__c"] = appointment.banker_id

        data = await self._request(
            "POST", "/sobjects/Appointment__c/", json_body=payload, max_attempts=1,
        )
        if not data.get("success", False) or not data.get("id"):
            raise CRMAPIError(f"Appointment create rejected: {data.get('errors') or data}")

        if self._cache.invalidate_prefix(f"{_CK_HISTORY}{appointment.customer_ref}"):
            logger.debug("Cache: invalidated history for %s", appointment.customer_ref)
        logger.info("Created appointment %s", data["id"])
        return data["id"]
