"""FastAPI server for the bank appointment assistant.

Run with:
    uvicorn appointment_assistant.server:app --reload --host 0.0.0.0 --port 3000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from appointment_assistant.api.routes import router
from appointment_assistant.assistant import BookingAssistant
from appointment_assistant.config import (
    CORS_ORIGINS,
    OPTIONS_MODEL_NAME,
    SERVER_HOST,
    SERVER_PORT,
    SESSION_TTL_SECONDS,
)
from appointment_assistant.services.crm_client import CRMClient
from appointment_assistant.services.llm import LLMClient
from appointment_assistant.services.metrics import metrics
from appointment_assistant.services.session_store import InMemorySessionStore

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the collaborators and the assistant once.

    Shutdown: close the CRM connection pool and flush buffered metrics.
    """
    crm = CRMClient()
    application.state.assistant = BookingAssistant(
        llm=LLMClient(),
        crm=crm,
        sessions=InMemorySessionStore(ttl_seconds=SESSION_TTL_SECONDS),
        options_llm=LLMClient(OPTIONS_MODEL_NAME),
    )
    logger.info("Booking assistant ready.")
    yield
    await crm.aclose()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Bank Appointment Assistant",
    description=(
        "Conversational appointment booking for bank branches: "
        "free-form chat and a guided step-by-step flow."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the web frontend) ──────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header and prefixed
    on the per-request log lines.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Bank Appointment Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting booking API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "appointment_assistant.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
