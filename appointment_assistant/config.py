"""Centralized configuration for the bank appointment assistant.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/bank-appointments/<VARIABLE_NAME>``.
A required value that cannot be resolved raises ``ConfigurationError`` at
import time: the process must not start half-configured.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

from appointment_assistant.errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))
_SSM_PREFIX = "/bank-appointments"


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"{_SSM_PREFIX}/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise ``ConfigurationError``."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise ConfigurationError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store {_SSM_PREFIX}/{name} (AWS)."
    )


def _int_env(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid integer for {name}: {raw!r}") from None


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")

# Cheap model for the second-pass quick-reply extraction
OPTIONS_MODEL_NAME: str = os.getenv("OPTIONS_MODEL_NAME", "claude-haiku-4-5")
LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

# ── CRM (Salesforce REST API) ───────────────────────────────────────
CRM_ACCESS_TOKEN: str = _require_env("CRM_ACCESS_TOKEN")
CRM_INSTANCE_URL: str = _require_env("CRM_INSTANCE_URL")
CRM_API_VERSION: str = os.getenv("CRM_API_VERSION", "v59.0")

# Contact record that bookings are filed under when the caller has no
# customer reference of their own.
CRM_DEFAULT_CONTACT_ID: str = os.getenv("CRM_DEFAULT_CONTACT_ID", "003dM000005H5A7QAK")

# ── Conversation ────────────────────────────────────────────────────
SESSION_TTL_SECONDS: int = _int_env("SESSION_TTL_SECONDS", "3600")
MAX_TRANSCRIPT_TURNS: int = _int_env("MAX_TRANSCRIPT_TURNS", "20")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _int_env("SERVER_PORT", "3000")
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:5173",
).split(",")
