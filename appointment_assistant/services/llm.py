"""Anthropic chat-completion client used by every LLM round-trip.

The booking core speaks in plain ``{role, content}`` dicts; this module
turns them into LangChain messages, calls ``ChatAnthropic.ainvoke`` and
returns the reply text.  One ``ChatAnthropic`` instance is built per
(model, temperature, max_tokens) combination and reused.

LLM calls are never retried here: a failure becomes
``LLMUnavailableError`` and ends the turn.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from appointment_assistant.config import ANTHROPIC_API_KEY, LLM_TIMEOUT_SECONDS, MODEL_NAME
from appointment_assistant.errors import LLMUnavailableError
from appointment_assistant.services.metrics import metrics

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete(
        self,
        messages: Sequence[dict[str, str]],
        *,
        max_tokens: int,
        temperature: float,
        operation: str,
    ) -> str: ...


def _build_chat_model(model: str, temperature: float, max_tokens: int) -> ChatAnthropic:
    return ChatAnthropic(
        model=model,
        api_key=ANTHROPIC_API_KEY,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=LLM_TIMEOUT_SECONDS,
        max_retries=0,
    )


def to_langchain_messages(messages: Sequence[dict[str, str]]) -> list[BaseMessage]:
    """Convert ``{role, content}`` dicts to LangChain messages.

    Anthropic accepts a single system prompt, so every ``system`` entry is
    merged (in order) into one leading ``SystemMessage``.
    """
    system_parts: list[str] = []
    chat: list[BaseMessage] = []
    for message in messages:
        role = message.get("role")
        content = message.get("content", "")
        if role == "system":
            system_parts.append(content)
        elif role == "assistant":
            chat.append(AIMessage(content=content))
        else:
            chat.append(HumanMessage(content=content))
    if system_parts:
        return [SystemMessage(content="\n\n".join(system_parts)), *chat]
    return chat


def _reply_text(response: BaseMessage) -> str:
    content = response.content
    if isinstance(content, list):
        # Content blocks: keep only the text parts
        return "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        ).strip()
    return str(content).strip()


class LLMClient:
    """Async completion client backed by ``ChatAnthropic``."""

    def __init__(
        self,
        model: str | None = None,
        *,
        model_factory: Callable[[str, float, int], ChatAnthropic] = _build_chat_model,
    ):
        self.model = model or MODEL_NAME
        self._factory = model_factory
        self._models: dict[tuple[float, int], ChatAnthropic] = {}

    def _model_for(self, temperature: float, max_tokens: int) -> ChatAnthropic:
        key = (temperature, max_tokens)
        if key not in self._models:
            self._models[key] = self._factory(self.model, temperature, max_tokens)
        return self._models[key]

    async def complete(
        self,
        messages: Sequence[dict[str, str]],
        *,
        max_tokens: int = 500,
        temperature: float = 0.5,
        operation: str = "complete",
    ) -> str:
        """Send *messages* and return the model's reply text."""
        chat_model = self._model_for(temperature, max_tokens)
        lc_messages = to_langchain_messages(messages)
        logger.debug("LLM %s (%s): %d message(s)", operation, self.model, len(lc_messages))
        t0 = time.perf_counter()
        try:
            response = await chat_model.ainvoke(lc_messages)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", operation,
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.warning("LLM %s failed after %.0fms: %s", operation, elapsed, exc)
            raise LLMUnavailableError(f"LLM call '{operation}' failed: {exc}") from exc

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", operation, latency_ms=elapsed)
        text = _reply_text(response)
        logger.debug("LLM %s responded in %.0fms (%d chars)", operation, elapsed, len(text))
        return text
