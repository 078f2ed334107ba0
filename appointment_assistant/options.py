"""Quick-reply extraction: a second, cheap LLM pass over a reply.

``extract`` turns the assistant's prose into at most three selectable
options plus a trailing ``OTHER_OPTION``.  An empty list means "no usable
options, fall back to free text".  This pass is auxiliary: if it fails, the
turn goes on without quick replies.
"""

from __future__ import annotations

import json
import logging
import re

from appointment_assistant.errors import LLMUnavailableError
from appointment_assistant.prompts import get_options_prompt
from appointment_assistant.services.llm import CompletionClient

logger = logging.getLogger(__name__)

MAX_OPTIONS = 3
OTHER_OPTION = "Other"
NOT_FOUND = "NotFound"

_ARRAY_RE = re.compile(r"\[[\s\S]*?\]")
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$")


def _candidates(raw: str) -> list[str]:
    match = _ARRAY_RE.search(raw)
    if match:
        try:
            values = json.loads(match.group(0))
        except json.JSONDecodeError:
            values = None
        if isinstance(values, list):
            return [v.strip() for v in values if isinstance(v, str)]
    return [m.group(1) for line in raw.splitlines() if (m := _BULLET_RE.match(line))]


def parse_options(raw: str | None) -> list[str]:
    """Bound the model's option list; ``NotFound`` or nothing usable → ``[]``."""
    if not raw or NOT_FOUND.lower() in raw.lower():
        return []
    options: list[str] = []
    for value in _candidates(raw):
        if value and value not in options and value.lower() != OTHER_OPTION.lower():
            options.append(value)
        if len(options) == MAX_OPTIONS:
            break
    if not options:
        return []
    return [*options, OTHER_OPTION]


class OptionExtractor:
    def __init__(self, llm: CompletionClient):
        self._llm = llm

    async def extract(self, text: str) -> list[str]:
        if not text or not text.strip():
            return []
        try:
            raw = await self._llm.complete(
                [{"role": "user", "content": get_options_prompt(text)}],
                max_tokens=100,
                temperature=0.0,
                operation="extract_options",
            )
        except LLMUnavailableError as exc:
            logger.warning("Option extraction failed, continuing without quick replies: %s", exc)
            return []
        options = parse_options(raw)
        logger.debug("Extracted %d quick reply option(s)", len(options))
        return options
