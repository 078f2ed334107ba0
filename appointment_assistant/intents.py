"""Canned intents answered without calling the model.

Each intent is a ``(matcher, response)`` pair; the first matcher that
accepts the utterance wins.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

Matcher = Callable[[str], bool]


def phrase_matcher(*phrases: str) -> Matcher:
    """Case-insensitive substring match against any of *phrases*."""
    needles = tuple(p.lower() for p in phrases)

    def _match(utterance: str) -> bool:
        text = utterance.lower()
        return any(needle in text for needle in needles)

    return _match


@dataclass(frozen=True)
class CannedIntent:
    name: str
    matcher: Matcher
    response: str


CANNED_INTENTS: list[CannedIntent] = [
    CannedIntent(
        name="branch_locator",
        matcher=phrase_matcher(
            "Find me a branch within 5 miles with 24hrs Drive-thru ATM service",
        ),
        response=(
            "I found a branch that meets your criteria. It's located at "
            "123 Main St, Brooklyn, NY 11201. If you would like to navigate "
            "there here is the link: https://goo.gl/maps/12345"
        ),
    ),
]


def match_intent(utterance: str, intents: list[CannedIntent] | None = None) -> CannedIntent | None:
    for intent in CANNED_INTENTS if intents is None else intents:
        if intent.matcher(utterance):
            return intent
    return None
