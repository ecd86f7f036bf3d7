from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from llm_models import ChatTurn

# Substrings that signal the user wants help tied to their own account.
PERSONALIZED_KEYWORDS = (
    "my report",
    "my records",
    "my prescription",
    "my appointment",
    "my doctor",
    "my patient",
    "my history",
    "my data",
    "my profile",
    "book appointment",
    "schedule",
    "save",
    "store",
    "remember me",
)

AUTH_REQUIRED_MESSAGE = "Please log in to continue personalized assistance."


@dataclass(frozen=True)
class GateDecision:
    requires_auth: bool
    matched_keyword: Optional[str] = None


def last_message_text(messages: Sequence[ChatTurn]) -> str:
    if not messages:
        return ""
    return (messages[-1].content or "").lower()


def personalization_keyword(text: str) -> Optional[str]:
    lowered = (text or "").lower()
    for keyword in PERSONALIZED_KEYWORDS:
        if keyword in lowered:
            return keyword
    return None


def gate_chat(messages: Sequence[ChatTurn], is_authenticated: bool) -> GateDecision:
    """
    Offline check on the latest turn only. This is a heuristic, not access
    control: is_authenticated is whatever the caller claims.
    """
    keyword = personalization_keyword(last_message_text(messages))
    if keyword and not is_authenticated:
        return GateDecision(requires_auth=True, matched_keyword=keyword)
    return GateDecision(requires_auth=False, matched_keyword=keyword)
