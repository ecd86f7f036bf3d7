from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from openai import APIConnectionError, APIStatusError, OpenAI

logger = logging.getLogger(__name__)

GATEWAY_MODEL = "google/gemini-3-flash-preview"
MAX_OUTPUT_TOKENS = 1000
DEFAULT_GATEWAY_URL = "https://ai.gateway.lovable.dev/v1"
FALLBACK_REPLY = "I apologize, but I couldn't generate a response. Please try again."


class UpstreamError(RuntimeError):
    """The chat-completions gateway answered with a non-success status (or not at all)."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_text: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


def _gateway_api_key() -> str:
    api_key = os.getenv("LOVABLE_API_KEY") or os.getenv("AI_GATEWAY_API_KEY")
    if not api_key:
        raise RuntimeError("LOVABLE_API_KEY is not configured")
    return api_key


def _get_gateway_client() -> OpenAI:
    base_url = os.getenv("AI_GATEWAY_URL") or DEFAULT_GATEWAY_URL
    timeout_s = float(os.getenv("AI_GATEWAY_TIMEOUT_S", "60"))
    # No retries: a 429 must reach the caller as-is.
    return OpenAI(api_key=_gateway_api_key(), base_url=base_url, max_retries=0, timeout=timeout_s)


def _first_choice_text(resp: Any) -> Optional[str]:
    choices = getattr(resp, "choices", None)
    if not choices:
        return None
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    if isinstance(content, str) and content:
        return content
    return None


def complete_chat(messages: List[Dict[str, str]]) -> str:
    """
    One chat-completions call with the prepared message list.
    Returns the first completion's text, or a fixed apology if the shape is off.
    """
    client = _get_gateway_client()
    try:
        resp = client.chat.completions.create(
            model=GATEWAY_MODEL,
            messages=messages,
            max_tokens=MAX_OUTPUT_TOKENS,
        )
    except APIStatusError as exc:
        body = exc.response.text if exc.response is not None else ""
        logger.error("AI gateway error: %s %s", exc.status_code, body)
        raise UpstreamError("AI gateway error", status_code=exc.status_code, response_text=body) from exc
    except APIConnectionError as exc:
        logger.error("AI gateway unreachable: %s", exc)
        raise UpstreamError("AI gateway unreachable") from exc

    return _first_choice_text(resp) or FALLBACK_REPLY
