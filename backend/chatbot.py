from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from guardrails import AUTH_REQUIRED_MESSAGE, gate_chat
from llm import UpstreamError, complete_chat
from llm_models import ChatRequest, ChatTurn
from prompting import GREETING, build_chat_messages

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": (
        "authorization, x-client-info, apikey, content-type, x-supabase-client-platform, "
        "x-supabase-client-platform-version, x-supabase-client-runtime, x-supabase-client-runtime-version"
    ),
}

RATE_LIMITED = "Rate limit exceeded. Please try again later."
BILLING_UNAVAILABLE = "Service temporarily unavailable. Please try again later."
SERVICE_UNAVAILABLE = "AI service temporarily unavailable"

CONNECTION_TROUBLE = "I apologize, but I'm having trouble connecting right now. Please try again in a moment."

Completer = Callable[[List[Dict[str, str]]], str]


def _upstream_envelope(exc: UpstreamError) -> Tuple[Dict[str, Any], int]:
    if exc.status_code == 429:
        return {"error": RATE_LIMITED}, 429
    if exc.status_code == 402:
        return {"error": BILLING_UNAVAILABLE}, 402
    return {"error": SERVICE_UNAVAILABLE}, 500


def handle_chat(payload: Any, *, complete: Optional[Completer] = None) -> Tuple[Dict[str, Any], int]:
    """
    One chat turn through the proxy. Always returns (body, status); never raises.
    Gated requests return before any upstream call.
    """
    complete = complete or complete_chat
    try:
        req = ChatRequest.model_validate(payload if payload is not None else {})
        decision = gate_chat(req.messages, req.is_authenticated)
        if decision.requires_auth:
            return {"requiresAuth": True, "message": AUTH_REQUIRED_MESSAGE}, 200
        text = complete(build_chat_messages(req.messages))
        return {"message": text}, 200
    except UpstreamError as exc:
        return _upstream_envelope(exc)
    except Exception as exc:
        logger.exception("Chatbot error")
        return {"error": str(exc) or "Unknown error"}, 500


Transport = Callable[[Dict[str, Any]], Dict[str, Any]]


@dataclass
class ChatTranscript:
    """
    Client-side transcript of one chat widget. The whole history is resent on
    every turn; nothing is kept by the proxy.
    """

    turns: List[ChatTurn] = field(default_factory=lambda: [ChatTurn(role="assistant", content=GREETING)])
    show_auth_prompt: bool = False

    def request_body(self, is_authenticated: bool) -> Dict[str, Any]:
        return {
            "messages": [t.model_dump() for t in self.turns],
            "isAuthenticated": bool(is_authenticated),
        }

    def send(self, text: str, *, is_authenticated: bool, transport: Transport) -> Optional[ChatTurn]:
        content = (text or "").strip()
        if not content:
            return None
        self.turns.append(ChatTurn(role="user", content=content))
        self.show_auth_prompt = False
        try:
            data = transport(self.request_body(is_authenticated))
        except Exception:
            logger.exception("Chatbot transport error")
            return self._reply(CONNECTION_TROUBLE)

        if data.get("requiresAuth"):
            self.show_auth_prompt = True
            return self._reply(str(data.get("message") or AUTH_REQUIRED_MESSAGE))
        if data.get("message"):
            return self._reply(str(data["message"]))
        if data.get("error"):
            return self._reply(f"I apologize, but I encountered an issue: {data['error']}. Please try again.")
        return None

    def _reply(self, content: str) -> ChatTurn:
        turn = ChatTurn(role="assistant", content=content)
        self.turns.append(turn)
        return turn
