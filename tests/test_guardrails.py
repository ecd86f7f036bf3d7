import pytest

from guardrails import gate_chat, last_message_text, personalization_keyword
from llm_models import ChatTurn


def _turns(*contents):
    return [ChatTurn(role="user", content=c) for c in contents]


@pytest.mark.parametrize(
    "text, keyword",
    [
        ("Can you show my report?", "my report"),
        ("I want to BOOK APPOINTMENT tomorrow", "book appointment"),
        ("Please remember me next time", "remember me"),
        ("What does a fever mean?", None),
    ],
)
def test_personalization_keyword(text, keyword):
    assert personalization_keyword(text) == keyword


def test_keyword_matches_as_substring():
    # "schedule" also fires inside "rescheduled": substring match, not word match.
    assert personalization_keyword("my flight was rescheduled") == "schedule"


def test_unauthenticated_personal_request_requires_auth():
    decision = gate_chat(_turns("Can you show my report?"), is_authenticated=False)
    assert decision.requires_auth
    assert decision.matched_keyword == "my report"


def test_authenticated_personal_request_passes():
    decision = gate_chat(_turns("Can you show my report?"), is_authenticated=True)
    assert not decision.requires_auth


def test_only_the_last_turn_is_inspected():
    turns = _turns("show my records", "what is hypertension?")
    assert not gate_chat(turns, is_authenticated=False).requires_auth


def test_empty_transcript():
    assert last_message_text([]) == ""
    assert not gate_chat([], is_authenticated=False).requires_auth


def test_gate_is_deterministic():
    turns = _turns("Can I save this for later?")
    assert gate_chat(turns, False) == gate_chat(turns, False)
