from __future__ import annotations

import pytest
import requests

from xlsa_web.adapters.ai_backend import OpenRouterClient
from xlsa_web.config.ini_config import AiSettings
from xlsa_web.domain.outcome import ErrorKind

MESSAGES = [{"role": "user", "content": "hello"}]


# -----------------------------
# Test doubles
# -----------------------------
class FakeResponse:
    def __init__(self, status_code: int = 200, body=None, bad_json: bool = False):
        self.status_code = status_code
        self._body = body
        self._bad_json = bad_json

    def json(self):
        if self._bad_json:
            raise ValueError("not json")
        return self._body


class FakeSession:
    def __init__(self, response=None, exc: Exception | None = None):
        self.response = response
        self.exc = exc
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.response


def make_client(session: FakeSession, api_key: str = "sk-test") -> OpenRouterClient:
    settings = AiSettings(base_url="https://ai.example/api/v1/", api_key=api_key, timeout_seconds=5)
    return OpenRouterClient(settings, session=session)


# -----------------------------
# Tests
# -----------------------------
def test_successful_reply_is_parsed():
    body = {
        "model": "anthropic/claude-3-haiku",
        "choices": [{"message": {"role": "assistant", "content": "All good"}}],
        "usage": {"total_tokens": 321},
    }
    session = FakeSession(FakeResponse(200, body))

    reply = make_client(session).send("anthropic/claude-3-haiku", MESSAGES, {"temperature": 0.1}).unwrap()

    assert reply.content == "All good"
    assert reply.tokens_used == 321
    call = session.calls[0]
    assert call["url"] == "https://ai.example/api/v1/chat/completions"
    assert call["headers"]["Authorization"] == "Bearer sk-test"
    assert call["json"]["temperature"] == 0.1
    assert call["timeout"] == 5


def test_no_authorization_header_without_key():
    session = FakeSession(FakeResponse(200, {"choices": [{"message": {"content": "x"}}]}))
    make_client(session, api_key="").send("m", MESSAGES)
    assert "Authorization" not in session.calls[0]["headers"]


@pytest.mark.parametrize(
    "session",
    [
        FakeSession(exc=requests.Timeout("slow")),
        FakeSession(exc=requests.ConnectionError("down")),
        FakeSession(FakeResponse(503, {"error": "busy"})),
        FakeSession(FakeResponse(401, {"error": "bad key"})),
        FakeSession(FakeResponse(200, bad_json=True)),
        FakeSession(FakeResponse(200, ["not", "an", "object"])),
        FakeSession(FakeResponse(200, {"choices": []})),
        FakeSession(FakeResponse(200, {"choices": [{"message": {}}]})),
        FakeSession(FakeResponse(200, {"choices": [{"message": "hi"}]})),
        FakeSession(FakeResponse(200, {"choices": {"0": {"message": {"content": "x"}}}})),
        FakeSession(FakeResponse(200, {"choices": ["hi"]})),
    ],
    ids=[
        "timeout", "transport", "http-503", "http-401", "bad-json", "not-object", "no-choices", "no-content",
        "message-not-object", "choices-not-list", "choice-not-object",
    ],
)
def test_failures_are_provider_errors(session):
    got = make_client(session).send("m", MESSAGES)
    assert got.is_err()
    assert got.kind == ErrorKind.PROVIDER
    assert got.error.details["provider"] == "openrouter"


def test_empty_messages_are_rejected_without_request():
    session = FakeSession(FakeResponse(200, {}))
    got = make_client(session).send("m", [])
    assert got.kind == ErrorKind.INVALID_INPUT
    assert session.calls == []


@pytest.mark.parametrize("usage", [[1, 2], "lots", {"total_tokens": "many"}, {"total_tokens": None}])
def test_malformed_usage_counts_as_zero_tokens(usage):
    body = {"choices": [{"message": {"content": "All good"}}], "usage": usage}
    reply = make_client(FakeSession(FakeResponse(200, body))).send("m", MESSAGES).unwrap()
    assert reply.content == "All good"
    assert reply.tokens_used == 0
