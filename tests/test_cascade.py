import asyncio
from typing import Any

import httpx
import openai
import pytest

from reqflow.backends import (
    ModelCandidate,
    ModelCascade,
    ModelClient,
    ModelInvocationError,
    ModelUnavailable,
    OpenAIModelClient,
    RenderedPrompt,
    RetryPolicy,
)

PROMPT = RenderedPrompt(system="system", user="user", intent="sdlc_guidance")
FAST = RetryPolicy(max_retries=1, backoff_seconds=0.0, attempt_timeout_seconds=1.0)


class ScriptedClient(ModelClient):
    """Plays back one outcome per call: a string answer or an exception."""

    name = "scripted"

    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[str] = []

    async def generate(self, prompt: RenderedPrompt, *, model: str) -> str:
        _ = prompt
        self.calls.append(model)
        outcome = self.outcomes.pop(0) if self.outcomes else ""
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class SlowClient(ModelClient):
    name = "slow"

    async def generate(self, prompt: RenderedPrompt, *, model: str) -> str:
        _ = prompt, model
        await asyncio.sleep(5)
        return "late"


def test_cascade_stops_at_first_success() -> None:
    first = ScriptedClient(["answer from first"])
    second = ScriptedClient(["never used"])
    cascade = ModelCascade(
        [ModelCandidate("a", first, "model-a"), ModelCandidate("b", second, "model-b")],
        retry_policy=FAST,
    )

    result = asyncio.run(cascade.generate(PROMPT))

    assert result.text == "answer from first"
    assert result.model == "model-a"
    assert result.attempts == 1
    assert second.calls == []


def test_cascade_retries_then_falls_back_with_events() -> None:
    events: list[dict[str, Any]] = []
    first = ScriptedClient(
        [
            ModelInvocationError("overloaded", backend="a", retriable=True),
            ModelInvocationError("overloaded", backend="a", retriable=True),
        ]
    )
    second = ScriptedClient(["fallback answer"])
    cascade = ModelCascade(
        [ModelCandidate("a", first, "model-a"), ModelCandidate("b", second, "model-b")],
        retry_policy=FAST,
        event_hook=events.append,
    )

    result = asyncio.run(cascade.generate(PROMPT))

    assert result.text == "fallback answer"
    assert result.candidate == "b"
    assert first.calls == ["model-a", "model-a"]
    assert len(result.errors) == 2
    event_names = [event["event"] for event in events]
    assert "model_retry" in event_names
    assert "model_attempt_failed" in event_names
    assert "model_fallback_success" in event_names


def test_non_retriable_error_skips_remaining_retries() -> None:
    first = ScriptedClient([ModelInvocationError("bad request", retriable=False)])
    second = ScriptedClient(["ok"])
    cascade = ModelCascade(
        [ModelCandidate("a", first, "model-a"), ModelCandidate("b", second, "model-b")],
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0),
    )

    result = asyncio.run(cascade.generate(PROMPT))

    assert first.calls == ["model-a"]
    assert result.model == "model-b"


def test_empty_answer_moves_to_next_candidate() -> None:
    first = ScriptedClient(["   "])
    second = ScriptedClient(["real answer"])
    cascade = ModelCascade(
        [ModelCandidate("a", first, "model-a"), ModelCandidate("b", second, "model-b")],
        retry_policy=FAST,
    )

    assert asyncio.run(cascade.generate(PROMPT)).text == "real answer"
    assert first.calls == ["model-a"]


def test_exhausted_cascade_raises_model_unavailable() -> None:
    events: list[dict[str, Any]] = []
    failing = ScriptedClient([RuntimeError("boom")] * 4)
    cascade = ModelCascade(
        [ModelCandidate("a", failing, "model-a"), ModelCandidate("b", failing, "model-b")],
        retry_policy=FAST,
        event_hook=events.append,
    )

    with pytest.raises(ModelUnavailable) as excinfo:
        asyncio.run(cascade.generate(PROMPT))

    assert len(excinfo.value.errors) == 4
    assert events[-1]["event"] == "model_cascade_exhausted"


def test_no_candidates_raises_model_unavailable() -> None:
    with pytest.raises(ModelUnavailable):
        asyncio.run(ModelCascade([]).generate(PROMPT))


def test_attempt_timeout_and_total_deadline() -> None:
    cascade = ModelCascade(
        [
            ModelCandidate("slow", SlowClient(), "model-a"),
            ModelCandidate("slow", SlowClient(), "model-b"),
        ],
        retry_policy=RetryPolicy(
            max_retries=5,
            backoff_seconds=0.0,
            attempt_timeout_seconds=0.05,
            total_timeout_seconds=0.2,
        ),
    )

    with pytest.raises(ModelUnavailable) as excinfo:
        asyncio.run(cascade.generate(PROMPT))

    assert any("timed out" in error for error in excinfo.value.errors)


def test_missing_api_key_fails_only_on_invocation(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("REQFLOW_TEST_KEY", raising=False)
    client = OpenAIModelClient(api_key_env="REQFLOW_TEST_KEY")
    cascade = ModelCascade(
        [
            ModelCandidate("openai", client, "gpt-4o-mini"),
            ModelCandidate("openai", client, "gpt-4o"),
        ],
        retry_policy=FAST,
    )

    with pytest.raises(ModelUnavailable) as excinfo:
        asyncio.run(cascade.generate(PROMPT))

    assert "REQFLOW_TEST_KEY is not set" in str(excinfo.value)
    assert len(excinfo.value.errors) == 2


def _openai_request() -> httpx.Request:
    return httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def test_openai_errors_map_to_retriable_flag(monkeypatch: pytest.MonkeyPatch) -> None:
    client = OpenAIModelClient(api_key_env="REQFLOW_TEST_KEY")
    auth_error = openai.AuthenticationError(
        "invalid key",
        response=httpx.Response(401, request=_openai_request()),
        body=None,
    )
    connection_error = openai.APIConnectionError(request=_openai_request())
    outcomes: list[Exception] = [auth_error, connection_error]

    def fake_request(prompt: RenderedPrompt, model: str) -> Any:
        _ = prompt, model
        raise outcomes.pop(0)

    monkeypatch.setattr(client, "_request", fake_request)

    with pytest.raises(ModelInvocationError) as auth_info:
        asyncio.run(client.generate(PROMPT, model="gpt-4o"))
    with pytest.raises(ModelInvocationError) as connection_info:
        asyncio.run(client.generate(PROMPT, model="gpt-4o"))

    assert auth_info.value.retriable is False
    assert connection_info.value.retriable is True


def test_openai_client_reads_message_content(monkeypatch: pytest.MonkeyPatch) -> None:
    client = OpenAIModelClient(api_key_env="REQFLOW_TEST_KEY")

    class _Message:
        content = "  hello  "

    class _Choice:
        message = _Message()

    class _Response:
        choices = [_Choice()]
        usage = None

    monkeypatch.setattr(client, "_request", lambda prompt, model: _Response())

    assert asyncio.run(client.generate(PROMPT, model="gpt-4o")) == "hello"
