"""
Unit tests for generation providers.

Coverage:
- Anthropic payload shape: forced tool use with the submit tool.
- Tool-use extraction and the no-tool-use protocol violation.
- Exception mapping, bounded retries and lazy SDK import.
- Provider registry lookup.
"""

from __future__ import annotations

import importlib
from collections import deque
from dataclasses import dataclass, field

import pytest

from forge_executor.domain.errors import ProtocolViolationError
from forge_executor.domain.models import FailureCode
from forge_executor.synthesis_plane.oracle import GenerationRequest
from forge_executor.synthesis_plane.providers import (
    AnthropicOracle,
    BackoffConfig,
    ProviderAuthenticationError,
    ProviderContextLengthError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderUnavailableError,
    create_oracle,
)
from forge_executor.synthesis_plane.providers.anthropic_adapter import extract_tool_input
from forge_executor.synthesis_plane.providers.base import compute_backoff_delay


@dataclass(slots=True)
class _ScriptedAnthropicMessages:
    outcomes: deque[object | Exception]
    calls: list[dict[str, object]] = field(default_factory=list)

    async def create(self, **kwargs: object) -> object:
        self.calls.append(dict(kwargs))
        if not self.outcomes:
            raise RuntimeError("scripted anthropic outcomes exhausted")
        outcome = self.outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@dataclass(slots=True)
class _FakeAnthropicClient:
    messages: _ScriptedAnthropicMessages


@dataclass(slots=True)
class _SleepRecorder:
    calls: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class RateLimitError(Exception):
    status_code = 429


class AuthenticationError(Exception):
    status_code = 401


class BadRequestError(Exception):
    status_code = 400


def _request(prompt: str = "Add a health endpoint") -> GenerationRequest:
    return GenerationRequest(task_id="t-1", prompt=prompt, max_output_tokens=1_024)


def _tool_response(tool_input: object, *, name: str = "submit_code_changes") -> dict[str, object]:
    return {
        "model": "claude-sonnet-4-20250514",
        "stop_reason": "tool_use",
        "content": [
            {"type": "text", "text": "Applying the change."},
            {"type": "tool_use", "id": "toolu-1", "name": name, "input": tool_input},
        ],
        "usage": {"input_tokens": 120, "output_tokens": 40},
    }


def _oracle(
    *outcomes: object, sleep: _SleepRecorder | None = None, max_retries: int = 2
) -> tuple[AnthropicOracle, _ScriptedAnthropicMessages]:
    messages = _ScriptedAnthropicMessages(outcomes=deque(outcomes))
    oracle = AnthropicOracle(
        client=_FakeAnthropicClient(messages=messages),
        backoff=BackoffConfig(max_retries=max_retries, initial_delay_seconds=0.25),
        sleep=sleep if sleep is not None else _SleepRecorder(),
    )
    return oracle, messages


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generate_forces_tool_use_and_returns_tool_input() -> None:
    files = [{"path": "a.ts", "action": "create", "content": "x"}]
    oracle, messages = _oracle(_tool_response({"files": files, "explanation": "ok"}))

    payload = await oracle.generate(_request())

    assert payload == {"files": files, "explanation": "ok"}
    (call,) = messages.calls
    assert call["tool_choice"] == {"type": "any"}
    assert call["max_tokens"] == 1_024
    assert call["messages"] == [{"role": "user", "content": "Add a health endpoint"}]
    tools = call["tools"]
    assert isinstance(tools, list)
    assert tools[0]["name"] == "submit_code_changes"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_response_without_tool_use_is_a_protocol_violation() -> None:
    oracle, _ = _oracle(
        {"stop_reason": "end_turn", "content": [{"type": "text", "text": "Sure, here it is"}]}
    )

    with pytest.raises(ProtocolViolationError) as excinfo:
        await oracle.generate(_request())

    assert str(excinfo.value) == "NO_TOOL_USE_IN_RESPONSE"
    failure = excinfo.value.failure
    assert failure.code is FailureCode.CODEGEN_TOOL_NOT_CALLED
    assert failure.details["block_types"] == ["text"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rate_limits_are_retried_with_bounded_backoff() -> None:
    sleep = _SleepRecorder()
    oracle, messages = _oracle(
        RateLimitError("slow down"),
        RateLimitError("slow down"),
        _tool_response({"files": []}),
        sleep=sleep,
    )

    payload = await oracle.generate(_request())

    assert payload == {"files": []}
    assert len(messages.calls) == 3
    assert sleep.calls == [0.25, 0.5]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_retries_stop_after_max_retries() -> None:
    oracle, messages = _oracle(
        RateLimitError("slow down"), RateLimitError("still slow"), max_retries=1
    )

    with pytest.raises(ProviderRateLimitError) as excinfo:
        await oracle.generate(_request())

    assert len(messages.calls) == 2
    assert excinfo.value.failure.code is FailureCode.INFRA_API_ERROR


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_retryable_errors_propagate_on_first_attempt() -> None:
    oracle, messages = _oracle(AuthenticationError("bad key"))

    with pytest.raises(ProviderAuthenticationError):
        await oracle.generate(_request())

    assert len(messages.calls) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_context_length_errors_map_to_insufficient_context() -> None:
    oracle, _ = _oracle(BadRequestError("prompt is too long: context length exceeded"))

    with pytest.raises(ProviderContextLengthError) as excinfo:
        await oracle.generate(_request())

    assert excinfo.value.failure.code is FailureCode.PREP_INSUFFICIENT_CONTEXT


def test_non_object_tool_input_is_rejected() -> None:
    with pytest.raises(ProviderResponseError):
        extract_tool_input(_tool_response("files: []"))


def test_other_tool_names_are_ignored() -> None:
    with pytest.raises(ProtocolViolationError):
        extract_tool_input(_tool_response({"files": []}, name="lookup"))


@pytest.mark.asyncio
async def test_missing_sdk_surfaces_only_when_generate_is_called(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    real_import_module = importlib.import_module

    def blocking_import(name: str, package: str | None = None) -> object:
        if name == "anthropic":
            raise ImportError(f"blocked: {name}")
        return real_import_module(name, package)

    monkeypatch.setattr(importlib, "import_module", blocking_import)
    oracle = AnthropicOracle(model="claude-sonnet-4-20250514")

    assert oracle.model == "claude-sonnet-4-20250514"
    with pytest.raises(ProviderUnavailableError, match="anthropic SDK is not installed"):
        await oracle.generate(_request())


@pytest.mark.asyncio
async def test_missing_api_key_is_an_authentication_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    class _FakeModule:
        class AsyncAnthropic:
            def __init__(self, **kwargs: object) -> None:
                self.messages = object()

    real_import_module = importlib.import_module

    def fake_import(name: str, package: str | None = None) -> object:
        if name == "anthropic":
            return _FakeModule
        return real_import_module(name, package)

    monkeypatch.setattr(importlib, "import_module", fake_import)
    monkeypatch.delenv("FORGE_TEST_KEY", raising=False)
    oracle = AnthropicOracle(api_key_env="FORGE_TEST_KEY")

    with pytest.raises(ProviderAuthenticationError, match="FORGE_TEST_KEY"):
        await oracle.generate(_request())


def test_backoff_delay_is_exponential_and_capped() -> None:
    config = BackoffConfig(max_retries=5, initial_delay_seconds=1.0, max_delay_seconds=3.0)

    delays = [compute_backoff_delay(retry_number=n, config=config) for n in (1, 2, 3)]

    assert delays == [1.0, 2.0, 3.0]


def test_create_oracle_resolves_registered_providers() -> None:
    oracle = create_oracle("Anthropic", model="claude-sonnet-4-20250514")

    assert isinstance(oracle, AnthropicOracle)
    with pytest.raises(ValueError, match="unknown generation provider"):
        create_oracle("unknown")
