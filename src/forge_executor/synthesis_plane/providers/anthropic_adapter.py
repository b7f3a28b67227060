"""
forge-executor - Anthropic generation oracle

File: src/forge_executor/synthesis_plane/providers/anthropic_adapter.py

Purpose
- ``GenerationOracle`` backed by the Anthropic messages API with forced tool
  use, so responses arrive as structured ``submit_code_changes`` input.

Functional requirements
- The SDK is optional and imported lazily; an injected client bypasses it.
- ``tool_choice`` is ``{"type": "any"}``; a response without a tool-use
  block raises ``ProtocolViolationError("NO_TOOL_USE_IN_RESPONSE")``.
- SDK exceptions are mapped onto the provider error taxonomy.

Non-functional requirements
- API keys never appear in logs or error details.
"""

from __future__ import annotations

import asyncio
import importlib
import os
import random as random_module
import time
from collections.abc import Mapping, Sequence
from typing import Any, Final, Protocol, cast

import structlog

from forge_executor.constants import SUBMIT_TOOL_NAME
from forge_executor.domain.errors import ProtocolViolationError
from forge_executor.domain.models import FailureCode
from forge_executor.synthesis_plane.oracle import GenerationRequest
from forge_executor.synthesis_plane.providers.base import (
    BackoffConfig,
    ProviderAuthenticationError,
    ProviderContextLengthError,
    ProviderError,
    ProviderInvalidRequestError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderServiceError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RandomFn,
    SleepFn,
    run_with_retries,
)

DEFAULT_ANTHROPIC_MODEL: Final[str] = "claude-sonnet-4-20250514"
DEFAULT_API_KEY_ENV: Final[str] = "ANTHROPIC_API_KEY"

_PROVIDER: Final[str] = "anthropic"


class _MessagesAPI(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class _Client(Protocol):
    messages: _MessagesAPI


class AnthropicOracle:
    """Calls ``messages.create`` with the submit tool forced and returns the tool input."""

    provider_name = _PROVIDER

    def __init__(
        self,
        *,
        model: str = DEFAULT_ANTHROPIC_MODEL,
        api_key: str | None = None,
        api_key_env: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        client: _Client | None = None,
        backoff: BackoffConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
        random_fn: RandomFn = random_module.random,
        logger: Any | None = None,
    ) -> None:
        if not isinstance(model, str) or not model.strip():
            raise ValueError("AnthropicOracle.model must be a non-empty string")
        for name, value in (("api_key", api_key), ("api_key_env", api_key_env)):
            if value is not None and not value.strip():
                raise ValueError(f"AnthropicOracle.{name} must not be blank")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("AnthropicOracle.timeout_seconds must be > 0")
        self.model = model.strip()
        self._api_key = api_key
        self._api_key_env = api_key_env or DEFAULT_API_KEY_ENV
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._client = client
        self._backoff = backoff if backoff is not None else BackoffConfig()
        self._sleep = sleep
        self._random_fn = random_fn
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def generate(self, request: GenerationRequest) -> Mapping[str, object]:
        payload = self.build_payload(request)

        async def call() -> object:
            return await self._client_or_connect().messages.create(**payload)

        started = time.perf_counter()
        response = await run_with_retries(
            call,
            map_exception=map_anthropic_exception,
            backoff=self._backoff,
            sleep=self._sleep,
            random_fn=self._random_fn,
            on_retry=self._log_retry,
        )
        usage = _field(response, "usage")
        self._logger.info(
            "anthropic_response_received",
            task_id=request.task_id,
            attempt=request.attempt,
            model=_text_field(response, "model") or self.model,
            stop_reason=_text_field(response, "stop_reason"),
            input_tokens=_int_field(usage, "input_tokens"),
            output_tokens=_int_field(usage, "output_tokens"),
            latency_ms=int((time.perf_counter() - started) * 1000),
        )
        return extract_tool_input(response)

    def build_payload(self, request: GenerationRequest) -> dict[str, object]:
        return {
            "model": self.model,
            "max_tokens": request.max_output_tokens,
            "tools": [dict(request.tool)],
            "tool_choice": {"type": "any"},
            "messages": [{"role": "user", "content": request.prompt}],
        }

    def _log_retry(self, retry: int, error: ProviderError, delay_seconds: float) -> None:
        self._logger.warning(
            "anthropic_request_retry",
            retry=retry,
            kind=error.kind,
            http_status=error.http_status,
            delay_seconds=round(delay_seconds, 3),
        )

    def _client_or_connect(self) -> _Client:
        if self._client is None:
            self._client = self._connect()
        return self._client

    def _connect(self) -> _Client:
        try:
            sdk = importlib.import_module("anthropic")
        except ImportError as exc:
            raise ProviderUnavailableError(
                "anthropic SDK is not installed; install forge-executor[anthropic]",
                provider=_PROVIDER,
            ) from exc
        factory = getattr(sdk, "AsyncAnthropic", None)
        if factory is None:
            raise ProviderUnavailableError(
                "anthropic SDK does not expose AsyncAnthropic", provider=_PROVIDER
            )

        options: dict[str, object] = {"api_key": self._api_key or self._key_from_env()}
        if self._base_url:
            options["base_url"] = self._base_url
        if self._timeout_seconds is not None:
            options["timeout"] = self._timeout_seconds
        return cast("_Client", factory(**options))

    def _key_from_env(self) -> str:
        value = os.environ.get(self._api_key_env, "").strip()
        if not value:
            raise ProviderAuthenticationError(
                f"missing Anthropic API key; set {self._api_key_env}",
                provider=_PROVIDER,
                http_status=401,
            )
        return value


def map_anthropic_exception(exc: Exception) -> ProviderError:
    """Classify an SDK exception by HTTP status first, then by exception class name."""

    if isinstance(exc, ProviderError):
        return exc
    status = _status_code(exc)
    name = type(exc).__name__.lower()
    detail = " ".join(str(exc).split()) or type(exc).__name__
    lowered = detail.lower()

    if status in (401, 403) or "auth" in name or "permission" in name:
        return ProviderAuthenticationError(detail, provider=_PROVIDER, http_status=status)
    if status == 429 or "ratelimit" in name:
        return ProviderRateLimitError(detail, provider=_PROVIDER, http_status=status)
    if isinstance(exc, TimeoutError) or "timeout" in name:
        return ProviderTimeoutError(detail, provider=_PROVIDER)
    if status in (400, 413, 422) and "context" in lowered and (
        "length" in lowered or "too long" in lowered
    ):
        return ProviderContextLengthError(detail, provider=_PROVIDER, http_status=status)
    if status in (400, 404, 409, 422) or "badrequest" in name:
        return ProviderInvalidRequestError(detail, provider=_PROVIDER, http_status=status)
    if "connection" in name:
        return ProviderServiceError(
            detail, provider=_PROVIDER, failure_code=FailureCode.INFRA_NETWORK_ERROR
        )
    return ProviderServiceError(detail, provider=_PROVIDER, http_status=status)


def extract_tool_input(
    response: object,
    *,
    tool_name: str = SUBMIT_TOOL_NAME,
) -> Mapping[str, object]:
    """``input`` of the first ``tool_use`` block that calls ``tool_name``."""

    blocks = _blocks(response)
    calls = (
        block
        for block in blocks
        if (_text_field(block, "type") or "").lower() == "tool_use"
        and _text_field(block, "name") == tool_name
    )
    block = next(calls, None)
    if block is None:
        raise ProtocolViolationError(
            "NO_TOOL_USE_IN_RESPONSE",
            reason="no_tool_use",
            code=FailureCode.CODEGEN_TOOL_NOT_CALLED,
            details={
                "stop_reason": _text_field(response, "stop_reason"),
                "block_types": [_text_field(item, "type") or "unknown" for item in blocks],
            },
        )
    arguments = _field(block, "input")
    if not isinstance(arguments, Mapping):
        raise ProviderResponseError(
            f"{tool_name} input is {type(arguments).__name__}, expected an object",
            provider=_PROVIDER,
        )
    return cast("Mapping[str, object]", arguments)


def _status_code(exc: BaseException) -> int | None:
    response = getattr(exc, "response", None)
    for holder, key in (
        (exc, "status_code"),
        (exc, "status"),
        (exc, "http_status"),
        (response, "status_code"),
    ):
        value = getattr(holder, key, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


# The SDK returns pydantic models; tests and raw HTTP callers pass dicts.
def _field(source: object, key: str) -> object | None:
    if source is None:
        return None
    if isinstance(source, Mapping):
        return cast("object | None", source.get(key))
    return cast("object | None", getattr(source, key, None))


def _blocks(response: object) -> tuple[object, ...]:
    content = _field(response, "content")
    if isinstance(content, Sequence) and not isinstance(content, (str, bytes)):
        return tuple(content)
    return ()


def _text_field(source: object, key: str) -> str | None:
    value = _field(source, key)
    return value if isinstance(value, str) and value.strip() else None


def _int_field(source: object, key: str) -> int | None:
    value = _field(source, key)
    return value if isinstance(value, int) and not isinstance(value, bool) else None


__all__ = [
    "DEFAULT_ANTHROPIC_MODEL",
    "DEFAULT_API_KEY_ENV",
    "AnthropicOracle",
    "extract_tool_input",
    "map_anthropic_exception",
]
