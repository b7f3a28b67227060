"""
forge-executor - provider errors and retry policy

File: src/forge_executor/synthesis_plane/providers/base.py

Purpose
- Provider-neutral error taxonomy mapped onto the closed failure codes, plus
  a bounded retry loop for transient provider faults.

Functional requirements
- Every provider error carries a ``StructuredFailure`` and a retryability flag.
- Retries apply only to retryable provider errors; protocol violations and
  other executor errors propagate on first occurrence.
"""

from __future__ import annotations

import asyncio
import random as random_module
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import ClassVar, TypeAlias, TypeVar

from forge_executor.domain.errors import ForgeError
from forge_executor.domain.models import FailureCode

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RandomFn: TypeAlias = Callable[[], float]

_DETAIL_LIMIT = 2000


class ProviderError(ForgeError):
    """Provider fault normalized to ``kind`` / ``retryable`` / ``http_status``.

    Subclasses only pin the class attributes; the message format is shared so
    log lines from different providers stay greppable.
    """

    kind: ClassVar[str] = "unknown"
    retryable_by_default: ClassVar[bool] = False
    default_code = FailureCode.INFRA_API_ERROR

    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = None,
        retryable: bool | None = None,
        failure_code: FailureCode | None = None,
    ) -> None:
        self.provider = provider
        self.detail = " ".join(str(detail).split())[:_DETAIL_LIMIT] or "no detail"
        self.retryable = self.retryable_by_default if retryable is None else bool(retryable)
        self.http_status = http_status
        status = "" if http_status is None else f" http_status={http_status}"
        super().__init__(
            f"{provider} {self.kind} error{status}: {self.detail}",
            code=failure_code,
            details={
                "provider": provider,
                "kind": self.kind,
                "retryable": self.retryable,
                "http_status": http_status,
            },
        )


class ProviderUnavailableError(ProviderError):
    """SDK missing or unusable in this environment."""

    kind = "unavailable"


class ProviderAuthenticationError(ProviderError):
    kind = "auth"


class ProviderInvalidRequestError(ProviderError):
    kind = "invalid_request"


class ProviderContextLengthError(ProviderError):
    """Prompt exceeds the model's context window."""

    kind = "context_length"
    default_code = FailureCode.PREP_INSUFFICIENT_CONTEXT


class ProviderRateLimitError(ProviderError):
    kind = "rate_limit"
    retryable_by_default = True


class ProviderTimeoutError(ProviderError):
    kind = "timeout"
    retryable_by_default = True
    default_code = FailureCode.CODEGEN_TIMEOUT


class ProviderServiceError(ProviderError):
    kind = "service"
    retryable_by_default = True


class ProviderResponseError(ProviderError):
    """Provider answered with something that cannot be normalized."""

    kind = "response_invalid"
    default_code = FailureCode.CODEGEN_INVALID_FORMAT


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """Exponential backoff: ``initial * multiplier**(n-1)``, capped, optional jitter."""

    max_retries: int = 2
    initial_delay_seconds: float = 0.25
    multiplier: float = 2.0
    max_delay_seconds: float = 4.0
    jitter_ratio: float = 0.0

    def __post_init__(self) -> None:
        problems = [
            message
            for failed, message in (
                (self.max_retries < 0, "max_retries must be >= 0"),
                (self.initial_delay_seconds < 0, "initial_delay_seconds must be >= 0"),
                (self.multiplier < 1.0, "multiplier must be >= 1.0"),
                (
                    self.initial_delay_seconds > self.max_delay_seconds,
                    "initial_delay_seconds must be <= max_delay_seconds",
                ),
                (not 0.0 <= self.jitter_ratio <= 1.0, "jitter_ratio must be within [0, 1]"),
            )
            if failed
        ]
        if problems:
            raise ValueError("; ".join(problems))


def compute_backoff_delay(
    *,
    retry_number: int,
    config: BackoffConfig,
    random_fn: RandomFn = random_module.random,
) -> float:
    """Seconds to wait before retry ``retry_number`` (1-based)."""

    if retry_number < 1:
        raise ValueError("retry_number must be >= 1")
    delay = min(
        config.initial_delay_seconds * config.multiplier ** (retry_number - 1),
        config.max_delay_seconds,
    )
    if not config.jitter_ratio:
        return delay
    spread = delay * config.jitter_ratio * (2.0 * random_fn() - 1.0)
    return min(config.max_delay_seconds, max(0.0, delay + spread))


_T = TypeVar("_T")
RetryCallback: TypeAlias = Callable[[int, ProviderError, float], None]


async def run_with_retries(
    operation: Callable[[], Awaitable[_T]],
    *,
    map_exception: Callable[[Exception], ProviderError],
    backoff: BackoffConfig,
    sleep: SleepFn = asyncio.sleep,
    random_fn: RandomFn = random_module.random,
    on_retry: RetryCallback | None = None,
) -> _T:
    """Await ``operation``, retrying retryable provider errors up to ``backoff.max_retries``."""

    for retry in range(backoff.max_retries + 1):
        try:
            return await operation()
        except ProviderError as exc:
            error, cause = exc, exc.__cause__
        except ForgeError:
            raise
        except Exception as exc:  # noqa: BLE001 - SDK exceptions are mapped below
            error, cause = map_exception(exc), exc

        if not error.retryable or retry == backoff.max_retries:
            raise error from cause

        delay = compute_backoff_delay(retry_number=retry + 1, config=backoff, random_fn=random_fn)
        if on_retry is not None:
            on_retry(retry + 1, error, delay)
        await sleep(delay)

    raise AssertionError("unreachable")


__all__ = [
    "BackoffConfig",
    "ProviderAuthenticationError",
    "ProviderContextLengthError",
    "ProviderError",
    "ProviderInvalidRequestError",
    "ProviderRateLimitError",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "RandomFn",
    "SleepFn",
    "compute_backoff_delay",
    "is_retryable_error",
    "run_with_retries",
]
