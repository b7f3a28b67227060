"""Generation oracle providers."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from forge_executor.synthesis_plane.oracle import GenerationOracle
from forge_executor.synthesis_plane.providers.anthropic_adapter import AnthropicOracle
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
)

OracleFactory = Callable[..., GenerationOracle]

_ORACLE_FACTORIES: dict[str, OracleFactory] = {
    "anthropic": AnthropicOracle,
}


def create_oracle(name: str, **kwargs: Any) -> GenerationOracle:
    """Instantiate a registered oracle by provider name."""

    factory = _ORACLE_FACTORIES.get(name.strip().lower())
    if factory is None:
        known = ", ".join(sorted(_ORACLE_FACTORIES))
        raise ValueError(f"unknown generation provider {name!r}; registered: [{known}]")
    return factory(**kwargs)


__all__ = [
    "AnthropicOracle",
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
    "create_oracle",
]
