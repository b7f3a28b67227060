"""Exception types that carry a StructuredFailure across plane boundaries."""

from __future__ import annotations

from collections.abc import Mapping

from forge_executor.domain.models import FailureCode, JSONValue, StructuredFailure


class ForgeError(RuntimeError):
    """Base error; ``failure`` is the closed classification of what went wrong."""

    default_code: FailureCode = FailureCode.INFRA_UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        code: FailureCode | None = None,
        details: Mapping[str, JSONValue] | None = None,
        failure: StructuredFailure | None = None,
    ) -> None:
        super().__init__(message)
        self.failure = (
            failure
            if failure is not None
            else StructuredFailure.from_code(
                code if code is not None else self.default_code,
                message,
                details=details,
            )
        )


class BudgetCapacityError(ForgeError):
    """Edit targets at full fidelity cannot fit the token budget."""

    default_code = FailureCode.PREP_INSUFFICIENT_CONTEXT


class ProtocolViolationError(ForgeError):
    """Oracle response broke the edit protocol; never written to disk."""

    default_code = FailureCode.CODEGEN_INVALID_FORMAT

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        code: FailureCode | None = None,
        details: Mapping[str, JSONValue] | None = None,
    ) -> None:
        merged: dict[str, JSONValue] = {"reason": reason}
        merged.update(details or {})
        super().__init__(message, code=code, details=merged)
        self.reason = reason


class GenerationTimeoutError(ForgeError):
    """Oracle call exceeded its timeout."""

    default_code = FailureCode.CODEGEN_TIMEOUT


class TaskAbortedError(ForgeError):
    """Human-approval collaborator aborted the task."""

    default_code = FailureCode.PREP_ABORTED_BY_USER


__all__ = [
    "BudgetCapacityError",
    "ForgeError",
    "GenerationTimeoutError",
    "ProtocolViolationError",
    "TaskAbortedError",
]
