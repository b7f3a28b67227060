"""Control plane: approval hook, self-heal loop and the execution orchestrator."""

from forge_executor.control_plane.approval import (
    ApprovalGate,
    ApprovalPolicy,
    ApprovalRequest,
    ApprovalTrigger,
    AutoApproveGate,
    DefaultApprovalPolicy,
    ResumeDecision,
    ResumeSignal,
    Severity,
    StaticDecisionGate,
    TriggerKind,
)
from forge_executor.control_plane.orchestrator import ExecutionOrchestrator, build_orchestrator
from forge_executor.control_plane.self_heal import (
    HealPhase,
    HealSession,
    HealState,
    InvalidTransitionError,
    run_self_heal,
    step,
)

__all__ = [
    "ApprovalGate",
    "ApprovalPolicy",
    "ApprovalRequest",
    "ApprovalTrigger",
    "AutoApproveGate",
    "DefaultApprovalPolicy",
    "ExecutionOrchestrator",
    "HealPhase",
    "HealSession",
    "HealState",
    "InvalidTransitionError",
    "ResumeDecision",
    "ResumeSignal",
    "Severity",
    "StaticDecisionGate",
    "TriggerKind",
    "build_orchestrator",
    "run_self_heal",
    "step",
]
