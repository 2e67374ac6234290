"""Core data contracts and helpers for the runner."""

from pmrunner.core.models import (
    ActiveTaskInfo,
    AuthCheckResult,
    BlockedReason,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    OutputChunk,
    StaleContext,
    Task,
    TaskKind,
    TerminatedBy,
    VerifiedFile,
)

__all__ = [
    "ActiveTaskInfo",
    "AuthCheckResult",
    "BlockedReason",
    "ExecutionResult",
    "ExecutionState",
    "ExecutionStatus",
    "OutputChunk",
    "StaleContext",
    "Task",
    "TaskKind",
    "TerminatedBy",
    "VerifiedFile",
]
