"""Exception taxonomy for runner internals.

PreflightFailure, SpawnFailure and EvidenceWriteError never escape
ProcessSupervisor.execute; the supervisor maps each one to an ExecutionResult
status. ConfigError and WorkdirBusyError are raised to callers.
"""


class RunnerError(Exception):
    """Base class for runner errors."""

    pass


class ConfigError(RunnerError):
    """Project configuration is invalid."""

    pass


class PreflightFailure(RunnerError):
    """The agent CLI is missing or not authenticated."""

    def __init__(self, reason: str, message: str, should_retry: bool = False):
        self.reason = reason
        self.should_retry = should_retry
        super().__init__(message)


class SpawnFailure(RunnerError):
    """The agent CLI could not be launched."""

    pass


class EvidenceWriteError(RunnerError):
    """The evidence artifact for a read-only task could not be written."""

    pass
