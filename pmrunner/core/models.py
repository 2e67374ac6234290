"""Data models for the runner.

Uses Pydantic for every contract that crosses a module boundary: the task a
caller submits, the result the supervisor returns, and the output chunks the
broadcaster fans out.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class TaskKind(str, Enum):
    """What the task is expected to do to the working directory."""

    IMPLEMENTATION = "IMPLEMENTATION"
    READ_INFO = "READ_INFO"
    REPORT = "REPORT"

    @property
    def is_read_only(self) -> bool:
        """Read-only kinds complete on a generated evidence artifact."""
        return self in (TaskKind.READ_INFO, TaskKind.REPORT)


class ExecutionStatus(str, Enum):
    """Terminal status of one execution."""

    COMPLETE = "COMPLETE"
    INCOMPLETE = "INCOMPLETE"
    NO_EVIDENCE = "NO_EVIDENCE"
    ERROR = "ERROR"
    BLOCKED = "BLOCKED"


class ExecutionState(str, Enum):
    """Lifecycle of one execution.

    RUNNING is the only state with live timers and open streams.
    """

    NOT_STARTED = "NOT_STARTED"
    PREFLIGHT = "PREFLIGHT"
    RUNNING = "RUNNING"
    BLOCKED = "BLOCKED"
    ERROR = "ERROR"
    COMPLETE = "COMPLETE"
    INCOMPLETE = "INCOMPLETE"
    NO_EVIDENCE = "NO_EVIDENCE"

    @property
    def is_terminal(self) -> bool:
        return self not in (
            ExecutionState.NOT_STARTED,
            ExecutionState.PREFLIGHT,
            ExecutionState.RUNNING,
        )


class BlockedReason(str, Enum):
    """Why an execution ended without a normal evidence check."""

    INTERACTIVE_PROMPT = "INTERACTIVE_PROMPT"
    TIMEOUT = "TIMEOUT"
    PREFLIGHT_CLI_NOT_AVAILABLE = "PREFLIGHT_CLI_NOT_AVAILABLE"
    PREFLIGHT_AUTH_FAILED = "PREFLIGHT_AUTH_FAILED"


class TerminatedBy(str, Enum):
    """Which mechanism ended the execution."""

    REPL_FAIL_CLOSED = "REPL_FAIL_CLOSED"
    TIMEOUT = "TIMEOUT"
    PREFLIGHT_FAIL_CLOSED = "PREFLIGHT_FAIL_CLOSED"


class OutputStreamName(str, Enum):
    """Well-known stream tags. OutputChunk.stream is open-ended text."""

    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"
    SPAWN = "spawn"
    PREFLIGHT = "preflight"
    RECOVERY = "recovery"
    TIMEOUT = "timeout"
    STATE = "state"
    ERROR = "error"


# --- Task / Result ---


class Task(BaseModel):
    """A unit of work submitted to the supervisor. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str
    prompt: str
    working_directory: Path
    selected_model: str | None = None
    task_kind: TaskKind = TaskKind.IMPLEMENTATION


class VerifiedFile(BaseModel):
    """A file-system fact established by direct inspection, never by CLI text."""

    path: str
    exists: bool
    size: int | None = None
    preview: str | None = None


class ExecutionResult(BaseModel):
    """Outcome of ProcessSupervisor.execute.

    status == COMPLETE implies at least one verified file exists on disk.
    A non-empty unverified_files list implies status != COMPLETE.
    """

    status: ExecutionStatus
    output: str = ""
    error_text: str | None = None
    modified_files: list[str] = Field(default_factory=list)
    verified_files: list[VerifiedFile] = Field(default_factory=list)
    unverified_files: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    working_directory: str
    executed: bool = False
    blocked: bool = False
    blocked_reason: BlockedReason | None = None
    terminated_by: TerminatedBy | None = None
    timeout_ms: int | None = None  # Elapsed time when blocking was detected
    should_retry: bool = False


class AuthCheckResult(BaseModel):
    """Outcome of the preflight probes."""

    available: bool
    logged_in: bool
    error: str | None = None
    should_retry: bool = False


# --- Streaming ---


class OutputChunk(BaseModel):
    """One emitted output event. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    task_id: str
    session_id: str | None = None
    project_id: str | None = None
    stream: str
    text: str
    sequence: int


class ActiveTaskInfo(BaseModel):
    """Bookkeeping for a task that has emitted output and not yet ended."""

    task_id: str
    start_time: datetime
    last_output_time: datetime
    duration_ms: int = 0


class StaleContext(BaseModel):
    """The viewer's current context, used to reject stale chunks."""

    current_task_id: str | None = None
    current_session_id: str | None = None
    task_created_at: datetime | None = None
