"""Terminal rendering of live output and execution results.

SECURITY: All agent-controlled strings are escaped to prevent Rich markup injection.
"""

from datetime import datetime

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from pmrunner.core.models import ExecutionResult, ExecutionStatus, OutputChunk, StaleContext
from pmrunner.stream.broadcaster import is_stale

STREAM_STYLES = {
    "stdout": "",
    "stderr": "yellow",
    "system": "cyan",
    "spawn": "dim",
    "preflight": "dim",
    "recovery": "bold yellow",
    "timeout": "magenta",
    "state": "bold",
    "error": "bold red",
}

STATUS_STYLES = {
    ExecutionStatus.COMPLETE: "green",
    ExecutionStatus.INCOMPLETE: "yellow",
    ExecutionStatus.NO_EVIDENCE: "yellow",
    ExecutionStatus.ERROR: "red",
    ExecutionStatus.BLOCKED: "red",
}


class LiveOutputPrinter:
    """Broadcaster subscriber that prints chunks for one task as they arrive.

    Chunks that cannot be tied to the watched task and session are dropped.
    """

    def __init__(
        self,
        console: Console,
        task_id: str,
        session_id: str | None = None,
        task_created_at: datetime | None = None,
        show_lifecycle: bool = True,
    ):
        self.console = console
        self.context = StaleContext(
            current_task_id=task_id,
            current_session_id=session_id,
            task_created_at=task_created_at,
        )
        self.show_lifecycle = show_lifecycle
        self.printed = 0

    def __call__(self, chunk: OutputChunk) -> None:
        if is_stale(chunk, self.context):
            return
        if not self.show_lifecycle and chunk.stream not in ("stdout", "stderr"):
            return

        text = chunk.text.rstrip("\n")
        if not text:
            return
        style = STREAM_STYLES.get(chunk.stream, "")
        if style:
            self.console.print(f"[{style}]{escape(text)}[/]", highlight=False)
        else:
            self.console.print(escape(text), highlight=False)
        self.printed += 1


class ResultRenderer:
    """Summary table for a finished execution."""

    def __init__(self, console: Console):
        self.console = console

    def render(self, result: ExecutionResult) -> None:
        style = STATUS_STYLES.get(result.status, "white")

        table = Table(title="Execution Result", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Status", f"[{style}]{result.status.value}[/]")
        table.add_row("Duration", f"{result.duration_ms}ms")
        table.add_row("Working directory", escape(result.working_directory))
        table.add_row("Executed", "yes" if result.executed else "no")
        if result.blocked_reason:
            table.add_row("Blocked reason", result.blocked_reason.value)
        if result.terminated_by:
            table.add_row("Terminated by", result.terminated_by.value)
        if result.timeout_ms is not None:
            table.add_row("Blocked after", f"{result.timeout_ms}ms")
        if result.should_retry:
            table.add_row("Retry", "[yellow]recommended[/]")
        self.console.print(table)

        if result.verified_files:
            files = Table(title="Verified Files")
            files.add_column("Path", style="green")
            files.add_column("Size", justify="right")
            for vf in result.verified_files:
                size = str(vf.size) if vf.size is not None else "-"
                files.add_row(escape(vf.path), size)
            self.console.print(files)

        if result.unverified_files:
            self.console.print("[red]Unverified files (claimed but missing on disk):[/]")
            for path in result.unverified_files:
                self.console.print(f"  - {escape(path)}")

        if result.error_text and result.status != ExecutionStatus.COMPLETE:
            self.console.print(Panel(escape(result.error_text), title="Error", style="red"))
