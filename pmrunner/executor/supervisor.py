"""Fail-closed supervisor for one agent CLI execution.

Lifecycle of ProcessSupervisor.execute:
    NOT_STARTED -> PREFLIGHT -> RUNNING -> {BLOCKED, ERROR, COMPLETE, INCOMPLETE, NO_EVIDENCE}

While RUNNING, two stream readers and a TimerSet run concurrently:
- "soft": informational, fires once
- "silence": periodic silence log, never terminates
- "overall": the only timer that can end a healthy-looking process
- "kill": armed on escalation, forceful kill after the SIGTERM grace window

Interactive-prompt detection and overall-timeout expiry share one
escalation path (terminate, grace, kill). The first terminal transition
wins; anything arriving after it is discarded.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from pmrunner.core.errors import EvidenceWriteError, PreflightFailure, SpawnFailure
from pmrunner.core.models import (
    BlockedReason,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    OutputStreamName,
    Task,
    TerminatedBy,
    VerifiedFile,
)
from pmrunner.core.utils import truncate_output
from pmrunner.executor.detection import claims_success, contains_interactive_prompt
from pmrunner.executor.environment import build_child_env
from pmrunner.executor.evidence import (
    DEFAULT_SKIP_DIRS,
    EvidenceReport,
    EvidenceVerifier,
    write_evidence_artifact,
)
from pmrunner.executor.preflight import CliProbe
from pmrunner.executor.status import EvidenceFacts, decide_status
from pmrunner.executor.timers import TimerSet
from pmrunner.stream.broadcaster import OutputBroadcaster

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_TOOLS = ("Write", "Edit", "Read", "Bash")
READ_CHUNK_SIZE = 4096

RECOVERY_STEPS = (
    "Run: claude login",
    "Or run: claude setup-token",
    "Or set ANTHROPIC_API_KEY in your own shell before starting the runner",
)


@dataclass
class SupervisorConfig:
    """Configuration for ProcessSupervisor. Durations are in seconds."""

    cli_path: str = "claude"

    # Timeouts
    timeout: float = 600.0  # overall safety net
    soft_timeout: float = 60.0  # informational only
    silence_log_interval: float = 30.0  # log only, never terminates
    sigterm_grace: float = 5.0
    disable_overall_timeout: bool = False
    progress_aware_timeout: bool = False  # output pushes the overall deadline

    # Preflight bounds
    version_probe_timeout: float = 5.0
    auth_probe_timeout: float = 15.0

    allowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    evidence_dir: str = ".pmrunner/evidence"

    # Output limits (prevent OOM from unbounded output)
    max_output_bytes: int = 10 * 1024 * 1024  # 10MB
    # Grandchildren can hold the pipes open after the CLI exits
    stream_drain_timeout: float = 5.0

    skip_dirs: frozenset[str] = DEFAULT_SKIP_DIRS


def build_cli_args(task: Task, config: SupervisorConfig) -> list[str]:
    """Non-interactive invocation; the prompt is always the last positional argument."""
    args = [
        "--print",
        "--dangerously-skip-permissions",
        "--tools",
        ",".join(config.allowed_tools),
        "--no-session-persistence",
    ]
    if task.selected_model:
        args.extend(["--model", task.selected_model])
    args.append(task.prompt)
    return args


class _Execution:
    """Mutable state of one execute() call. Only touched from the event loop."""

    def __init__(self, task: Task):
        self.task = task
        self.state = ExecutionState.NOT_STARTED
        self.started = time.monotonic()
        self.last_output = self.started
        self.stdout_parts: list[str] = []
        self.stderr_parts: list[str] = []
        self.proc: asyncio.subprocess.Process | None = None
        self.timers = TimerSet()
        self.blocked_reason: BlockedReason | None = None
        self.terminated_by: TerminatedBy | None = None
        self.blocked_at_ms: int | None = None

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    @property
    def is_blocked(self) -> bool:
        return self.blocked_reason is not None

    @property
    def stdout(self) -> str:
        return "".join(self.stdout_parts)

    @property
    def stderr(self) -> str:
        return "".join(self.stderr_parts)

    def block(self, reason: BlockedReason, terminated_by: TerminatedBy) -> bool:
        """Record the first blocking cause. Returns False if one was already recorded."""
        if self.is_blocked or self.state.is_terminal:
            return False
        self.blocked_reason = reason
        self.terminated_by = terminated_by
        self.blocked_at_ms = self.elapsed_ms
        return True

    def resolve(self, state: ExecutionState) -> bool:
        """Enter a terminal state once; later transitions are discarded."""
        if self.state.is_terminal:
            logger.debug(f"Task {self.task.id}: ignoring {state.value}, already {self.state.value}")
            return False
        self.state = state
        self.timers.cancel_all()
        return True


class ProcessSupervisor:
    """Runs the agent CLI for a task and decides the outcome from disk evidence.

    One supervisor may run many executions concurrently; each execute() call
    owns its own child process and timers. All events go through the shared
    broadcaster passed in by the application root.
    """

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        broadcaster: OutputBroadcaster | None = None,
        verifier: EvidenceVerifier | None = None,
        probe: CliProbe | None = None,
    ):
        self.config = config or SupervisorConfig()
        self.broadcaster = broadcaster or OutputBroadcaster()
        self.verifier = verifier or EvidenceVerifier(self.config.skip_dirs)
        self.probe = probe or CliProbe(
            self.config.cli_path,
            version_timeout=self.config.version_probe_timeout,
            auth_timeout=self.config.auth_probe_timeout,
        )

    async def execute(self, task: Task) -> ExecutionResult:
        """Run task to a terminal Result. Never raises for execution failures."""
        run = _Execution(task)
        self.broadcaster.start_task(task.id)
        try:
            result = await self._execute(run)
        except Exception as e:
            logger.exception(f"Task {task.id}: unexpected supervisor failure")
            self._emit(run, OutputStreamName.ERROR, f"[error] {e}")
            run.resolve(ExecutionState.ERROR)
            result = self._result(
                run,
                ExecutionStatus.ERROR,
                error_text=f"Internal supervisor error: {e}",
            )
        finally:
            run.timers.cancel_all()

        logger.info(
            f"Task {task.id}: status={result.status.value} "
            f"verified={len(result.verified_files)} unverified={len(result.unverified_files)} "
            f"duration={result.duration_ms}ms"
        )
        self.broadcaster.end_task(task.id, result.status)
        return result

    async def _execute(self, run: _Execution) -> ExecutionResult:
        task = run.task
        workdir = task.working_directory

        run.state = ExecutionState.PREFLIGHT
        try:
            await self._preflight(run)
        except PreflightFailure as e:
            run.resolve(ExecutionState.ERROR)
            return self._result(
                run,
                ExecutionStatus.ERROR,
                error_text=str(e),
                blocked_reason=BlockedReason(e.reason),
                terminated_by=TerminatedBy.PREFLIGHT_FAIL_CLOSED,
                should_retry=e.should_retry,
            )

        before = await asyncio.to_thread(self.verifier.snapshot, workdir)

        try:
            exit_code = await self._run_process(run)
        except SpawnFailure as e:
            self._emit(run, OutputStreamName.SPAWN, f"[spawn] FAILED: {e}")
            run.resolve(ExecutionState.ERROR)
            return self._result(run, ExecutionStatus.ERROR, error_text=str(e))

        if run.is_blocked:
            run.resolve(ExecutionState.BLOCKED)
            if run.blocked_reason == BlockedReason.TIMEOUT:
                error_text = f"Execution timed out after {self.config.timeout}s"
            else:
                error_text = f"Executor blocked: {run.blocked_reason.value}"
            return self._result(
                run,
                ExecutionStatus.BLOCKED,
                error_text=error_text,
                blocked=True,
                blocked_reason=run.blocked_reason,
                terminated_by=run.terminated_by,
                timeout_ms=run.blocked_at_ms,
            )

        after = await asyncio.to_thread(self.verifier.snapshot, workdir)
        report = await asyncio.to_thread(self.verifier.verify, workdir, before, after)
        output = run.stdout

        artifact_written = False
        if (
            exit_code == 0
            and task.task_kind.is_read_only
            and not report.has_unverified
            and not report.has_verified
        ):
            artifact = await self._write_artifact(run, output)
            if artifact is not None:
                report.verified_files.append(artifact)
                artifact_written = True

        facts = EvidenceFacts(
            exit_code=exit_code,
            has_unverified=report.has_unverified,
            has_verified=report.has_verified,
            read_only=task.task_kind.is_read_only,
            artifact_written=artifact_written,
            claims_success=claims_success(output),
        )
        status, rule = decide_status(facts)
        logger.debug(f"Task {task.id}: status {status.value} by rule '{rule}'")
        run.resolve(ExecutionState(status.value))

        error_text = run.stderr or None
        if status == ExecutionStatus.ERROR and not error_text:
            error_text = f"Agent CLI exited with code {exit_code}"
        return self._result(
            run,
            status,
            error_text=error_text,
            report=report,
            executed=exit_code == 0,
        )

    # --- Preflight ---

    async def _preflight(self, run: _Execution) -> None:
        """Raise PreflightFailure if the CLI is missing or not logged in."""
        cli_path = self.config.cli_path
        self._emit(run, OutputStreamName.PREFLIGHT, "[preflight] start")
        auth = await self.probe.check_auth_status()

        if not auth.available:
            self._emit(run, OutputStreamName.PREFLIGHT, f"[preflight] CLI NOT FOUND at {cli_path}")
            self._emit(run, OutputStreamName.RECOVERY, "[recovery] Install the agent CLI or set cli_path")
            raise PreflightFailure(
                BlockedReason.PREFLIGHT_CLI_NOT_AVAILABLE.value,
                f"Preflight check failed: CLI not available. {auth.error or ''}".strip(),
            )
        self._emit(run, OutputStreamName.PREFLIGHT, "[preflight] cli found")

        if not auth.logged_in:
            self._emit(run, OutputStreamName.PREFLIGHT, "[preflight] NOT LOGGED IN -> ERROR")
            self._emit(
                run,
                OutputStreamName.RECOVERY,
                "[recovery] claude login / claude setup-token / set ANTHROPIC_API_KEY",
            )
            steps = "\n  - ".join(RECOVERY_STEPS)
            raise PreflightFailure(
                BlockedReason.PREFLIGHT_AUTH_FAILED.value,
                f"Preflight check failed: CLI not logged in. {auth.error or ''}\n\n"
                f"Recovery steps:\n  - {steps}",
                should_retry=auth.should_retry,
            )
        if auth.error:
            logger.warning(f"Task {run.task.id}: auth probe: {auth.error}")
        self._emit(run, OutputStreamName.PREFLIGHT, "[preflight] login OK")

    # --- Process ---

    async def _run_process(self, run: _Execution) -> int:
        """Spawn the CLI, stream its output and wait for exit. Returns the exit code."""
        task = run.task
        cfg = self.config
        args = build_cli_args(task, cfg)
        overall = "DISABLED" if cfg.disable_overall_timeout else f"{cfg.timeout}s"

        logger.debug(
            f"Task {task.id}: timeouts soft={cfg.soft_timeout}s silence_log={cfg.silence_log_interval}s "
            f"overall={overall} progress_aware={cfg.progress_aware_timeout}"
        )
        self._emit(run, OutputStreamName.SPAWN, "[spawn] start")
        self._emit(
            run,
            OutputStreamName.SPAWN,
            f"[spawn] command: {cfg.cli_path} {' '.join(args[:-1])} <prompt>",
        )
        self._emit(run, OutputStreamName.SPAWN, f"[spawn] cwd: {task.working_directory}")
        self._emit(
            run,
            OutputStreamName.SPAWN,
            f"[spawn] timeout: soft={cfg.soft_timeout}s overall={overall}",
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                cfg.cli_path,
                *args,
                cwd=str(task.working_directory),
                env=dict(build_child_env()),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnFailure(f"Failed to spawn agent CLI: {e}") from e

        run.proc = proc
        # No interactive input is ever available
        if proc.stdin is not None:
            proc.stdin.close()
        run.state = ExecutionState.RUNNING
        run.last_output = time.monotonic()
        logger.info(f"Task {task.id}: spawned {cfg.cli_path} pid={proc.pid}")
        self._emit(run, OutputStreamName.SPAWN, f"[spawn] pid: {proc.pid}")

        self._arm_timers(run)
        readers = [
            asyncio.create_task(self._read_stream(run, proc.stdout, OutputStreamName.STDOUT)),
            asyncio.create_task(self._read_stream(run, proc.stderr, OutputStreamName.STDERR)),
        ]
        try:
            exit_code = await proc.wait()
            # Natural exit came first; only prompt detection may still block while draining
            for name in ("overall", "soft", "silence"):
                run.timers.cancel(name)
            try:
                await asyncio.wait_for(asyncio.gather(*readers), timeout=cfg.stream_drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Task {task.id}: output pipes still open {cfg.stream_drain_timeout}s after exit"
                )
        finally:
            run.timers.cancel_all()
            for reader in readers:
                reader.cancel()
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        logger.info(
            f"Task {task.id}: process exited code={exit_code} duration={run.elapsed_ms}ms "
            f"blocked={run.is_blocked}"
        )
        return exit_code

    async def _read_stream(
        self,
        run: _Execution,
        stream: asyncio.StreamReader | None,
        name: OutputStreamName,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                self._on_output(run, name, text)
            if not data:
                return

    def _on_output(self, run: _Execution, name: OutputStreamName, text: str) -> None:
        """Buffer, broadcast and scan one decoded chunk, in read order."""
        parts = run.stdout_parts if name == OutputStreamName.STDOUT else run.stderr_parts
        parts.append(text)
        self._emit(run, name, text)
        run.last_output = time.monotonic()

        cfg = self.config
        still_running = run.proc is not None and run.proc.returncode is None
        if (
            cfg.progress_aware_timeout
            and not cfg.disable_overall_timeout
            and not run.is_blocked
            and still_running
        ):
            run.timers.schedule("overall", cfg.timeout, lambda: self._on_overall_timeout(run))

        if not run.is_blocked and contains_interactive_prompt(text):
            logger.warning(
                f"Task {run.task.id}: interactive prompt detected on {name.value}: {text[:200]!r}"
            )
            self._escalate(
                run,
                BlockedReason.INTERACTIVE_PROMPT,
                TerminatedBy.REPL_FAIL_CLOSED,
                f"[system] interactive prompt detected on {name.value} - terminating",
                OutputStreamName.SYSTEM,
            )

    # --- Timers ---

    def _arm_timers(self, run: _Execution) -> None:
        cfg = self.config
        run.timers.schedule("soft", cfg.soft_timeout, lambda: self._on_soft_timeout(run))
        run.timers.every("silence", cfg.silence_log_interval, lambda: self._on_silence_check(run))
        if not cfg.disable_overall_timeout:
            run.timers.schedule("overall", cfg.timeout, lambda: self._on_overall_timeout(run))

    def _on_soft_timeout(self, run: _Execution) -> None:
        if run.is_blocked:
            return
        logger.warning(
            f"Task {run.task.id}: soft timeout, running longer than {self.config.soft_timeout}s"
        )
        self._emit(
            run,
            OutputStreamName.TIMEOUT,
            f"[timeout] soft timeout {self.config.soft_timeout}s exceeded (continuing)",
        )

    def _on_silence_check(self, run: _Execution) -> None:
        if run.is_blocked:
            return
        silent = time.monotonic() - run.last_output
        if silent < self.config.silence_log_interval:
            return
        total = time.monotonic() - run.started
        logger.warning(f"Task {run.task.id}: silent for {silent:.0f}s (total {total:.0f}s), continuing")
        self._emit(
            run,
            OutputStreamName.TIMEOUT,
            f"[timeout] silent={silent:.0f}s total={total:.0f}s (continuing)",
        )

    def _on_overall_timeout(self, run: _Execution) -> None:
        mode = "NO PROGRESS" if self.config.progress_aware_timeout else "OVERALL"
        logger.warning(f"Task {run.task.id}: {mode} timeout after {self.config.timeout}s")
        self._escalate(
            run,
            BlockedReason.TIMEOUT,
            TerminatedBy.TIMEOUT,
            f"[timeout] {mode} TIMEOUT exceeded {self.config.timeout}s - terminating",
            OutputStreamName.TIMEOUT,
        )

    # --- Escalation ---

    def _escalate(
        self,
        run: _Execution,
        reason: BlockedReason,
        terminated_by: TerminatedBy,
        message: str,
        stream: OutputStreamName,
    ) -> None:
        """Terminate now, kill after the grace window. Only the first cause counts."""
        if not run.block(reason, terminated_by):
            return
        self._emit(run, stream, message)
        for name in ("overall", "soft", "silence"):
            run.timers.cancel(name)

        proc = run.proc
        if proc is None or proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        run.timers.schedule("kill", self.config.sigterm_grace, lambda: self._force_kill(run))

    def _force_kill(self, run: _Execution) -> None:
        proc = run.proc
        if proc is None or proc.returncode is not None:
            return
        logger.warning(
            f"Task {run.task.id}: pid {proc.pid} survived SIGTERM for "
            f"{self.config.sigterm_grace}s, sending SIGKILL"
        )
        self._emit(run, OutputStreamName.TIMEOUT, "[timeout] force kill (SIGKILL)")
        with contextlib.suppress(ProcessLookupError):
            proc.kill()

    # --- Evidence ---

    async def _write_artifact(self, run: _Execution, output: str) -> VerifiedFile | None:
        task = run.task
        try:
            artifact = await asyncio.to_thread(
                write_evidence_artifact,
                task.working_directory,
                self.config.evidence_dir,
                task,
                output,
                run.elapsed_ms,
            )
        except EvidenceWriteError as e:
            logger.warning(f"Task {task.id}: {e}")
            self._emit(run, OutputStreamName.ERROR, f"[evidence] write failed: {e}")
            return None
        logger.info(f"Task {task.id}: wrote evidence artifact {artifact.path}")
        self._emit(run, OutputStreamName.SYSTEM, f"[evidence] {artifact.path}")
        return artifact

    # --- Helpers ---

    def _emit(self, run: _Execution, stream: OutputStreamName, text: str) -> None:
        self.broadcaster.emit(run.task.id, stream.value, text)

    def _result(
        self,
        run: _Execution,
        status: ExecutionStatus,
        error_text: str | None = None,
        report: EvidenceReport | None = None,
        executed: bool = False,
        blocked: bool = False,
        blocked_reason: BlockedReason | None = None,
        terminated_by: TerminatedBy | None = None,
        timeout_ms: int | None = None,
        should_retry: bool = False,
    ) -> ExecutionResult:
        max_bytes = self.config.max_output_bytes
        report = report or EvidenceReport()
        return ExecutionResult(
            status=status,
            output=truncate_output(run.stdout, max_bytes),
            error_text=truncate_output(error_text, max_bytes) if error_text else None,
            modified_files=report.modified_files,
            verified_files=report.verified_files,
            unverified_files=report.unverified_files,
            duration_ms=run.elapsed_ms,
            working_directory=str(run.task.working_directory),
            executed=executed,
            blocked=blocked,
            blocked_reason=blocked_reason,
            terminated_by=terminated_by,
            timeout_ms=timeout_ms,
            should_retry=should_retry,
        )
