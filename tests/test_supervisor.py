"""Tests for ProcessSupervisor against fake agent CLIs.

Tests cover:
- Preflight fail-closed behavior (missing CLI, auth failure, SIGKILLed probe)
- Blocking escalation on interactive prompts (terminate, then kill)
- Timeout policy (soft, silence logging, overall, progress-aware, disabled)
- Evidence-based status determination
- Sanitized environment, closed stdin and CLI arguments
- Internal faults mapped to ERROR results

Each fake CLI is a small Python script run by the current interpreter, so
these tests spawn real subprocesses but need no network or real agent.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from pmrunner.core.errors import EvidenceWriteError
from pmrunner.core.models import (
    AuthCheckResult,
    BlockedReason,
    ExecutionStatus,
    TaskKind,
    TerminatedBy,
)
from pmrunner.executor.evidence import EvidenceReport, EvidenceVerifier
from pmrunner.executor.supervisor import ProcessSupervisor, SupervisorConfig, build_cli_args


class _LoggedInProbe:
    """Probe stub that always passes preflight."""

    async def check_auth_status(self) -> AuthCheckResult:
        return AuthCheckResult(available=True, logged_in=True)


def _execute(supervisor: ProcessSupervisor, task):
    return asyncio.run(supervisor.execute(task))


def _texts(broadcaster, task_id: str = "task-001") -> list[str]:
    return [chunk.text for chunk in broadcaster.get_by_task_id(task_id)]


WRITE_HELLO = """
open("hello.py", "w").write("print('hello')\\n")
print("Wrote hello.py")
"""

# =============================================================================
# CLI Arguments
# =============================================================================


class TestBuildCliArgs:
    """Tests for the non-interactive invocation contract."""

    def test_args_without_model(self, make_task):
        args = build_cli_args(make_task(prompt="do it"), SupervisorConfig())
        assert args == [
            "--print",
            "--dangerously-skip-permissions",
            "--tools",
            "Write,Edit,Read,Bash",
            "--no-session-persistence",
            "do it",
        ]

    def test_model_flag_before_prompt(self, make_task):
        args = build_cli_args(make_task(prompt="do it", model="sonnet"), SupervisorConfig())
        assert args[-3:] == ["--model", "sonnet", "do it"]

    def test_custom_tools(self, make_task):
        config = SupervisorConfig(allowed_tools=["Read"])
        assert "Read" == build_cli_args(make_task(), config)[3]


# =============================================================================
# Preflight
# =============================================================================


class TestPreflight:
    """Preflight failures are configuration errors, never hangs."""

    def test_missing_cli_is_error_not_blocked(self, tmp_path, make_task, broadcaster, fast_config):
        supervisor = ProcessSupervisor(fast_config(str(tmp_path / "missing-cli")), broadcaster)
        result = _execute(supervisor, make_task())

        assert result.status == ExecutionStatus.ERROR
        assert result.blocked_reason == BlockedReason.PREFLIGHT_CLI_NOT_AVAILABLE
        assert result.terminated_by == TerminatedBy.PREFLIGHT_FAIL_CLOSED
        assert result.blocked is False
        assert not result.executed
        texts = _texts(broadcaster)
        assert any(t.startswith("[preflight] CLI NOT FOUND") for t in texts)
        assert any(t.startswith("[recovery]") for t in texts)

    def test_auth_failure(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(auth_output="Error: not logged in\n", auth_exit=1, body=WRITE_HELLO)
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), make_task())

        assert result.status == ExecutionStatus.ERROR
        assert result.blocked_reason == BlockedReason.PREFLIGHT_AUTH_FAILED
        assert result.terminated_by == TerminatedBy.PREFLIGHT_FAIL_CLOSED
        assert "claude login" in result.error_text
        assert "claude setup-token" in result.error_text
        # Never spawned for real
        assert not (make_task().working_directory / "hello.py").exists()

    @pytest.mark.slow
    def test_auth_failure_when_probe_hangs_near_bound(
        self, fake_cli, make_task, broadcaster, fast_config
    ):
        cli = fake_cli(auth_output="Authentication required\n", auth_sleep=30)
        config = fast_config(cli, auth_probe_timeout=0.5)
        result = _execute(ProcessSupervisor(config, broadcaster), make_task())

        assert result.status == ExecutionStatus.ERROR
        assert result.blocked_reason == BlockedReason.PREFLIGHT_AUTH_FAILED

    def test_sigkilled_auth_probe_is_retryable_error(
        self, fake_cli, make_task, broadcaster, fast_config
    ):
        result = _execute(
            ProcessSupervisor(fast_config(fake_cli(auth_exit=137)), broadcaster), make_task()
        )

        assert result.status == ExecutionStatus.ERROR
        assert result.blocked_reason == BlockedReason.PREFLIGHT_AUTH_FAILED
        assert result.should_retry is True


# =============================================================================
# Blocking Escalation
# =============================================================================


class TestInteractivePromptBlocking:
    """An agent waiting for input is terminated and reported BLOCKED."""

    def test_prompt_on_stdout_blocks(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(
            body="""
            open("hello.py", "w").write("x")
            sys.stdout.write("Overwrite hello.py? [y/N] ")
            sys.stdout.flush()
            time.sleep(30)
            """
        )
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), make_task())

        assert result.status == ExecutionStatus.BLOCKED
        assert result.blocked is True
        assert result.blocked_reason == BlockedReason.INTERACTIVE_PROMPT
        assert result.terminated_by == TerminatedBy.REPL_FAIL_CLOSED
        assert result.timeout_ms is not None
        assert result.duration_ms < 10_000
        # No evidence scanning for blocked executions
        assert result.verified_files == []
        assert "[y/N]" in result.output

    def test_prompt_on_stderr_blocks(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(
            body="""
            sys.stderr.write("Press Enter to continue\\n")
            sys.stderr.flush()
            time.sleep(30)
            """
        )
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), make_task())

        assert result.status == ExecutionStatus.BLOCKED
        assert result.blocked_reason == BlockedReason.INTERACTIVE_PROMPT

    @pytest.mark.slow
    def test_sigterm_ignored_escalates_to_kill(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(
            body="""
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            print("Do you want to continue (y/n)", flush=True)
            time.sleep(30)
            """
        )
        config = fast_config(cli, sigterm_grace=0.3)
        result = _execute(ProcessSupervisor(config, broadcaster), make_task())

        assert result.status == ExecutionStatus.BLOCKED
        assert result.duration_ms < 10_000
        assert "[timeout] force kill (SIGKILL)" in _texts(broadcaster)

    @pytest.mark.slow
    def test_first_blocking_cause_wins(self, fake_cli, make_task, broadcaster, fast_config):
        """A prompt detected first is not relabelled by a later overall timeout."""
        cli = fake_cli(
            body="""
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            print("Would you like me to proceed", flush=True)
            time.sleep(30)
            """
        )
        config = fast_config(cli, timeout=1.5, sigterm_grace=2.5)
        result = _execute(ProcessSupervisor(config, broadcaster), make_task())

        assert result.blocked_reason == BlockedReason.INTERACTIVE_PROMPT
        assert result.terminated_by == TerminatedBy.REPL_FAIL_CLOSED
        assert not any("TIMEOUT exceeded" in t for t in _texts(broadcaster))


# =============================================================================
# Timeout Policy
# =============================================================================


class TestTimeouts:
    """Only the overall timeout may terminate a healthy-looking process."""

    @pytest.mark.slow
    def test_silence_and_soft_timeout_only_log(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(body="time.sleep(1.0)\n" + WRITE_HELLO)
        config = fast_config(cli, timeout=10.0, soft_timeout=0.2, silence_log_interval=0.2)
        result = _execute(ProcessSupervisor(config, broadcaster), make_task())

        assert result.status == ExecutionStatus.COMPLETE
        texts = _texts(broadcaster)
        assert any(t.startswith("[timeout] silent=") for t in texts)
        assert any(t.startswith("[timeout] soft timeout") for t in texts)

    @pytest.mark.slow
    def test_overall_timeout_blocks(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(body="time.sleep(30)")
        result = _execute(
            ProcessSupervisor(fast_config(cli, timeout=0.5), broadcaster), make_task()
        )

        assert result.status == ExecutionStatus.BLOCKED
        assert result.blocked_reason == BlockedReason.TIMEOUT
        assert result.terminated_by == TerminatedBy.TIMEOUT
        assert result.timeout_ms >= 400
        assert "timed out" in result.error_text
        assert any("OVERALL TIMEOUT exceeded" in t for t in _texts(broadcaster))

    @pytest.mark.slow
    def test_overall_timeout_can_be_disabled(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(body="time.sleep(0.8)\n" + WRITE_HELLO)
        config = fast_config(cli, timeout=0.3, disable_overall_timeout=True)
        result = _execute(ProcessSupervisor(config, broadcaster), make_task())

        assert result.status == ExecutionStatus.COMPLETE

    STEADY_OUTPUT = """
    for i in range(8):
        print(f"step {i}", flush=True)
        time.sleep(0.2)
    open("done.txt", "w").write("ok")
    """

    @pytest.mark.slow
    def test_progress_aware_timeout_extends_on_output(
        self, fake_cli, make_task, broadcaster, fast_config
    ):
        cli = fake_cli(body=self.STEADY_OUTPUT)
        config = fast_config(cli, timeout=0.8, progress_aware_timeout=True)
        result = _execute(ProcessSupervisor(config, broadcaster), make_task())

        assert result.status == ExecutionStatus.COMPLETE
        assert [vf.path for vf in result.verified_files] == ["done.txt"]

    @pytest.mark.slow
    def test_fixed_timeout_ignores_progress(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(body=self.STEADY_OUTPUT)
        config = fast_config(cli, timeout=0.8)
        result = _execute(ProcessSupervisor(config, broadcaster), make_task())

        assert result.status == ExecutionStatus.BLOCKED
        assert result.blocked_reason == BlockedReason.TIMEOUT

    @pytest.mark.slow
    def test_progress_aware_timeout_still_bounds_silence(
        self, fake_cli, make_task, broadcaster, fast_config
    ):
        cli = fake_cli(body='print("starting", flush=True)\ntime.sleep(30)')
        config = fast_config(cli, timeout=0.5, progress_aware_timeout=True)
        result = _execute(ProcessSupervisor(config, broadcaster), make_task())

        assert result.status == ExecutionStatus.BLOCKED
        assert any("NO PROGRESS TIMEOUT" in t for t in _texts(broadcaster))


# =============================================================================
# Evidence and Status
# =============================================================================


class TestEvidenceStatus:
    """Status is decided by disk evidence, never by output text."""

    def test_complete_with_verified_file(self, fake_cli, make_task, broadcaster, fast_config):
        result = _execute(
            ProcessSupervisor(fast_config(fake_cli(body=WRITE_HELLO)), broadcaster), make_task()
        )

        assert result.status == ExecutionStatus.COMPLETE
        assert result.executed is True
        assert result.modified_files == ["hello.py"]
        assert [vf.path for vf in result.verified_files] == ["hello.py"]
        assert result.verified_files[0].preview == "print('hello')\n"
        assert result.output == "Wrote hello.py\n"
        assert result.working_directory == str(make_task().working_directory)

    def test_complete_regardless_of_output_text(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(body='open("notes.txt", "w").write("n")\nprint("Nothing was done.")')
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), make_task())
        assert result.status == ExecutionStatus.COMPLETE

    def test_modified_existing_file(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(body='open("src/app.py", "a").write("print(2)\\n")')
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), make_task())

        assert result.status == ExecutionStatus.COMPLETE
        assert result.modified_files == ["src/app.py"]

    def test_read_only_task_writes_evidence_artifact(
        self, fake_cli, make_task, broadcaster, fast_config
    ):
        cli = fake_cli(body='print("The project has two source files.")')
        task = make_task(kind=TaskKind.READ_INFO)
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), task)

        assert result.status == ExecutionStatus.COMPLETE
        assert result.modified_files == []
        (artifact,) = result.verified_files
        assert artifact.path == ".pmrunner/evidence/task-task-001.md"
        content = (task.working_directory / artifact.path).read_text()
        assert "The project has two source files." in content
        assert "**Task Type:** READ_INFO" in content

    def test_report_task_with_real_file_needs_no_artifact(
        self, fake_cli, make_task, broadcaster, fast_config
    ):
        task = make_task(kind=TaskKind.REPORT)
        result = _execute(
            ProcessSupervisor(fast_config(fake_cli(body=WRITE_HELLO)), broadcaster), task
        )

        assert result.status == ExecutionStatus.COMPLETE
        assert [vf.path for vf in result.verified_files] == ["hello.py"]
        assert not (task.working_directory / ".pmrunner" / "evidence").exists()

    def test_artifact_write_failure_is_no_evidence(
        self, fake_cli, make_task, broadcaster, fast_config, mocker
    ):
        mocker.patch(
            "pmrunner.executor.supervisor.write_evidence_artifact",
            side_effect=EvidenceWriteError("disk full"),
        )
        cli = fake_cli(body='print("Summary follows.")')
        result = _execute(
            ProcessSupervisor(fast_config(cli), broadcaster), make_task(kind=TaskKind.READ_INFO)
        )

        assert result.status == ExecutionStatus.NO_EVIDENCE
        assert result.verified_files == []

    def test_no_changes_is_no_evidence(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(body='print("Looked around, nothing to change.")')
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), make_task())

        assert result.status == ExecutionStatus.NO_EVIDENCE
        assert result.executed is True

    def test_success_claim_without_files_is_incomplete(
        self, fake_cli, make_task, broadcaster, fast_config
    ):
        cli = fake_cli(body='print("Created hello.py with a greeting")')
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), make_task())

        assert result.status == ExecutionStatus.INCOMPLETE
        assert result.verified_files == []

    def test_unverified_claim_is_no_evidence(
        self, fake_cli, make_task, broadcaster, fast_config, mocker
    ):
        mocker.patch.object(
            EvidenceVerifier,
            "verify",
            return_value=EvidenceReport(
                modified_files=["ghost.txt"], unverified_files=["ghost.txt"]
            ),
        )
        cli = fake_cli(body='print("Created ghost.txt")')
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), make_task())

        assert result.status == ExecutionStatus.NO_EVIDENCE
        assert result.unverified_files == ["ghost.txt"]

    def test_nonzero_exit_is_error(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(
            body="""
            open("partial.py", "w").write("x")
            sys.stderr.write("fatal: something broke\\n")
            sys.exit(2)
            """
        )
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), make_task())

        assert result.status == ExecutionStatus.ERROR
        assert result.executed is False
        assert "fatal: something broke" in result.error_text
        assert result.blocked_reason is None

    def test_output_truncated_to_limit(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(body='sys.stdout.write("a" * 5000)\n' + WRITE_HELLO)
        config = fast_config(cli, max_output_bytes=1024)
        result = _execute(ProcessSupervisor(config, broadcaster), make_task())

        assert result.output.startswith("a" * 1024)
        assert "[OUTPUT TRUNCATED - exceeded 1024 bytes]" in result.output


# =============================================================================
# Spawn Contract
# =============================================================================


class TestSpawnContract:
    """Environment, stdin and argv seen by the agent CLI."""

    def test_child_env_is_sanitized(self, fake_cli, make_task, broadcaster, fast_config, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-secret")
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_secret")
        cli = fake_cli(body='json.dump(dict(os.environ), open("env.json", "w"))')
        task = make_task()
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), task)

        env = json.loads((task.working_directory / "env.json").read_text())
        assert result.status == ExecutionStatus.COMPLETE
        assert "ANTHROPIC_API_KEY" not in env
        assert "GITHUB_TOKEN" not in env
        assert env["CI"] == "true"
        assert env["NO_COLOR"] == "1"
        assert env["FORCE_COLOR"] == "0"

    def test_stdin_is_closed(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(body='open("stdin.txt", "w").write(repr(sys.stdin.read()))')
        task = make_task()
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), task)

        assert result.status == ExecutionStatus.COMPLETE
        assert (task.working_directory / "stdin.txt").read_text() == "''"

    def test_argv_and_cwd(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(body='json.dump([os.getcwd()] + args, open("args.json", "w"))')
        task = make_task(prompt="Add tests", model="sonnet")
        _execute(ProcessSupervisor(fast_config(cli), broadcaster), task)

        cwd, *argv = json.loads((task.working_directory / "args.json").read_text())
        assert Path(cwd).resolve() == task.working_directory.resolve()
        assert argv[-3:] == ["--model", "sonnet", "Add tests"]
        assert "--no-session-persistence" in argv

    def test_spawn_failure_is_error(self, tmp_path, make_task, broadcaster, fast_config):
        config = fast_config(str(tmp_path / "vanished-cli"))
        supervisor = ProcessSupervisor(config, broadcaster, probe=_LoggedInProbe())
        result = _execute(supervisor, make_task())

        assert result.status == ExecutionStatus.ERROR
        assert result.blocked_reason is None
        assert "Failed to spawn" in result.error_text
        assert any(t.startswith("[spawn] FAILED") for t in _texts(broadcaster))


# =============================================================================
# Streaming and Robustness
# =============================================================================


class TestStreamingAndFaults:
    """Events flow through the broadcaster; internal faults never escape."""

    def test_lifecycle_chunks_in_order(self, fake_cli, make_task, broadcaster, fast_config):
        cli = fake_cli(body='print("hello from agent", flush=True)\n' + WRITE_HELLO)
        _execute(ProcessSupervisor(fast_config(cli), broadcaster), make_task())

        chunks = broadcaster.get_by_task_id("task-001")
        texts = [c.text for c in chunks]
        assert texts[0] == "Task started"
        assert texts[1:4] == ["[preflight] start", "[preflight] cli found", "[preflight] login OK"]
        assert texts[4] == "[spawn] start"
        assert any(t.startswith("[spawn] pid: ") for t in texts)
        assert texts[-1] == "[state] COMPLETE"
        stdout = "".join(c.text for c in chunks if c.stream == "stdout")
        assert stdout == "hello from agent\nWrote hello.py\n"
        assert [c.sequence for c in chunks] == sorted(c.sequence for c in chunks)
        assert broadcaster.get_active_tasks() == []

    def test_concurrent_executions_share_broadcaster(
        self, fake_cli, make_task, broadcaster, fast_config, tmp_path
    ):
        second_dir = tmp_path / "work2"
        second_dir.mkdir()
        first = make_task(task_id="task-a")
        second = first.model_copy(update={"id": "task-b", "working_directory": second_dir})
        supervisor = ProcessSupervisor(fast_config(fake_cli(body=WRITE_HELLO)), broadcaster)

        async def run_both():
            return await asyncio.gather(supervisor.execute(first), supervisor.execute(second))

        results = asyncio.run(run_both())

        assert [r.status for r in results] == [ExecutionStatus.COMPLETE] * 2
        sequences = [c.sequence for c in broadcaster.get_all()]
        assert sequences == sorted(set(sequences))

    def test_internal_fault_becomes_error_result(
        self, fake_cli, make_task, broadcaster, fast_config, mocker
    ):
        mocker.patch.object(EvidenceVerifier, "verify", side_effect=RuntimeError("scanner exploded"))
        cli = fake_cli(body=WRITE_HELLO)
        result = _execute(ProcessSupervisor(fast_config(cli), broadcaster), make_task())

        assert result.status == ExecutionStatus.ERROR
        assert "scanner exploded" in result.error_text
        assert _texts(broadcaster)[-1] == "[state] ERROR"

    def test_failing_subscriber_does_not_break_execution(
        self, fake_cli, make_task, broadcaster, fast_config
    ):
        def broken(chunk):
            raise RuntimeError("ui crashed")

        broadcaster.subscribe(broken)
        result = _execute(
            ProcessSupervisor(fast_config(fake_cli(body=WRITE_HELLO)), broadcaster), make_task()
        )
        assert result.status == ExecutionStatus.COMPLETE
