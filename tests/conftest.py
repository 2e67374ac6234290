# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the pm-runner test suite.

This module provides foundational fixtures used across all test modules:
- Temporary working directories with a small file tree
- A fresh OutputBroadcaster per test
- A fake agent CLI factory (executable Python scripts)

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import os
import stat
import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from pmrunner.core.models import Task, TaskKind
from pmrunner.executor.supervisor import SupervisorConfig
from pmrunner.stream.broadcaster import OutputBroadcaster

# =============================================================================
# Working Directory Fixtures
# =============================================================================


@pytest.fixture
def temp_workdir(tmp_path: Path) -> Path:
    """Create a working directory with a few tracked and ignored files.

    Creates:
        - README.md, src/app.py (tracked)
        - .git/HEAD, node_modules/pkg/index.js (skipped by snapshots)

    Returns:
        Path to the working directory.
    """
    workdir = tmp_path / "work"
    (workdir / "src").mkdir(parents=True)
    (workdir / "README.md").write_text("# Project\n")
    (workdir / "src" / "app.py").write_text("print('app')\n")
    (workdir / ".git").mkdir()
    (workdir / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (workdir / "node_modules" / "pkg").mkdir(parents=True)
    (workdir / "node_modules" / "pkg" / "index.js").write_text("module.exports = 1;\n")
    return workdir


@pytest.fixture
def broadcaster() -> OutputBroadcaster:
    """Fresh broadcaster; no state is shared between tests."""
    return OutputBroadcaster()


@pytest.fixture
def make_task(temp_workdir: Path) -> Callable[..., Task]:
    """Factory for tasks rooted in temp_workdir."""

    def _make(
        prompt: str = "Add a hello module",
        task_id: str = "task-001",
        kind: TaskKind = TaskKind.IMPLEMENTATION,
        model: str | None = None,
    ) -> Task:
        return Task(
            id=task_id,
            prompt=prompt,
            working_directory=temp_workdir,
            selected_model=model,
            task_kind=kind,
        )

    return _make


# =============================================================================
# Fake Agent CLI
# =============================================================================

FAKE_CLI_TEMPLATE = """\
#!{python}
import json
import os
import signal
import sys
import time

args = sys.argv[1:]

if args == ["--version"]:
    time.sleep({version_sleep})
    print("fake-agent 1.0.0")
    sys.exit({version_exit})

if args and args[-1] == "echo test":
    sys.stdout.write({auth_output!r})
    sys.stdout.flush()
    time.sleep({auth_sleep})
    sys.exit({auth_exit})

PROMPT = args[-1] if args else ""

{body}
"""


@pytest.fixture
def fake_cli(tmp_path: Path) -> Callable[..., str]:
    """Factory writing an executable fake agent CLI and returning its path.

    The script answers `--version` and the "echo test" auth probe according to
    the arguments; any other invocation runs `body` with PROMPT bound to the
    final positional argument and the working directory as cwd.

    Example:
        def test_something(fake_cli):
            cli = fake_cli(body="open('out.txt', 'w').write('x')")
    """
    counter = {"n": 0}

    def _make(
        body: str = "",
        version_exit: int = 0,
        version_sleep: float = 0,
        auth_output: str = "test\n",
        auth_exit: int = 0,
        auth_sleep: float = 0,
    ) -> str:
        counter["n"] += 1
        path = tmp_path / "bin" / f"fake-agent-{counter['n']}"
        path.parent.mkdir(exist_ok=True)
        path.write_text(
            FAKE_CLI_TEMPLATE.format(
                python=sys.executable,
                version_exit=version_exit,
                version_sleep=version_sleep,
                auth_output=auth_output,
                auth_exit=auth_exit,
                auth_sleep=auth_sleep,
                body=textwrap.dedent(body).strip() or "pass",
            )
        )
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def fast_config() -> Callable[..., SupervisorConfig]:
    """SupervisorConfig factory with timings scaled down for tests."""

    def _make(cli_path: str, **overrides) -> SupervisorConfig:
        values = {
            "cli_path": cli_path,
            "timeout": 10.0,
            "soft_timeout": 5.0,
            "silence_log_interval": 5.0,
            "sigterm_grace": 1.0,
            "version_probe_timeout": 5.0,
            "auth_probe_timeout": 5.0,
            "stream_drain_timeout": 2.0,
        }
        values.update(overrides)
        return SupervisorConfig(**values)

    return _make


@pytest.fixture
def clean_pmrunner_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove PMRUNNER_* overrides inherited from the developer's shell."""
    for name in list(os.environ):
        if name.startswith("PMRUNNER_"):
            monkeypatch.delenv(name, raising=False)


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "integration: marks integration tests")
