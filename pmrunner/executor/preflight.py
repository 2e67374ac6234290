"""Preflight probes run before the agent CLI is spawned for real.

Both probes use the sanitized environment and a hard bound. Their job is to
turn "binary missing" and "not logged in" into configuration errors up front,
so neither can later masquerade as a hung execution.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from pmrunner.core.models import AuthCheckResult
from pmrunner.executor.detection import contains_auth_error
from pmrunner.executor.environment import build_child_env, build_sanitized_env

logger = logging.getLogger(__name__)

VERSION_PROBE_TIMEOUT = 5.0
AUTH_PROBE_TIMEOUT = 15.0

AUTH_PROBE_ARGS = (
    "--print",
    "--dangerously-skip-permissions",
    "--no-session-persistence",
    "echo test",
)

# 128 + SIGKILL from a shell wrapper, or -SIGKILL from asyncio
KILLED_EXIT_CODES = frozenset({137, -9})

READ_CHUNK_SIZE = 4096


@dataclass
class ProbeOutcome:
    """Raw result of one bounded probe invocation."""

    returncode: int | None = None
    output: str = ""
    timed_out: bool = False
    spawn_error: str | None = None


class CliProbe:
    """Bounded version and auth probes against the agent CLI binary."""

    def __init__(
        self,
        cli_path: str = "claude",
        version_timeout: float = VERSION_PROBE_TIMEOUT,
        auth_timeout: float = AUTH_PROBE_TIMEOUT,
    ):
        self.cli_path = cli_path
        self.version_timeout = version_timeout
        self.auth_timeout = auth_timeout

    async def check_cli_available(self) -> bool:
        """True if `<cli> --version` exits 0 within the version bound."""
        outcome = await self._run_probe(["--version"], build_sanitized_env(), self.version_timeout)
        if outcome.spawn_error:
            logger.info(f"CLI not available at {self.cli_path}: {outcome.spawn_error}")
            return False
        if outcome.timed_out:
            logger.warning(f"CLI version probe timed out after {self.version_timeout}s")
            return False
        return outcome.returncode == 0

    async def check_auth_status(self) -> AuthCheckResult:
        """Check the CLI exists, then that a minimal invocation does not hit an auth error.

        Auth-error text always wins, even when the probe was killed at its
        bound. A timeout or a non-zero exit without such text is treated as
        logged in, except for SIGKILL, which is reported as retryable.
        """
        if not await self.check_cli_available():
            return AuthCheckResult(
                available=False,
                logged_in=False,
                error=f"Agent CLI not found at: {self.cli_path}",
            )

        outcome = await self._run_probe(list(AUTH_PROBE_ARGS), build_child_env(), self.auth_timeout)

        if outcome.spawn_error:
            return AuthCheckResult(
                available=True,
                logged_in=False,
                error=f"Error checking auth status: {outcome.spawn_error}",
            )

        if contains_auth_error(outcome.output):
            return AuthCheckResult(
                available=True,
                logged_in=False,
                error="Agent CLI not logged in. Please run: claude setup-token",
            )

        if outcome.timed_out:
            logger.warning(
                f"Auth probe timed out after {self.auth_timeout}s without auth errors; "
                "assuming logged in"
            )
            return AuthCheckResult(
                available=True,
                logged_in=True,
                error="Auth check timed out (assuming logged in)",
            )

        if outcome.returncode == 0:
            return AuthCheckResult(available=True, logged_in=True)

        if outcome.returncode in KILLED_EXIT_CODES:
            return AuthCheckResult(
                available=True,
                logged_in=False,
                error=f"Auth check process killed (exit {outcome.returncode} / SIGKILL). Please retry.",
                should_retry=True,
            )

        logger.warning(f"Auth probe exited with code {outcome.returncode} without auth errors")
        return AuthCheckResult(
            available=True,
            logged_in=True,
            error=f"CLI exited with code {outcome.returncode}: {outcome.output.strip()[:500]}",
        )

    async def _run_probe(
        self,
        args: list[str],
        env: Mapping[str, str],
        timeout: float,
    ) -> ProbeOutcome:
        """Run the CLI with args, collecting combined output until exit or timeout.

        Output is read incrementally so text produced before a timeout is
        still available to the caller.
        """
        outcome = ProbeOutcome()
        try:
            proc = await asyncio.create_subprocess_exec(
                self.cli_path,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env),
            )
        except OSError as e:
            outcome.spawn_error = str(e)
            return outcome

        if proc.stdin is not None:
            proc.stdin.close()

        parts: list[bytes] = []

        async def collect(stream: asyncio.StreamReader | None) -> None:
            if stream is None:
                return
            while True:
                data = await stream.read(READ_CHUNK_SIZE)
                if not data:
                    return
                parts.append(data)

        try:
            await asyncio.wait_for(
                asyncio.gather(collect(proc.stdout), collect(proc.stderr), proc.wait()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            outcome.timed_out = True
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        outcome.returncode = proc.returncode
        outcome.output = b"".join(parts).decode("utf-8", errors="replace")
        return outcome
