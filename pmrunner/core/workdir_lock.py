"""File-based lock guarding a working directory against concurrent modifying runs.

The supervisor itself does not enforce single-writer access; callers that run
modifying tasks (the CLI among them) take this lock around execute().
"""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from pmrunner.core.errors import RunnerError

logger = logging.getLogger(__name__)


class WorkdirBusyError(RunnerError):
    """Another execution holds the working directory lock."""

    pass


class WorkdirLock:
    """Exclusive inter-process lock on a working directory.

    The lock file lives in the hidden .pmrunner directory, which directory
    snapshots skip, so taking the lock never shows up as a modified file.
    """

    LOCK_TIMEOUT: float = 30.0
    LOCK_DIRNAME = ".pmrunner"
    LOCK_FILENAME = ".workdir_lock"

    def __init__(self, workdir: Path, timeout: float | None = None):
        self.workdir = workdir.resolve()
        self.timeout = self.LOCK_TIMEOUT if timeout is None else timeout
        self._filelock: FileLock | None = None
        self.acquired = False

    @property
    def lock_path(self) -> Path:
        return self.workdir / self.LOCK_DIRNAME / self.LOCK_FILENAME

    def __enter__(self) -> WorkdirLock:
        lock_dir = self.lock_path.parent

        # SECURITY: refuse to follow a symlinked lock directory out of the workdir
        if lock_dir.is_symlink():
            raise RunnerError(f"SECURITY: {lock_dir} is a symlink; refusing to lock.")

        lock_dir.mkdir(parents=True, exist_ok=True)
        try:
            lock_dir.resolve().relative_to(self.workdir)
        except ValueError:
            raise RunnerError(f"SECURITY: {lock_dir} escapes the working directory.")

        self._filelock = FileLock(str(self.lock_path), timeout=self.timeout)
        try:
            self._filelock.acquire()
        except FileLockTimeout:
            raise WorkdirBusyError(
                f"Working directory {self.workdir} is locked by another run "
                f"(waited {self.timeout}s)"
            )
        self.acquired = True
        logger.debug(f"Acquired workdir lock {self.lock_path}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._filelock is not None and self.acquired:
            with contextlib.suppress(Exception):
                self._filelock.release()
            self.acquired = False
        return False
