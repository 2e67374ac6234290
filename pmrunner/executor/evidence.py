"""Independent file-system evidence for supervised executions.

The verifier is the only component allowed to assert "this file exists".
It compares two directory snapshots, then re-checks every candidate directly
on disk. Diff detection can race with file-system flush timing, so the
second, independent existence check is the authority, not the diff.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from pmrunner.core.errors import EvidenceWriteError
from pmrunner.core.models import Task, VerifiedFile
from pmrunner.core.utils import relative_to_workdir, sanitize_path_component

logger = logging.getLogger(__name__)

DEFAULT_SKIP_DIRS = frozenset(
    {
        "node_modules",
        "__pycache__",
        "venv",
        "dist",
        "build",
        "target",
        "vendor",
    }
)

PREVIEW_MAX_FILE_SIZE = 10_000
PREVIEW_CHARS = 100
ARTIFACT_OUTPUT_CHARS = 10_000


@dataclass(frozen=True)
class FileStat:
    """Snapshot entry for one regular file."""

    mtime_ns: int
    size: int


Snapshot = dict[str, FileStat]


def snapshot_directory(root: Path, skip_dirs: frozenset[str] = DEFAULT_SKIP_DIRS) -> Snapshot:
    """Map every regular file under root to its mtime and size.

    Keys are root-relative POSIX paths. Hidden entries (leading dot),
    skip_dirs and symlinks are ignored. Files that vanish mid-scan are
    simply absent from the snapshot.
    """
    files: Snapshot = {}
    pending = [(root, "")]
    while pending:
        directory, prefix = pending.pop()
        try:
            entries = list(os.scandir(directory))
        except OSError as e:
            logger.debug(f"Snapshot skipped unreadable directory {directory}: {e}")
            continue

        for entry in entries:
            if entry.name.startswith("."):
                continue
            rel_path = f"{prefix}{entry.name}"
            try:
                if entry.is_symlink():
                    continue
                if entry.is_dir():
                    if entry.name not in skip_dirs:
                        pending.append((Path(entry.path), f"{rel_path}/"))
                elif entry.is_file():
                    stat = entry.stat()
                    files[rel_path] = FileStat(mtime_ns=stat.st_mtime_ns, size=stat.st_size)
            except OSError:
                # Deleted between scandir and stat
                continue
    return files


def detect_modified_files(before: Snapshot, after: Snapshot) -> list[str]:
    """Files that are new in after, or whose mtime or size changed."""
    modified = []
    for path, after_stat in after.items():
        before_stat = before.get(path)
        if before_stat is None or before_stat != after_stat:
            modified.append(path)
    return sorted(modified)


def verify_file(workdir: Path, rel_path: str) -> VerifiedFile | None:
    """Check rel_path directly on disk. Returns None if it is not a regular file."""
    full_path = workdir / rel_path
    try:
        if not full_path.is_file():
            return None
        size = full_path.stat().st_size
    except OSError:
        return None

    preview = None
    if size < PREVIEW_MAX_FILE_SIZE:
        try:
            preview = full_path.read_text(encoding="utf-8")[:PREVIEW_CHARS]
        except (OSError, UnicodeDecodeError):
            preview = None  # binary or unreadable
    return VerifiedFile(path=rel_path, exists=True, size=size, preview=preview)


@dataclass
class EvidenceReport:
    """What the verifier could prove about one execution."""

    modified_files: list[str] = field(default_factory=list)
    verified_files: list[VerifiedFile] = field(default_factory=list)
    unverified_files: list[str] = field(default_factory=list)

    @property
    def has_verified(self) -> bool:
        return any(vf.exists for vf in self.verified_files)

    @property
    def has_unverified(self) -> bool:
        return bool(self.unverified_files)


class EvidenceVerifier:
    """Two-pass verification over before/after snapshots plus a live disk check.

    Has no timers and no subprocess knowledge; text produced by the agent is
    never an input.
    """

    def __init__(self, skip_dirs: frozenset[str] = DEFAULT_SKIP_DIRS):
        self.skip_dirs = skip_dirs

    def snapshot(self, workdir: Path) -> Snapshot:
        return snapshot_directory(workdir, self.skip_dirs)

    def verify(self, workdir: Path, before: Snapshot, after: Snapshot) -> EvidenceReport:
        report = EvidenceReport(modified_files=detect_modified_files(before, after))
        seen: set[str] = set()

        # Pass 1: every diff candidate must exist right now
        for rel_path in report.modified_files:
            verified = verify_file(workdir, rel_path)
            if verified is None:
                report.unverified_files.append(rel_path)
            else:
                report.verified_files.append(verified)
            seen.add(rel_path)

        # Pass 2: anything new since the before-snapshot, even if the diff missed it
        for rel_path in after:
            if rel_path in before or rel_path in seen:
                continue
            verified = verify_file(workdir, rel_path)
            if verified is not None:
                report.verified_files.append(verified)
                seen.add(rel_path)

        return report


def evidence_artifact_path(workdir: Path, evidence_dir: str, task_id: str) -> Path:
    return workdir / evidence_dir / f"task-{sanitize_path_component(task_id)}.md"


def render_evidence_artifact(task: Task, output: str, duration_ms: int) -> str:
    kind = task.task_kind.value
    return "\n".join(
        [
            f"# Evidence: Task {task.id}",
            "",
            f"**Task Type:** {kind}",
            f"**Executed At:** {datetime.now(timezone.utc).isoformat()}",
            f"**Duration:** {duration_ms}ms",
            "",
            "## Response Output",
            "",
            "```",
            output[:ARTIFACT_OUTPUT_CHARS],
            "```",
            "",
            "---",
            f"*Auto-generated evidence for {kind} task completion*",
        ]
    )


def write_evidence_artifact(
    workdir: Path,
    evidence_dir: str,
    task: Task,
    output: str,
    duration_ms: int,
) -> VerifiedFile:
    """Write the read-only task evidence file and verify it on disk.

    The file is written to a temp file and atomically moved into place, so a
    failed write never leaves a partial artifact behind.

    Raises:
        EvidenceWriteError: if the artifact would land outside workdir, or
            cannot be written or verified
    """
    target = evidence_artifact_path(workdir, evidence_dir, task.id)
    rel_path = relative_to_workdir(target, workdir)
    # SECURITY: a symlinked evidence dir must not place the artifact outside workdir
    if Path(rel_path).is_absolute():
        raise EvidenceWriteError(f"Evidence artifact {rel_path} escapes the working directory")

    content = render_evidence_artifact(task, output, duration_ms)
    tmp_name: str | None = None
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=target.parent,
            prefix=f".{target.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(content)
        os.replace(tmp_name, target)
        tmp_name = None
    except OSError as e:
        raise EvidenceWriteError(f"Failed to write evidence artifact {target}: {e}") from e
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)

    verified = verify_file(workdir, rel_path)
    if verified is None:
        raise EvidenceWriteError(f"Evidence artifact {target} missing after write")
    return verified.model_copy(update={"preview": content[:PREVIEW_CHARS]})
