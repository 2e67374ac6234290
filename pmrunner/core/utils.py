"""Shared helpers for paths and captured output."""

import re
import uuid
from pathlib import Path


def sanitize_path_component(name: str) -> str:
    """Sanitize a string for use as a single path component.

    Task ids end up in evidence file names, so separators, null bytes and
    leading dots are removed to keep the file inside the evidence directory.
    """
    sanitized = re.sub(r"[/\\\x00]", "-", name)
    sanitized = sanitized.lstrip(".")
    sanitized = sanitized[:64]
    if not sanitized:
        sanitized = uuid.uuid4().hex[:16]
    return sanitized


def relative_to_workdir(file_path: str | Path, workdir: Path) -> str:
    """Return file_path relative to workdir using forward slashes.

    Paths outside workdir are returned resolved and absolute.
    """
    path = Path(file_path)
    resolved_root = workdir.resolve()
    resolved = path.resolve() if path.is_absolute() else (resolved_root / path).resolve()
    try:
        return resolved.relative_to(resolved_root).as_posix()
    except ValueError:
        return str(resolved)


def truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding a truncation notice if needed."""
    encoded = output.encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return output

    # Cut by bytes without splitting a UTF-8 sequence
    truncated = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"
