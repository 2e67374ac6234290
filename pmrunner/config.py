"""Project configuration for the runner.

Sources, highest precedence first:
1. Explicit overrides passed by the caller (CLI flags)
2. PMRUNNER_* environment variables
3. <repo>/.pmrunner/config.yaml
4. SupervisorConfig defaults
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import fields
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from pmrunner.core.errors import ConfigError
from pmrunner.executor.supervisor import SupervisorConfig

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".pmrunner"
CONFIG_FILENAME = "config.yaml"

_POSITIVE_NUMBER = {"type": "number", "exclusiveMinimum": 0}

CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "cli_path": {"type": "string", "minLength": 1},
        "timeout": _POSITIVE_NUMBER,
        "soft_timeout": _POSITIVE_NUMBER,
        "silence_log_interval": _POSITIVE_NUMBER,
        "sigterm_grace": _POSITIVE_NUMBER,
        "disable_overall_timeout": {"type": "boolean"},
        "progress_aware_timeout": {"type": "boolean"},
        "version_probe_timeout": _POSITIVE_NUMBER,
        "auth_probe_timeout": _POSITIVE_NUMBER,
        "allowed_tools": {
            "type": "array",
            "items": {"type": "string", "pattern": "^[A-Za-z][A-Za-z0-9_]*$"},
            "minItems": 1,
        },
        "evidence_dir": {"type": "string", "minLength": 1},
        "max_output_bytes": {"type": "integer", "minimum": 1024},
        "stream_drain_timeout": _POSITIVE_NUMBER,
        "skip_dirs": {"type": "array", "items": {"type": "string", "minLength": 1}},
    },
}

# Environment variable -> SupervisorConfig field
ENV_OVERRIDES: dict[str, str] = {
    "PMRUNNER_CLI_PATH": "cli_path",
    "PMRUNNER_TIMEOUT": "timeout",
    "PMRUNNER_SOFT_TIMEOUT": "soft_timeout",
    "PMRUNNER_SILENCE_LOG_INTERVAL": "silence_log_interval",
}

DEFAULT_CONFIG_YAML = """\
# pm-runner configuration. All durations are in seconds.
# Every key is optional; omitted keys use the defaults shown here.

# cli_path: claude
# timeout: 600            # overall safety-net timeout
# soft_timeout: 60        # informational warning only
# silence_log_interval: 30
# sigterm_grace: 5
# disable_overall_timeout: false
# progress_aware_timeout: false
# allowed_tools: [Write, Edit, Read, Bash]
# evidence_dir: .pmrunner/evidence
"""


def config_path(repo_path: Path) -> Path:
    return repo_path / CONFIG_DIRNAME / CONFIG_FILENAME


def _validate(raw: dict, source: str) -> None:
    try:
        jsonschema.validate(raw, CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ConfigError(
            f"Config validation failed in {source}: {e.message}\n"
            f"Path: {' -> '.join(str(p) for p in e.absolute_path)}"
        )

    evidence_dir = Path(raw.get("evidence_dir", "."))
    if evidence_dir.is_absolute() or ".." in evidence_dir.parts:
        raise ConfigError(f"evidence_dir must be a relative path inside the repo in {source}")


def load_file_config(repo_path: Path) -> dict[str, Any]:
    """Read and validate <repo>/.pmrunner/config.yaml. Missing file yields {}."""
    path = config_path(repo_path)
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except (yaml.YAMLError, OSError) as e:
        raise ConfigError(f"Invalid config in {path}: {e}")

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid config in {path}: expected a mapping")
    _validate(raw, str(path))
    return raw


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect PMRUNNER_* overrides. Invalid numbers are ignored with a warning."""
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for var, field_name in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        if field_name == "cli_path":
            values[field_name] = raw
            continue
        try:
            number = float(raw)
        except ValueError:
            logger.warning(f"Ignoring {var}={raw!r}: not a number")
            continue
        if number <= 0:
            logger.warning(f"Ignoring {var}={raw!r}: must be positive")
            continue
        values[field_name] = number
    return values


def load_config(
    repo_path: Path,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> SupervisorConfig:
    """Build a SupervisorConfig for repo_path.

    Raises:
        ConfigError: if the config file is unreadable, or the file or the
            explicit overrides fail validation
    """
    merged: dict[str, Any] = {}
    merged.update(load_file_config(repo_path))
    merged.update(env_overrides(environ))
    explicit = {k: v for k, v in (overrides or {}).items() if v is not None}
    merged.update(explicit)

    known = {f.name for f in fields(SupervisorConfig)}
    unknown = set(merged) - known
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
    _validate(explicit, "explicit overrides")

    if "skip_dirs" in merged:
        merged["skip_dirs"] = frozenset(merged["skip_dirs"])
    if "allowed_tools" in merged:
        merged["allowed_tools"] = list(merged["allowed_tools"])
    for name in ("timeout", "soft_timeout", "silence_log_interval"):
        if name in merged:
            merged[name] = float(merged[name])

    config = SupervisorConfig(**merged)
    logger.debug(f"Loaded config for {repo_path}: {config}")
    return config


def write_default_config(repo_path: Path, force: bool = False) -> Path:
    """Create <repo>/.pmrunner/config.yaml with commented defaults.

    Raises:
        ConfigError: if the file exists and force is False
    """
    path = config_path(repo_path)
    if path.exists() and not force:
        raise ConfigError(f"{path} already exists (use --force to overwrite)")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
    return path
