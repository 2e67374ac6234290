"""Sanitized environment for the agent CLI subprocess.

SECURITY: The child receives ONLY the variables named in ENV_ALLOWLIST plus
FORCED_ENV_OVERRIDES. A denylist would fail open on any secret-bearing
variable added later, so there is none; API keys never reach the child.
"""

import os
from collections.abc import Mapping
from types import MappingProxyType

ENV_ALLOWLIST: frozenset[str] = frozenset(
    {
        "PATH",
        "HOME",
        "USER",
        "SHELL",
        "LANG",
        "LC_ALL",
        "LC_CTYPE",
        "TERM",
        "TMPDIR",
        "TEMP",
        "TMP",
        "XDG_CONFIG_HOME",
        "XDG_DATA_HOME",
        "XDG_CACHE_HOME",
        "DEBUG",
    }
)

# Applied on top of the allowlist for every agent invocation
FORCED_ENV_OVERRIDES: Mapping[str, str] = MappingProxyType(
    {
        "CI": "true",  # non-interactive marker
        "NO_COLOR": "1",
        "FORCE_COLOR": "0",
    }
)


def build_sanitized_env(source: Mapping[str, str] | None = None) -> Mapping[str, str]:
    """Return an immutable map of the allowlisted variables present in source.

    Args:
        source: Environment to filter (defaults to os.environ)
    """
    source = os.environ if source is None else source
    return MappingProxyType({key: source[key] for key in sorted(ENV_ALLOWLIST) if key in source})


def build_child_env(source: Mapping[str, str] | None = None) -> Mapping[str, str]:
    """Allowlisted variables plus the forced non-interactive/no-color overrides."""
    env = dict(build_sanitized_env(source))
    env.update(FORCED_ENV_OVERRIDES)
    return MappingProxyType(env)
