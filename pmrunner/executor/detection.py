"""Text patterns scanned in agent output.

Matches here are only ever used to decide on termination or to downgrade a
status. They never establish that a file exists.
"""

import re

# Output that means the agent is waiting for input it will never receive
INTERACTIVE_PROMPT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\?\s*$", re.MULTILINE),
    re.compile(r"\[Y/n\]", re.IGNORECASE),
    re.compile(r"\(yes/no\)", re.IGNORECASE),
    re.compile(r"\[y/N\]", re.IGNORECASE),
    re.compile(r"continue\?\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"press enter", re.IGNORECASE),
    re.compile(r"waiting for input", re.IGNORECASE),
    re.compile(r"\(y/n\)", re.IGNORECASE),
    re.compile(r"\[yes/no\]", re.IGNORECASE),
    re.compile(r"enter your", re.IGNORECASE),
    re.compile(r"provide.*key", re.IGNORECASE),
    re.compile(r"paste.*key", re.IGNORECASE),
    re.compile(r"permission.*required", re.IGNORECASE),
    re.compile(r"authorize", re.IGNORECASE),
    re.compile(r"approve\?", re.IGNORECASE),
    re.compile(r"confirm\?", re.IGNORECASE),
    re.compile(r"select.*option", re.IGNORECASE),
    re.compile(r"choose.*:", re.IGNORECASE),
    re.compile(r"which.*\?", re.IGNORECASE),
    re.compile(r"would you like", re.IGNORECASE),
    re.compile(r"do you want", re.IGNORECASE),
)

# Lower-case substrings in probe output that mean the CLI is not logged in
AUTH_ERROR_PATTERNS: tuple[str, ...] = (
    "not logged in",
    "login required",
    "authentication required",
    "authentication failed",
    "unauthorized",
    "invalid token",
    "expired token",
    "please log in",
    "need to log in",
    "sign in",
    "authenticate",
    "api key",
    "subscription required",
    "no subscription",
)

# Success-sounding words that turn NO_EVIDENCE into INCOMPLETE
SUCCESS_CLAIM_PATTERNS: tuple[str, ...] = ("Created", "Updated", "Modified")


def contains_interactive_prompt(text: str) -> bool:
    return any(pattern.search(text) for pattern in INTERACTIVE_PROMPT_PATTERNS)


def contains_auth_error(text: str) -> bool:
    lowered = text.lower()
    return any(pattern in lowered for pattern in AUTH_ERROR_PATTERNS)


def claims_success(text: str) -> bool:
    return any(word in text for word in SUCCESS_CLAIM_PATTERNS)
