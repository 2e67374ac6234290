"""Final status derivation for a finished (not blocked) execution.

The priority order ERROR > NO_EVIDENCE > COMPLETE > INCOMPLETE lives in
STATUS_RULES as data. The first rule whose predicate holds decides.
"""

from collections.abc import Callable
from dataclasses import dataclass

from pmrunner.core.models import ExecutionStatus


@dataclass(frozen=True)
class EvidenceFacts:
    """Everything the decision is allowed to look at."""

    exit_code: int | None
    has_unverified: bool
    has_verified: bool
    read_only: bool
    artifact_written: bool = False
    claims_success: bool = False


@dataclass(frozen=True)
class StatusRule:
    name: str
    applies: Callable[[EvidenceFacts], bool]
    status: ExecutionStatus


STATUS_RULES: tuple[StatusRule, ...] = (
    StatusRule("nonzero_exit", lambda f: f.exit_code != 0, ExecutionStatus.ERROR),
    StatusRule("unverified_claim", lambda f: f.has_unverified, ExecutionStatus.NO_EVIDENCE),
    StatusRule("verified_files", lambda f: f.has_verified, ExecutionStatus.COMPLETE),
    StatusRule(
        "read_only_artifact",
        lambda f: f.read_only and f.artifact_written,
        ExecutionStatus.COMPLETE,
    ),
    # Read-only task whose artifact could not be written
    StatusRule("read_only_no_artifact", lambda f: f.read_only, ExecutionStatus.NO_EVIDENCE),
    StatusRule("success_claim", lambda f: f.claims_success, ExecutionStatus.INCOMPLETE),
    StatusRule("default", lambda f: True, ExecutionStatus.NO_EVIDENCE),
)


def decide_status(facts: EvidenceFacts) -> tuple[ExecutionStatus, str]:
    """Return (status, name of the deciding rule)."""
    for rule in STATUS_RULES:
        if rule.applies(facts):
            return rule.status, rule.name
    raise AssertionError("STATUS_RULES must end with a catch-all rule")
