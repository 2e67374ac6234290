"""Agent CLI execution: preflight, supervised spawn, timers and evidence."""

from pmrunner.executor.evidence import EvidenceReport, EvidenceVerifier
from pmrunner.executor.preflight import CliProbe
from pmrunner.executor.supervisor import ProcessSupervisor, SupervisorConfig, build_cli_args

__all__ = [
    "CliProbe",
    "EvidenceReport",
    "EvidenceVerifier",
    "ProcessSupervisor",
    "SupervisorConfig",
    "build_cli_args",
]
