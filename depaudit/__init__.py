"""
depaudit

Security-audit pipeline orchestrator for a Rust project's dependency graph:
runs vulnerability, dependency-hygiene and supply-chain scans concurrently,
enforces a documented exception policy, emits a SARIF interchange document
and raises deduplicated alerts when the pipeline's health regresses.
"""

from typing import Final

__version__: Final[str] = "1.0.0"

# Public API exports
from depaudit.config import PipelineConfig
from depaudit.core.models import (
    Alert,
    AuditLevel,
    ExceptionEntry,
    Finding,
    FindingSet,
    PipelineRun,
    PolicyScope,
    Trigger,
    TriggerKind,
)
from depaudit.core.severity import Severity
from depaudit.engine.pipeline import Pipeline, PipelineResult
from depaudit.policy import PolicyStore, load_policy

__all__ = [
    "__version__",
    "Alert",
    "AuditLevel",
    "ExceptionEntry",
    "Finding",
    "FindingSet",
    "Pipeline",
    "PipelineConfig",
    "PipelineResult",
    "PipelineRun",
    "PolicyScope",
    "PolicyStore",
    "Severity",
    "Trigger",
    "TriggerKind",
    "load_policy",
]
