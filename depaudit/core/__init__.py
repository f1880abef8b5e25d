"""Core data model and aggregation."""

from depaudit.core.aggregator import ReportAggregator
from depaudit.core.models import (
    Alert,
    AlertStatus,
    AuditLevel,
    ExceptionEntry,
    Finding,
    FindingSet,
    PipelineRun,
    PolicyScope,
    RunOutcome,
    StageOutcome,
    Trigger,
    TriggerKind,
)
from depaudit.core.severity import Severity

__all__ = [
    "Alert",
    "AlertStatus",
    "AuditLevel",
    "ExceptionEntry",
    "Finding",
    "FindingSet",
    "PipelineRun",
    "PolicyScope",
    "ReportAggregator",
    "RunOutcome",
    "Severity",
    "StageOutcome",
    "Trigger",
    "TriggerKind",
]
