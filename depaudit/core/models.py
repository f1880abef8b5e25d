"""
Pipeline data structures.

Defines immutable data classes for findings, exception entries, per-stage
finding sets, pipeline runs and alerts. These structures are designed to be
serializable and safe to share between stage threads: once a stage reaches a
terminal state its FindingSet never changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from depaudit.core.severity import Severity, severity_summary
from depaudit.exceptions import PolicyViolation


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class PolicyScope(str, Enum):
    """What kind of finding an exception entry applies to."""

    ADVISORIES = "advisories"
    LICENSES = "licenses"
    BANS = "dependency-bans"

    @classmethod
    def from_string(cls, value: str) -> "PolicyScope":
        normalized = value.strip().lower().replace("_", "-")
        if normalized == "bans":
            normalized = cls.BANS.value
        try:
            return cls(normalized)
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValueError(f"Invalid scope '{value}'. Valid values: {valid}") from None


class StageOutcome(str, Enum):
    """Terminal state of a single scan stage."""

    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


class RunOutcome(str, Enum):
    """Overall outcome of a pipeline run."""

    SUCCESS = "success"
    DEGRADED = "degraded"


class TriggerKind(str, Enum):
    """Event category that started a pipeline run."""

    SCHEDULED = "scheduled"
    PUSH = "push"
    MANUAL = "manual"

    @classmethod
    def from_string(cls, value: str) -> "TriggerKind":
        """
        Parse a trigger kind, accepting CI event names as well.

        ``schedule`` maps to scheduled, ``workflow_dispatch`` to manual.
        """
        normalized = value.strip().lower()
        aliases = {
            "schedule": cls.SCHEDULED.value,
            "cron": cls.SCHEDULED.value,
            "workflow_dispatch": cls.MANUAL.value,
            "dispatch": cls.MANUAL.value,
        }
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ValueError(f"Invalid trigger '{value}'. Valid values: {valid}") from None


class AuditLevel(str, Enum):
    """Requested depth of the audit; selects which stages run."""

    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"
    MINIMAL = "minimal"


class AlertStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class ExceptionEntry:
    """
    A documented, intentionally suppressed finding identifier.

    ``identifier`` is matched exactly (no globbing) against findings in the
    same scope.
    """

    identifier: str
    scope: PolicyScope
    rationale: str
    reference: str = "SECURITY.md"

    def __post_init__(self) -> None:
        if not self.identifier or not self.identifier.strip():
            raise ValueError("identifier cannot be empty")
        if not self.rationale or not self.rationale.strip():
            raise ValueError(f"rationale cannot be empty for {self.identifier}")
        if not isinstance(self.scope, PolicyScope):
            raise TypeError(f"scope must be PolicyScope, got {type(self.scope)}")

    def matches(self, identifier: str, scope: PolicyScope) -> bool:
        return self.scope is scope and self.identifier == identifier

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "scope": self.scope.value,
            "rationale": self.rationale,
            "reference": self.reference,
        }


@dataclass(frozen=True)
class Finding:
    """
    A single issue reported by a scan stage.

    Immutable; suppression produces a new Finding via ``suppress``.
    A suppressed finding always carries the entry that suppressed it.
    """

    identifier: str   # Stable id, e.g. an advisory id
    severity: Severity
    stage: str
    description: str

    scope: PolicyScope = PolicyScope.ADVISORIES
    title: str | None = None
    package: str | None = None
    version: str | None = None
    suppressed: bool = False
    exception: ExceptionEntry | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        if not self.identifier:
            raise ValueError("identifier cannot be empty")
        if not self.stage:
            raise ValueError("stage cannot be empty")
        if not isinstance(self.severity, Severity):
            raise TypeError(f"severity must be Severity, got {type(self.severity)}")
        if self.suppressed != (self.exception is not None):
            raise ValueError("a suppressed finding must reference exactly one exception entry")

    def suppress(self, entry: ExceptionEntry) -> "Finding":
        """Return a copy marked as suppressed by ``entry``."""
        return replace(self, suppressed=True, exception=entry)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "severity": str(self.severity),
            "stage": self.stage,
            "scope": self.scope.value,
            "title": self.title,
            "description": self.description,
            "package": self.package,
            "version": self.version,
            "suppressed": self.suppressed,
            "exception": self.exception.to_dict() if self.exception else None,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Finding":
        exception = None
        if data.get("exception"):
            raw = data["exception"]
            exception = ExceptionEntry(
                identifier=raw["identifier"],
                scope=PolicyScope.from_string(raw["scope"]),
                rationale=raw["rationale"],
                reference=raw.get("reference", "SECURITY.md"),
            )
        return cls(
            identifier=data["identifier"],
            severity=Severity.from_string(data["severity"]),
            stage=data["stage"],
            description=data.get("description", ""),
            scope=PolicyScope.from_string(data.get("scope", "advisories")),
            title=data.get("title"),
            package=data.get("package"),
            version=data.get("version"),
            suppressed=exception is not None,
            exception=exception,
            metadata=data.get("metadata", {}),
        )


@dataclass(frozen=True)
class FindingSet:
    """
    Findings produced by one scan stage run.

    Suppressed findings stay in ``findings``; they are only excluded from
    the outcome computation.
    """

    stage: str
    outcome: StageOutcome
    findings: tuple[Finding, ...] = ()
    artifacts: Mapping[str, str] = field(default_factory=dict, hash=False)  # name -> ref
    threshold: Severity = Severity.LOW
    error: str | None = None
    warnings: tuple[str, ...] = ()  # optional tools that could not run
    skipped: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def errored(
        cls,
        stage: str,
        message: str,
        artifacts: Mapping[str, str] | None = None,
        findings: tuple[Finding, ...] = (),
        threshold: Severity = Severity.LOW,
        started_at: datetime | None = None,
        warnings: tuple[str, ...] = (),
    ) -> "FindingSet":
        """FindingSet for a stage that could not produce a trustworthy result."""
        return cls(
            stage=stage,
            outcome=StageOutcome.ERROR,
            findings=findings,
            artifacts=dict(artifacts or {}),
            threshold=threshold,
            error=message,
            warnings=warnings,
            started_at=started_at,
            finished_at=utc_now(),
        )

    @property
    def artifact_ref(self) -> str | None:
        """Reference of the first artifact stored, the main tool report."""
        return next(iter(self.artifacts.values()), None)

    @property
    def active_findings(self) -> tuple[Finding, ...]:
        return tuple(f for f in self.findings if not f.suppressed)

    @property
    def suppressed_findings(self) -> tuple[Finding, ...]:
        return tuple(f for f in self.findings if f.suppressed)

    @property
    def blocking_findings(self) -> tuple[Finding, ...]:
        """Un-suppressed findings at or above the stage threshold."""
        return tuple(f for f in self.active_findings if f.severity >= self.threshold)

    @property
    def violation(self) -> PolicyViolation | None:
        """What the audit caught, for failed stages."""
        if self.outcome is not StageOutcome.FAILURE:
            return None
        return PolicyViolation(self.stage, self.blocking_findings)

    @property
    def severity_counts(self) -> dict[str, int]:
        return severity_summary(f.severity for f in self.active_findings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "outcome": self.outcome.value,
            "threshold": str(self.threshold),
            "artifact_ref": self.artifact_ref,
            "artifacts": dict(self.artifacts),
            "error": self.error,
            "warnings": list(self.warnings),
            "skipped": self.skipped,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "severity_counts": self.severity_counts,
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass(frozen=True)
class Trigger:
    """Trigger metadata for one pipeline run."""

    kind: TriggerKind
    audit_level: AuditLevel = AuditLevel.STANDARD

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "audit_level": self.audit_level.value}


@dataclass(frozen=True)
class PipelineRun:
    """
    One FindingSet per expected stage for a single trigger event.

    ``gaps`` lists the stages that never reported and were filled in with an
    ``error`` FindingSet by the aggregator.
    """

    run_id: str
    trigger: Trigger
    finding_sets: Mapping[str, FindingSet] = field(hash=False)
    gaps: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utc_now)

    @property
    def outcome(self) -> RunOutcome:
        if all(fs.outcome is StageOutcome.SUCCESS for fs in self.finding_sets.values()):
            return RunOutcome.SUCCESS
        return RunOutcome.DEGRADED

    @property
    def unhealthy_stages(self) -> tuple[str, ...]:
        """Sorted ids of stages whose outcome is not success."""
        return tuple(sorted(
            stage for stage, fs in self.finding_sets.items()
            if fs.outcome is not StageOutcome.SUCCESS
        ))

    @property
    def has_infrastructure_error(self) -> bool:
        return bool(self.gaps) or any(
            fs.outcome is StageOutcome.ERROR for fs in self.finding_sets.values()
        )

    def stage(self, stage_id: str) -> FindingSet | None:
        return self.finding_sets.get(stage_id)

    @property
    def all_findings(self) -> list[Finding]:
        findings: list[Finding] = []
        for fs in self.finding_sets.values():
            findings.extend(fs.findings)
        return findings

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger.to_dict(),
            "created_at": self.created_at.isoformat(),
            "outcome": self.outcome.value,
            "unhealthy_stages": list(self.unhealthy_stages),
            "gaps": list(self.gaps),
            "stages": {
                stage: fs.to_dict() for stage, fs in sorted(self.finding_sets.items())
            },
        }


@dataclass(frozen=True)
class Alert:
    """
    An alert raised for one incident class.

    Created by the alert manager; only an external actor closes it.
    """

    key: str
    title: str
    body: str
    labels: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utc_now)
    status: AlertStatus = AlertStatus.OPEN
    reference: str | None = None  # Issue number / URL in the sink

    @property
    def is_open(self) -> bool:
        return self.status is AlertStatus.OPEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "title": self.title,
            "labels": list(self.labels),
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "reference": self.reference,
        }
