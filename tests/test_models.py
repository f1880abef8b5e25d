"""
Tests for the pipeline data model.
"""

import pytest

from depaudit.core.models import (
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
from depaudit.core.severity import Severity, severity_summary
from depaudit.exceptions import PolicyViolation


def make_finding(identifier: str = "RUSTSEC-2024-0003", severity: Severity = Severity.HIGH, **kwargs) -> Finding:
    return Finding(
        identifier=identifier,
        severity=severity,
        stage=kwargs.pop("stage", "vulnerability"),
        description=kwargs.pop("description", "test finding"),
        **kwargs,
    )


class TestSeverity:
    """Tests for Severity."""

    def test_ordering(self):
        """Severities compare by rank."""
        assert Severity.CRITICAL > Severity.HIGH > Severity.MEDIUM > Severity.LOW > Severity.INFO

    @pytest.mark.parametrize("value,expected", [
        ("high", Severity.HIGH),
        ("  Medium ", Severity.MEDIUM),
        ("informational", Severity.INFO),
        ("moderate", Severity.MEDIUM),
    ])
    def test_from_string(self, value, expected):
        """Names and aliases parse case-insensitively."""
        assert Severity.from_string(value) is expected

    def test_from_string_invalid(self):
        """Unknown names are rejected."""
        with pytest.raises(ValueError, match="Invalid severity"):
            Severity.from_string("urgent")

    def test_sarif_levels(self):
        """Severities map onto the SARIF level vocabulary."""
        assert Severity.CRITICAL.sarif_level == "error"
        assert Severity.HIGH.sarif_level == "error"
        assert Severity.MEDIUM.sarif_level == "warning"
        assert Severity.LOW.sarif_level == "note"
        assert Severity.INFO.sarif_level == "note"

    def test_summary(self):
        summary = severity_summary([Severity.HIGH, Severity.HIGH, Severity.LOW])
        assert summary["high"] == 2
        assert summary["low"] == 1
        assert summary["critical"] == 0


class TestEnums:
    """Tests for string-backed enums."""

    @pytest.mark.parametrize("value,expected", [
        ("schedule", TriggerKind.SCHEDULED),
        ("scheduled", TriggerKind.SCHEDULED),
        ("push", TriggerKind.PUSH),
        ("workflow_dispatch", TriggerKind.MANUAL),
    ])
    def test_trigger_aliases(self, value, expected):
        """CI event names map to trigger kinds."""
        assert TriggerKind.from_string(value) is expected

    def test_invalid_trigger(self):
        with pytest.raises(ValueError, match="Invalid trigger"):
            TriggerKind.from_string("pull_request")

    def test_scope_aliases(self):
        """cargo-deny's section name is accepted for dependency bans."""
        assert PolicyScope.from_string("bans") is PolicyScope.BANS
        assert PolicyScope.from_string("dependency_bans") is PolicyScope.BANS

    def test_default_audit_level(self):
        assert Trigger(TriggerKind.PUSH).audit_level is AuditLevel.STANDARD


class TestFinding:
    """Tests for Finding."""

    def test_suppress_keeps_identity(self):
        """Suppression returns a marked copy and leaves the original alone."""
        entry = ExceptionEntry("RUSTSEC-2024-0003", PolicyScope.ADVISORIES, "accepted risk")
        finding = make_finding()

        suppressed = finding.suppress(entry)

        assert suppressed.suppressed is True
        assert suppressed.exception is entry
        assert finding.suppressed is False
        assert suppressed.identifier == finding.identifier

    def test_suppressed_requires_entry(self):
        """A suppressed finding must reference its exception entry."""
        with pytest.raises(ValueError, match="exactly one exception entry"):
            make_finding(suppressed=True)

    def test_empty_identifier_rejected(self):
        with pytest.raises(ValueError):
            make_finding(identifier="")

    def test_dict_round_trip_keeps_exception(self):
        """Serialized findings carry the suppressing entry along."""
        entry = ExceptionEntry("RUSTSEC-2024-0003", PolicyScope.ADVISORIES, "accepted risk")
        finding = make_finding(package="h2", version="0.3.22").suppress(entry)

        restored = Finding.from_dict(finding.to_dict())

        assert restored == finding
        assert restored.exception.rationale == "accepted risk"


class TestExceptionEntry:
    """Tests for ExceptionEntry."""

    def test_requires_rationale(self):
        """Every exception must be documented."""
        with pytest.raises(ValueError, match="rationale"):
            ExceptionEntry("RUSTSEC-2024-0003", PolicyScope.ADVISORIES, "  ")

    def test_matches_exactly(self):
        """Matching is exact and scoped, no globbing."""
        entry = ExceptionEntry("RUSTSEC-2024-*", PolicyScope.ADVISORIES, "glob attempt")

        assert entry.matches("RUSTSEC-2024-*", PolicyScope.ADVISORIES)
        assert not entry.matches("RUSTSEC-2024-0003", PolicyScope.ADVISORIES)
        assert not entry.matches("RUSTSEC-2024-*", PolicyScope.LICENSES)


class TestFindingSet:
    """Tests for FindingSet."""

    def test_blocking_findings_respect_threshold(self):
        """Only un-suppressed findings at or above threshold block."""
        entry = ExceptionEntry("A", PolicyScope.ADVISORIES, "documented")
        finding_set = FindingSet(
            stage="vulnerability",
            outcome=StageOutcome.FAILURE,
            threshold=Severity.MEDIUM,
            findings=(
                make_finding("A", Severity.CRITICAL).suppress(entry),
                make_finding("B", Severity.HIGH),
                make_finding("C", Severity.LOW),
            ),
        )

        assert [f.identifier for f in finding_set.blocking_findings] == ["B"]
        assert [f.identifier for f in finding_set.suppressed_findings] == ["A"]
        assert len(finding_set.active_findings) == 2

    def test_violation_only_for_failures(self):
        """A failed stage explains itself as a PolicyViolation."""
        failed = FindingSet(
            stage="vulnerability",
            outcome=StageOutcome.FAILURE,
            findings=(make_finding("B"),),
        )
        clean = FindingSet(stage="vulnerability", outcome=StageOutcome.SUCCESS)

        assert isinstance(failed.violation, PolicyViolation)
        assert "B" in str(failed.violation)
        assert clean.violation is None

    def test_errored(self):
        """Errored sets carry the message and a finish time."""
        finding_set = FindingSet.errored("supply-chain", "cargo-vet not found in PATH")

        assert finding_set.outcome is StageOutcome.ERROR
        assert finding_set.error == "cargo-vet not found in PATH"
        assert finding_set.findings == ()
        assert finding_set.finished_at is not None

    def test_to_dict_includes_suppressed(self):
        entry = ExceptionEntry("A", PolicyScope.ADVISORIES, "documented")
        finding_set = FindingSet(
            stage="vulnerability",
            outcome=StageOutcome.SUCCESS,
            findings=(make_finding("A").suppress(entry),),
        )

        data = finding_set.to_dict()

        assert data["findings"][0]["suppressed"] is True
        assert data["severity_counts"]["high"] == 0

    def test_artifacts_and_warnings(self):
        """The first artifact is the main report; warnings survive serialization."""
        finding_set = FindingSet(
            stage="dependency-hygiene",
            outcome=StageOutcome.SUCCESS,
            artifacts={
                "dependency-hygiene.cargo-machete": "memory://run-1/dependency-hygiene.cargo-machete",
                "dependency-hygiene.cargo-machete.stderr": "memory://run-1/dependency-hygiene.cargo-machete.stderr",
            },
            warnings=("cargo-udeps: nightly toolchain not installed",),
        )

        data = finding_set.to_dict()

        assert finding_set.artifact_ref == "memory://run-1/dependency-hygiene.cargo-machete"
        assert len(data["artifacts"]) == 2
        assert data["warnings"] == ["cargo-udeps: nightly toolchain not installed"]
        assert FindingSet(stage="supply-chain", outcome=StageOutcome.SUCCESS).artifact_ref is None


class TestPipelineRun:
    """Tests for PipelineRun."""

    def _run(self, *outcomes: StageOutcome, gaps=()) -> PipelineRun:
        stages = ["vulnerability", "dependency-hygiene", "supply-chain"]
        return PipelineRun(
            run_id="run-1",
            trigger=Trigger(TriggerKind.SCHEDULED),
            finding_sets={
                stage: FindingSet(stage=stage, outcome=outcome)
                for stage, outcome in zip(stages, outcomes)
            },
            gaps=tuple(gaps),
        )

    def test_success_only_when_all_succeed(self):
        assert self._run(*[StageOutcome.SUCCESS] * 3).outcome is RunOutcome.SUCCESS

    def test_degraded_on_any_failure(self):
        run = self._run(StageOutcome.SUCCESS, StageOutcome.FAILURE, StageOutcome.SUCCESS)

        assert run.outcome is RunOutcome.DEGRADED
        assert run.unhealthy_stages == ("dependency-hygiene",)
        assert run.has_infrastructure_error is False

    def test_unhealthy_stages_sorted(self):
        run = self._run(StageOutcome.ERROR, StageOutcome.SUCCESS, StageOutcome.FAILURE)

        assert run.unhealthy_stages == ("supply-chain", "vulnerability")
        assert run.has_infrastructure_error is True

    def test_to_dict(self):
        data = self._run(*[StageOutcome.SUCCESS] * 3).to_dict()

        assert data["outcome"] == "success"
        assert data["trigger"] == {"kind": "scheduled", "audit_level": "standard"}
        assert set(data["stages"]) == {"vulnerability", "dependency-hygiene", "supply-chain"}
