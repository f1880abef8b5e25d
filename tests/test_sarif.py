"""
Tests for the interchange (SARIF) document.
"""

import json

from depaudit.constants import SARIF_VERSION
from depaudit.core.models import ExceptionEntry, Finding, FindingSet, PolicyScope, StageOutcome
from depaudit.core.severity import Severity
from depaudit.reporters.sarif import SarifReporter, build_interchange, render_interchange


def vuln(identifier: str, severity: Severity, **kwargs) -> Finding:
    return Finding(
        identifier=identifier,
        severity=severity,
        stage="vulnerability",
        description=kwargs.pop("description", f"{identifier} description"),
        **kwargs,
    )


def finding_set(*findings: Finding) -> FindingSet:
    return FindingSet(stage="vulnerability", outcome=StageOutcome.FAILURE, findings=findings)


class TestBuildInterchange:
    """Tests for build_interchange."""

    def test_identification_block(self):
        document = build_interchange(None, tool_name="cargo-audit", tool_version="0.21.0")
        driver = document["runs"][0]["tool"]["driver"]

        assert document["version"] == SARIF_VERSION
        assert driver["name"] == "cargo-audit"
        assert driver["version"] == "0.21.0"

    def test_absent_and_empty_yield_zero_results(self):
        """Missing input is a valid document, not an error."""
        assert build_interchange(None)["runs"][0]["results"] == []
        empty = FindingSet(stage="vulnerability", outcome=StageOutcome.SUCCESS)
        assert build_interchange(empty)["runs"][0]["results"] == []

    def test_suppressed_findings_excluded(self):
        entry = ExceptionEntry("RUSTSEC-2023-0071", PolicyScope.ADVISORIES, "Windows only")
        document = build_interchange(finding_set(
            vuln("RUSTSEC-2023-0071", Severity.HIGH).suppress(entry),
            vuln("RUSTSEC-2024-0003", Severity.HIGH),
        ))

        results = document["runs"][0]["results"]
        assert [r["ruleId"] for r in results] == ["RUSTSEC-2024-0003"]

    def test_result_shape(self):
        document = build_interchange(finding_set(
            vuln("RUSTSEC-2024-0003", Severity.HIGH, title="Resource exhaustion in h2",
                 package="h2", version="0.3.22"),
            vuln("RUSTSEC-2024-0436", Severity.LOW),
            vuln("RUSTSEC-2024-0019", Severity.MEDIUM),
        ))

        results = {r["ruleId"]: r for r in document["runs"][0]["results"]}
        assert results["RUSTSEC-2024-0003"]["level"] == "error"
        assert results["RUSTSEC-2024-0003"]["message"]["text"] == "Resource exhaustion in h2 (h2 0.3.22)"
        assert results["RUSTSEC-2024-0019"]["level"] == "warning"
        assert results["RUSTSEC-2024-0436"]["level"] == "note"


class TestRenderInterchange:
    """Tests for deterministic rendering."""

    def test_byte_identical_for_same_input(self):
        """Finding order does not change the rendered document."""
        a = vuln("RUSTSEC-2024-0003", Severity.HIGH)
        b = vuln("RUSTSEC-2023-0001", Severity.MEDIUM)

        first = render_interchange(finding_set(a, b))
        second = render_interchange(finding_set(b, a))

        assert first == second
        assert first == render_interchange(finding_set(a, b))

    def test_valid_json(self):
        rendered = render_interchange(None)
        assert json.loads(rendered)["runs"][0]["results"] == []
        assert rendered.endswith("\n")


class TestSarifReporter:
    """Tests for SarifReporter."""

    def test_write(self, temp_dir):
        reporter = SarifReporter()
        entry_set = finding_set(vuln("RUSTSEC-2024-0003", Severity.HIGH))

        path = temp_dir / "out" / reporter.default_filename
        path.parent.mkdir()
        path.write_text(reporter.render(entry_set))

        assert json.loads(path.read_text())["runs"][0]["results"][0]["ruleId"] == "RUSTSEC-2024-0003"
        assert reporter.default_filename == "security-results.sarif"
