"""
Interchange report generator.

Turns the vulnerability stage's FindingSet into a SARIF 2.1.0 document for
the code-scanning dashboard. The document only lists actionable results:
suppressed findings are left out, their audit trail lives in the FindingSet
and the JSON run report.

Generation is a pure function. Results are sorted and keys are emitted in
sorted order, so the same FindingSet always yields byte-identical output.
A missing or empty FindingSet yields a valid document with no results.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from depaudit.constants import (
    DEFAULT_TOOL_NAME,
    DEFAULT_TOOL_URI,
    DEFAULT_TOOL_VERSION,
    SARIF_SCHEMA,
    SARIF_VERSION,
    STAGE_VULNERABILITY,
)
from depaudit.reporters.base import BaseReporter

if TYPE_CHECKING:
    from depaudit.core.models import Finding, FindingSet, PipelineRun


def build_interchange(
    finding_set: "FindingSet | None",
    tool_name: str = DEFAULT_TOOL_NAME,
    tool_version: str = DEFAULT_TOOL_VERSION,
    information_uri: str | None = DEFAULT_TOOL_URI,
) -> dict[str, Any]:
    """
    Build the interchange document.

    Args:
        finding_set: Vulnerability stage result, or None if it never ran
        tool_name: ``tool.driver.name``
        tool_version: ``tool.driver.version``
        information_uri: Optional ``tool.driver.informationUri``

    Returns:
        SARIF document as a dict
    """
    driver: dict[str, Any] = {"name": tool_name, "version": tool_version}
    if information_uri:
        driver["informationUri"] = information_uri

    findings = finding_set.active_findings if finding_set is not None else ()
    results = sorted(
        (_result(f) for f in findings),
        key=lambda r: (r["ruleId"], r["level"], r["message"]["text"]),
    )

    return {
        "$schema": SARIF_SCHEMA,
        "version": SARIF_VERSION,
        "runs": [
            {
                "tool": {"driver": driver},
                "results": results,
            }
        ],
    }


def render_interchange(finding_set: "FindingSet | None", **tool: Any) -> str:
    """Serialize the interchange document deterministically."""
    document = build_interchange(finding_set, **tool)
    return json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def _result(finding: "Finding") -> dict[str, Any]:
    text = finding.title or finding.description
    if finding.package:
        version = f" {finding.version}" if finding.version else ""
        text = f"{text} ({finding.package}{version})"
    return {
        "ruleId": finding.identifier,
        "level": finding.severity.sarif_level,
        "message": {"text": text},
    }


class SarifReporter(BaseReporter):
    """
    Write the interchange document for a pipeline run.

    Only the vulnerability stage feeds the document; other stages never
    change it.
    """

    def __init__(
        self,
        tool_name: str = DEFAULT_TOOL_NAME,
        tool_version: str = DEFAULT_TOOL_VERSION,
        information_uri: str | None = DEFAULT_TOOL_URI,
        filename: str = "security-results.sarif",
    ) -> None:
        self.tool_name = tool_name
        self.tool_version = tool_version
        self.information_uri = information_uri
        self._filename = filename

    @property
    def format_name(self) -> str:
        return "SARIF"

    @property
    def default_filename(self) -> str:
        return self._filename

    def generate(self, run: "PipelineRun") -> str:
        return self.render(run.stage(STAGE_VULNERABILITY))

    def render(self, finding_set: "FindingSet | None") -> str:
        return render_interchange(
            finding_set,
            tool_name=self.tool_name,
            tool_version=self.tool_version,
            information_uri=self.information_uri,
        )
