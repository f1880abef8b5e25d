"""
JSON run report.

The machine-readable record of a pipeline run, including suppressed
findings and the exception that suppressed each of them.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from depaudit import __version__
from depaudit.reporters.base import BaseReporter

if TYPE_CHECKING:
    from depaudit.core.models import PipelineRun


class JSONReporter(BaseReporter):
    """
    Generate JSON format run reports.

    Output is a single JSON object with:
    - Run metadata and trigger
    - Overall outcome and unhealthy stages
    - Every FindingSet, suppressed findings included
    """

    def __init__(self, pretty: bool = True) -> None:
        self.pretty = pretty

    @property
    def format_name(self) -> str:
        return "JSON"

    @property
    def default_filename(self) -> str:
        return "pipeline-run.json"

    def generate(self, run: "PipelineRun") -> str:
        report_data = self._build_report_data(run)

        if self.pretty:
            return json.dumps(report_data, indent=2, default=str, ensure_ascii=False)
        return json.dumps(report_data, default=str, ensure_ascii=False)

    def _build_report_data(self, run: "PipelineRun") -> dict[str, Any]:
        data = run.to_dict()
        findings = run.all_findings
        return {
            "schema_version": "1.0",
            "depaudit_version": __version__,
            **data,
            "summary": {
                "stages": len(run.finding_sets),
                "stages_succeeded": sum(
                    1 for fs in run.finding_sets.values() if fs.outcome.value == "success"
                ),
                "total_findings": len(findings),
                "suppressed_findings": sum(1 for f in findings if f.suppressed),
            },
        }
