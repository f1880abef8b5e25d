"""
Markdown run summary.

Human-readable summary of a pipeline run, suitable for a CI job summary or
an issue body.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from depaudit import __version__
from depaudit.constants import RETENTION_DAYS, STAGE_TITLES
from depaudit.core.models import StageOutcome
from depaudit.reporters.base import BaseReporter

if TYPE_CHECKING:
    from depaudit.core.models import FindingSet, PipelineRun

_STATUS = {
    StageOutcome.SUCCESS: "✅",
    StageOutcome.FAILURE: "⚠️",
    StageOutcome.ERROR: "❌",
}


class MarkdownReporter(BaseReporter):
    """
    Generate Markdown format run summaries.

    Output contains:
    - Overall status
    - A status line per stage
    - Suppressed findings with their rationale
    - Artifact retention notes
    """

    def __init__(self, retention_days: dict[str, int] | None = None) -> None:
        self.retention_days = retention_days or dict(RETENTION_DAYS)

    @property
    def format_name(self) -> str:
        return "Markdown"

    @property
    def default_filename(self) -> str:
        return "summary.md"

    def generate(self, run: "PipelineRun") -> str:
        lines: list[str] = []

        lines.extend(self._generate_header(run))
        for stage, finding_set in run.finding_sets.items():
            lines.extend(self._generate_stage(stage, finding_set))
        lines.extend(self._generate_suppressed(run))
        lines.extend(self._generate_footer(run))

        return "\n".join(lines)

    def _generate_header(self, run: "PipelineRun") -> list[str]:
        status = "✅ **PASSED**" if run.outcome.value == "success" else "⚠️ **DEGRADED**"
        return [
            "# 🔒 Security Audit Summary\n",
            f"**Audit Date:** {run.created_at.strftime('%Y-%m-%d %H:%M:%S UTC')}\n",
            f"**Run:** `{run.run_id}` ({run.trigger.kind.value}, {run.trigger.audit_level.value})\n",
            f"> {status}\n",
        ]

    def _generate_stage(self, stage: str, finding_set: "FindingSet") -> list[str]:
        title = STAGE_TITLES.get(stage, stage)
        lines = [f"## {title}\n"]
        icon = _STATUS[finding_set.outcome]

        if finding_set.outcome is StageOutcome.SUCCESS:
            note = " (skipped: not configured)" if finding_set.skipped else ""
            lines.append(f"{icon} **Status:** clean{note}\n")
        elif finding_set.outcome is StageOutcome.FAILURE:
            blocking = finding_set.blocking_findings
            lines.append(
                f"{icon} **Status:** {len(blocking)} finding(s) at or above "
                f"{finding_set.threshold} - review required\n"
            )
            for finding in blocking:
                lines.append(
                    f"- `{finding.identifier}` ({finding.severity}): "
                    f"{self.truncate(finding.title or finding.description)}"
                )
            lines.append("")
        else:
            lines.append(f"{icon} **Status:** error - {self.truncate(finding_set.error)}\n")

        for warning in finding_set.warnings:
            lines.append(f"> ⚠️ {self.truncate(warning)}")
        if finding_set.warnings:
            lines.append("")

        return lines

    def _generate_suppressed(self, run: "PipelineRun") -> list[str]:
        suppressed = [f for f in run.all_findings if f.suppressed]
        if not suppressed:
            return []

        lines = [
            "## 📋 Suppressed by Exception Policy\n",
            "| Identifier | Stage | Scope | Rationale |",
            "|------------|-------|-------|-----------|",
        ]
        for finding in suppressed:
            entry = finding.exception
            rationale = self.truncate(entry.rationale if entry else "").replace("|", "\\|")
            lines.append(
                f"| `{finding.identifier}` | {finding.stage} | {finding.scope.value} | {rationale} |"
            )
        lines.append("")
        return lines

    def _generate_footer(self, run: "PipelineRun") -> list[str]:
        lines = ["## 📊 Reports Available\n"]
        for stage, finding_set in run.finding_sets.items():
            days = self.retention_days.get(stage, 30)
            names = ", ".join(f"`{name}`" for name in finding_set.artifacts)
            suffix = f": {names}" if names else ""
            lines.append(f"- {STAGE_TITLES.get(stage, stage)} reports ({days} days retention){suffix}")
        lines.append("")
        lines.append(f"*Generated by depaudit v{__version__}*\n")
        return lines
