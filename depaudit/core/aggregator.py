"""
Report aggregation.

Joins the FindingSets of one pipeline run into a PipelineRun. Aggregation
is total over the expected stages: a stage that never reported is filled in
as an ``error`` FindingSet and listed as a gap, never silently omitted.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from depaudit.core.models import FindingSet, PipelineRun, Trigger
from depaudit.exceptions import AggregationGap
from depaudit.logging_config import get_logger

logger = get_logger("aggregator")


class ReportAggregator:
    """
    Build PipelineRuns from per-stage results.

    Example:
        run = ReportAggregator().aggregate(
            run_id="20250101-0600",
            trigger=Trigger(TriggerKind.SCHEDULED),
            expected=["vulnerability", "dependency-hygiene"],
            finding_sets={"vulnerability": vuln_set},
        )
        run.gaps  # ("dependency-hygiene",)
    """

    def aggregate(
        self,
        run_id: str,
        trigger: Trigger,
        expected: Iterable[str],
        finding_sets: Mapping[str, FindingSet],
    ) -> PipelineRun:
        """
        Aggregate stage results.

        Args:
            run_id: Pipeline run identity
            trigger: What started the run
            expected: Stage ids that must appear in the run
            finding_sets: Results that were actually posted, keyed by stage id

        Returns:
            PipelineRun with exactly one FindingSet per expected stage
        """
        expected_ids = list(dict.fromkeys(expected))
        results: dict[str, FindingSet] = {}
        gaps: list[str] = []

        for stage_id in expected_ids:
            finding_set = finding_sets.get(stage_id)
            if finding_set is None:
                gap = AggregationGap(stage_id)
                logger.error(f"[{stage_id}] {gap}")
                finding_set = FindingSet.errored(stage_id, str(gap))
                gaps.append(stage_id)
            elif finding_set.stage != stage_id:
                raise ValueError(
                    f"FindingSet for '{finding_set.stage}' posted under '{stage_id}'"
                )
            results[stage_id] = finding_set

        unexpected = sorted(set(finding_sets) - set(expected_ids))
        if unexpected:
            logger.warning(f"Ignoring results of unexpected stage(s): {', '.join(unexpected)}")

        run = PipelineRun(
            run_id=run_id,
            trigger=trigger,
            finding_sets=results,
            gaps=tuple(gaps),
        )
        self._log_summary(run)
        return run

    def _log_summary(self, run: PipelineRun) -> None:
        parts = [f"{stage}={fs.outcome.value}" for stage, fs in run.finding_sets.items()]
        logger.info(f"Run {run.run_id} {run.outcome.value}: {', '.join(parts)}")
