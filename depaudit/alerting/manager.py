"""
Alert manager.

Decides from a finished PipelineRun whether an alert is due and makes sure
at most one alert is open per incident class.

Decision precedence, checked in this order:

1. every stage succeeded          -> no alert
2. any stage errored or never ran -> alert, whatever the trigger
3. degraded on a scheduled run    -> alert
4. anything else                  -> no alert
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from depaudit.alerting.incident import incident_key, incident_marker
from depaudit.constants import DEFAULT_ALERT_LABELS, STAGE_TITLES
from depaudit.core.models import Alert, RunOutcome, TriggerKind, utc_now
from depaudit.logging_config import get_logger

if TYPE_CHECKING:
    from depaudit.alerting.sinks import AlertSink
    from depaudit.core.models import PipelineRun
    from depaudit.policy.store import PolicyStore

logger = get_logger("alerting")


@dataclass(frozen=True)
class AlertDecision:
    """Whether a run warrants an alert, and why."""

    raise_alert: bool
    reason: str
    key: str | None = None

    def __post_init__(self) -> None:
        if self.raise_alert and not self.key:
            raise ValueError(f"An alert decision needs an incident key: {self.reason}")


@dataclass(frozen=True)
class AlertOutcome:
    decision: AlertDecision
    alert: Alert | None = None
    created: bool = False


def decide(run: "PipelineRun") -> AlertDecision:
    """Apply the alerting rules to a run."""
    if run.outcome is RunOutcome.SUCCESS:
        return AlertDecision(False, "all stages succeeded")

    key = incident_key(run)

    if run.has_infrastructure_error:
        return AlertDecision(True, "infrastructure error (tool, parse or missing stage)", key)

    if run.trigger.kind is TriggerKind.SCHEDULED:
        return AlertDecision(True, "degraded scheduled run", key)

    return AlertDecision(
        False,
        f"findings on a {run.trigger.kind.value} run do not alert",
        key,
    )


class AlertManager:
    """
    Raise deduplicated alerts for degraded pipeline runs.

    Lookup and create for one incident key run under a per-key lock, so two
    runs finishing at once in this process never both create. Across
    processes the guarantee is only as strong as the sink: atomic for sinks
    with a conditional create, best-effort otherwise.

    Example:
        manager = AlertManager(MemoryAlertSink())
        outcome = manager.process(run)
    """

    def __init__(
        self,
        sink: "AlertSink",
        labels: Sequence[str] = DEFAULT_ALERT_LABELS,
        run_url: str | None = None,
        policy: "PolicyStore | None" = None,
    ) -> None:
        self.sink = sink
        self.labels = tuple(labels)
        self.run_url = run_url
        self.policy = policy
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def process(self, run: "PipelineRun") -> AlertOutcome:
        """
        Evaluate ``run`` and create an alert if one is due and none is open.

        Never updates or closes alerts.
        """
        decision = decide(run)
        if not decision.raise_alert:
            logger.info(f"No alert for run {run.run_id}: {decision.reason}")
            return AlertOutcome(decision)

        key = decision.key
        if key is None:
            raise ValueError(f"No incident key for run {run.run_id}")
        title = self.build_title(run)
        body = self.build_body(run, key)

        with self._lock_for(key):
            alert, created = self.sink.create_if_absent(key, title, body, self.labels)

        if created:
            logger.warning(f"Alert raised for {key}: {decision.reason}")
        else:
            logger.info(f"Alert already open for {key} (ref {alert.reference}), not creating another")
        return AlertOutcome(decision, alert, created)

    def build_title(self, run: "PipelineRun") -> str:
        return f"Security Audit Failed - {run.created_at.strftime('%Y-%m-%d')}"

    def build_body(self, run: "PipelineRun", key: str) -> str:
        lines = [
            "## 🚨 Security Audit Failure",
            "",
            f"**Date:** {utc_now().isoformat()}",
            f"**Run:** {run.run_id}",
            f"**Trigger:** {run.trigger.kind.value} ({run.trigger.audit_level.value})",
            f"**Incident class:** `{key}`",
            "",
            "### Results:",
        ]
        for stage, finding_set in run.finding_sets.items():
            detail = ""
            if finding_set.error:
                detail = f" - {finding_set.error}"
            elif finding_set.blocking_findings:
                ids = ", ".join(sorted({f.identifier for f in finding_set.blocking_findings}))
                detail = f" - {ids}"
            lines.append(f"- {STAGE_TITLES.get(stage, stage)}: {finding_set.outcome.value}{detail}")

        if self.policy is not None and len(self.policy):
            lines.extend(["", "### Known Exceptions:"])
            for entry in self.policy:
                lines.append(
                    f"- ✅ {entry.identifier} ({entry.scope.value}): {entry.rationale}"
                )

        lines.extend([
            "",
            "### Action Required:",
            "1. Review the stage reports for findings not covered by the exception policy",
            "2. Document accepted risks in the exception policy or upgrade the affected dependencies",
        ])

        if self.run_url:
            lines.extend(["", f"**Reports:** [View run]({self.run_url.format(run_id=run.run_id)})"])

        lines.extend(["", incident_marker(key)])
        return "\n".join(lines)
