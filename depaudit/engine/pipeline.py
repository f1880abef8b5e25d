"""
Pipeline orchestrator.

Runs one PipelineRun as an explicit task graph:

    stage:<id> ...  (no dependencies, run concurrently)
    interchange     <- stage:vulnerability
    aggregate       <- every stage node (runs whatever the stage outcomes)
    alert           <- aggregate

Stage results live in an arena keyed by stage id. The aggregate node is a
barrier: it only runs once every expected stage has posted a terminal
FindingSet, or has been written off as timed out.
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Sequence

from depaudit.alerting.manager import AlertManager
from depaudit.constants import DEFAULT_STAGE_TIMEOUT_SECONDS, STAGE_VULNERABILITY
from depaudit.core.aggregator import ReportAggregator
from depaudit.core.models import AuditLevel, FindingSet, PipelineRun, Trigger, utc_now
from depaudit.core.severity import Severity
from depaudit.engine.artifacts import FileArtifactStore
from depaudit.engine.invoker import SubprocessInvoker
from depaudit.exceptions import AlertSinkError, RunCancelled
from depaudit.logging_config import get_logger, stage_logger
from depaudit.reporters.sarif import build_interchange
from depaudit.stages import StageTool, default_stages

if TYPE_CHECKING:
    from depaudit.alerting.manager import AlertOutcome
    from depaudit.alerting.sinks import AlertSink
    from depaudit.config import PipelineConfig
    from depaudit.engine.artifacts import ArtifactStore
    from depaudit.engine.invoker import ToolInvoker
    from depaudit.policy.store import PolicyStore
    from depaudit.stages.base import BaseStage

logger = get_logger("pipeline")

# How often the barrier wakes up to look at deadlines and cancellation
_POLL_SECONDS = 0.25

# How long a cancelled run waits for its stage threads to wind down
_CANCEL_DRAIN_SECONDS = 10.0


def new_run_id() -> str:
    """Sortable, collision-resistant run identity."""
    return f"{utc_now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:8]}"


def stages_for_level(level: AuditLevel) -> tuple[str, ...] | None:
    """
    Stage ids an audit level asks for.

    Returns None when the level asks for every enabled stage.
    """
    if level is AuditLevel.MINIMAL:
        return (STAGE_VULNERABILITY,)
    return None


def build_graph(stage_ids: Sequence[str]) -> dict[str, tuple[str, ...]]:
    """Task graph of one run: node name -> names it depends on."""
    stage_nodes = tuple(f"stage:{s}" for s in stage_ids)
    graph: dict[str, tuple[str, ...]] = {node: () for node in stage_nodes}
    vulnerability_node = f"stage:{STAGE_VULNERABILITY}"
    graph["interchange"] = (vulnerability_node,) if vulnerability_node in graph else ()
    graph["aggregate"] = stage_nodes
    graph["alert"] = ("aggregate",)
    return graph


@dataclass(frozen=True)
class PipelineResult:
    """Everything one completed run produced."""

    run: PipelineRun
    interchange: dict[str, Any]
    alert: "AlertOutcome | None" = None
    alert_error: str | None = None


class Pipeline:
    """
    Security-audit pipeline orchestrator.

    Stages never share mutable state: each one receives the read-only
    policy, its own timeout and threshold, and returns an immutable
    FindingSet. A stage that raises, or that has not finished within its
    timeout plus the grace period, is recorded as ``error`` without
    touching its siblings. Nothing is retried.

    Example:
        pipeline = Pipeline.from_config(config, policy, alert_sink=MemoryAlertSink())
        result = pipeline.run(Trigger(TriggerKind.SCHEDULED))
        result.run.outcome
    """

    def __init__(
        self,
        config: "PipelineConfig",
        invoker: "ToolInvoker",
        policy: "PolicyStore",
        artifacts: "ArtifactStore",
        alert_manager: "AlertManager | None" = None,
        stages: Sequence["BaseStage"] | None = None,
        aggregator: ReportAggregator | None = None,
    ) -> None:
        self.config = config
        self.invoker = invoker
        self.policy = policy
        self.artifacts = artifacts
        self.alert_manager = alert_manager
        self.stages = list(stages) if stages is not None else default_stages()
        self.aggregator = aggregator or ReportAggregator()
        self._cancelled = threading.Event()
        self._futures_lock = threading.Lock()
        self._futures: list[Future[FindingSet]] = []

    @classmethod
    def from_config(
        cls,
        config: "PipelineConfig",
        policy: "PolicyStore",
        alert_sink: "AlertSink | None" = None,
    ) -> "Pipeline":
        """Wire the subprocess invoker, file artifact store and alerting from config."""
        artifacts = FileArtifactStore(
            config.artifact_dir,
            retention_days={s: cfg.retention_days for s, cfg in config.stages.items()},
        )
        manager = None
        if alert_sink is not None:
            manager = AlertManager(
                alert_sink,
                labels=config.alerts.labels,
                run_url=config.alerts.run_url,
                policy=policy,
            )
        return cls(
            config=config,
            invoker=SubprocessInvoker.from_config(config),
            policy=policy,
            artifacts=artifacts,
            alert_manager=manager,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """
        Cancel the current run.

        Queued stages never start, running tools are asked to stop, and
        ``run`` raises RunCancelled instead of producing a PipelineRun.
        """
        if self._cancelled.is_set():
            return
        logger.warning("Cancellation requested")
        self._cancelled.set()
        with self._futures_lock:
            futures = list(self._futures)
        for future in futures:
            future.cancel()
        self.invoker.cancel()

    def expected_stages(self, trigger: Trigger) -> list["BaseStage"]:
        """Enabled stages selected by the trigger's audit level, in pipeline order."""
        wanted = stages_for_level(trigger.audit_level)
        selected = []
        for stage in self.stages:
            cfg = self.config.stages.get(stage.id)
            if cfg is not None and not cfg.enabled:
                continue
            if wanted is not None and stage.id not in wanted:
                continue
            selected.append(stage)
        return selected

    def threshold_for(self, stage: "BaseStage", trigger: Trigger) -> Severity:
        if trigger.audit_level is AuditLevel.COMPREHENSIVE:
            return Severity.from_string(self.config.comprehensive_threshold)
        cfg = self.config.stages.get(stage.id)
        if cfg is None:
            return stage.default_threshold
        return Severity.from_string(cfg.severity_threshold)

    def tools_for(self, stage: "BaseStage") -> list[StageTool] | None:
        """Enabled tools of ``stage`` from config; None leaves the stage its defaults."""
        cfg = self.config.stages.get(stage.id)
        if cfg is None:
            return None
        return [
            StageTool(name, required=tool.required)
            for name, tool in cfg.enabled_tools().items()
        ]

    def timeout_for(self, stage: "BaseStage") -> float:
        cfg = self.config.stages.get(stage.id)
        if cfg is None:
            return float(DEFAULT_STAGE_TIMEOUT_SECONDS)
        return float(cfg.timeout_seconds)

    def run(self, trigger: Trigger, run_id: str | None = None) -> PipelineResult:
        """
        Execute one pipeline run.

        A cancel() stops the run in flight, or the next one when called
        while idle. Either way it is used up when that run ends, so the same
        Pipeline (and its invoker) can run again afterwards.

        Raises:
            RunCancelled: If cancel() was called before the barrier completed
        """
        run_id = run_id or new_run_id()
        stages = self.expected_stages(trigger)
        expected = [stage.id for stage in stages]
        graph = build_graph(expected)

        logger.info(
            f"Run {run_id} started ({trigger.kind.value}, {trigger.audit_level.value}): "
            f"{', '.join(expected) or 'no stages'}",
            extra={"run_id": run_id},
        )
        logger.debug(f"Task graph: {graph}")

        try:
            if self.cancelled:
                raise RunCancelled(run_id)

            arena, interchange = self._run_stages(stages, trigger, run_id)

            if self.cancelled:
                logger.warning(f"Run {run_id} cancelled, discarding partial results")
                raise RunCancelled(run_id)
        finally:
            self._cancelled.clear()
            self.invoker.reset()

        run = self.aggregator.aggregate(run_id, trigger, expected, arena)

        alert = None
        alert_error = None
        if self.alert_manager is not None:
            try:
                alert = self.alert_manager.process(run)
            except AlertSinkError as e:
                logger.error(f"Alerting failed for run {run_id}: {e}", extra={"run_id": run_id})
                alert_error = str(e)

        return PipelineResult(run=run, interchange=interchange, alert=alert, alert_error=alert_error)

    def _run_stages(
        self,
        stages: Sequence["BaseStage"],
        trigger: Trigger,
        run_id: str,
    ) -> tuple[dict[str, FindingSet], dict[str, Any]]:
        """Run every stage node and wait at the barrier. Returns (arena, interchange)."""
        arena: dict[str, FindingSet] = {}
        interchange = self._interchange(None)
        if not stages:
            return arena, interchange

        grace = self.config.stage_grace_seconds
        by_future: dict[Future[FindingSet], "BaseStage"] = {}
        deadlines: dict[str, float] = {}
        started_at = utc_now()

        executor = ThreadPoolExecutor(
            max_workers=len(stages),
            thread_name_prefix="depaudit-stage",
        )
        try:
            for stage in stages:
                timeout = self.timeout_for(stage)
                future = executor.submit(
                    self._run_stage, stage, run_id, timeout, self.threshold_for(stage, trigger)
                )
                by_future[future] = stage
                deadlines[stage.id] = time.monotonic() + timeout + grace
                with self._futures_lock:
                    self._futures.append(future)

            pending = set(by_future)
            while pending and not self.cancelled:
                done, pending = wait(pending, timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)

                for future in done:
                    stage = by_future[future]
                    if future.cancelled():
                        continue
                    arena[stage.id] = self._collect(stage, future, trigger, started_at)
                    if stage.id == STAGE_VULNERABILITY:
                        interchange = self._interchange(arena[stage.id])

                now = time.monotonic()
                for future in list(pending):
                    stage = by_future[future]
                    if now < deadlines[stage.id]:
                        continue
                    pending.discard(future)
                    future.cancel()
                    message = (
                        f"Stage did not finish within {self.timeout_for(stage):g}s "
                        f"(+{grace:g}s grace)"
                    )
                    stage_logger("pipeline", stage.id, run_id).error(message)
                    arena[stage.id] = FindingSet.errored(
                        stage.id,
                        message,
                        threshold=self.threshold_for(stage, trigger),
                        started_at=started_at,
                    )
                    if stage.id == STAGE_VULNERABILITY:
                        interchange = self._interchange(arena[stage.id])
        finally:
            if self.cancelled:
                _, running = wait(by_future, timeout=_CANCEL_DRAIN_SECONDS)
                if running:
                    logger.warning(f"{len(running)} stage(s) still running after cancel")
            executor.shutdown(wait=False, cancel_futures=True)
            with self._futures_lock:
                self._futures = [f for f in self._futures if f not in by_future]

        return arena, interchange

    def _run_stage(
        self,
        stage: "BaseStage",
        run_id: str,
        timeout: float,
        threshold: Severity,
    ) -> FindingSet:
        if self.cancelled:
            return FindingSet.errored(stage.id, "Run cancelled before stage started", threshold=threshold)
        return stage.run(
            self.invoker,
            self.policy,
            self.artifacts,
            run_id,
            timeout,
            threshold=threshold,
            project_dir=self.config.project_dir,
            tools=self.tools_for(stage),
        )

    def _collect(
        self,
        stage: "BaseStage",
        future: Future[FindingSet],
        trigger: Trigger,
        started_at: datetime,
    ) -> FindingSet:
        try:
            return future.result()
        except Exception as e:
            logger.exception(f"[{stage.id}] Stage crashed")
            return FindingSet.errored(
                stage.id,
                f"Stage crashed: {type(e).__name__}",
                threshold=self.threshold_for(stage, trigger),
                started_at=started_at,
            )

    def _interchange(self, finding_set: FindingSet | None) -> dict[str, Any]:
        settings = self.config.interchange
        return build_interchange(
            finding_set,
            tool_name=settings.tool_name,
            tool_version=settings.tool_version,
            information_uri=settings.information_uri,
        )
