"""
Abstract base class for scan stages.

A stage runs one or more external tools in order, stores each tool's raw
output, parses it into findings, applies the exception policy and computes
its outcome:

- success: no un-suppressed finding at or above the stage threshold
- failure: at least one such finding
- error:   a required tool could not be run or its output could not be read

Optional tools that cannot run only leave a warning on the FindingSet.
Errors are returned as ``error`` FindingSets and never raised, so one
stage can not take its siblings down with it.
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Sequence

from depaudit.constants import OPTIONAL_TOOLS, STAGE_TOOLS
from depaudit.core.models import Finding, FindingSet, PolicyScope, StageOutcome, utc_now
from depaudit.core.severity import Severity
from depaudit.engine.artifacts import artifact_name
from depaudit.exceptions import ArtifactError, ParseError, ToolInvocationError
from depaudit.logging_config import stage_logger

if TYPE_CHECKING:
    from depaudit.engine.artifacts import ArtifactStore
    from depaudit.engine.invoker import ToolInvoker, ToolOutput
    from depaudit.logging_config import StageLogAdapter
    from depaudit.policy.store import PolicyStore

ToolParser = Callable[["ToolOutput"], list[Finding]]


@dataclass(frozen=True)
class StageTool:
    """One scanner a stage runs; ``required`` tools turn the stage to error when they fail."""

    name: str
    required: bool = True


class BaseStage(ABC):
    """
    Abstract base class for scan stages.

    Subclasses must implement:
    - id: Stage identity (e.g. 'vulnerability')
    - name: Human-readable name
    - parsers: One parser per tool the stage runs

    The base class provides:
    - The run/suppress/outcome engine
    - Finding creation helpers
    - JSON loading that raises ParseError
    """

    @property
    @abstractmethod
    def id(self) -> str:
        """Stage identity used as key everywhere in the pipeline."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    def description(self) -> str:
        return ""

    @property
    def default_scope(self) -> PolicyScope:
        return PolicyScope.ADVISORIES

    @property
    def ignore_scope(self) -> PolicyScope:
        """Scope whose identifiers are passed to the tools as their ignore-list."""
        return PolicyScope.ADVISORIES

    @property
    def default_threshold(self) -> Severity:
        return Severity.LOW

    @property
    def tools(self) -> tuple[StageTool, ...]:
        """Tools this stage runs by default, in order."""
        return tuple(
            StageTool(name, required=name not in OPTIONAL_TOOLS)
            for name in STAGE_TOOLS.get(self.id, ())
        )

    @abstractmethod
    def parsers(self) -> dict[str, ToolParser]:
        """Tool name -> parser for that tool's report."""
        ...

    def tool_applicable(self, tool: str, project_dir: Path) -> bool:
        """Whether the project is set up for ``tool`` at all."""
        return True

    def parse(self, output: "ToolOutput", tool: str | None = None) -> list[Finding]:
        """
        Parse the raw output of ``tool`` (the stage's first tool when None).

        Raises:
            ParseError: If the output is not in the expected format
        """
        name = tool or self.tools[0].name
        parser = self.parsers().get(name)
        if parser is None:
            raise ParseError(f"No parser for {name}", stage=self.id, tool=name)
        return parser(output)

    def run(
        self,
        invoker: "ToolInvoker",
        policy: "PolicyStore",
        artifacts: "ArtifactStore",
        run_id: str,
        timeout: float,
        threshold: Severity | None = None,
        project_dir: Path | None = None,
        tools: Sequence[StageTool] | None = None,
    ) -> FindingSet:
        """
        Run the stage to a terminal FindingSet.

        Args:
            invoker: Tool invocation layer
            policy: Read-only exception policy
            artifacts: Where the raw output is persisted
            run_id: Pipeline run identity
            timeout: Seconds all of the stage's tools may run together
            threshold: Minimum severity that fails the stage
            project_dir: Project root, used for applicability checks
            tools: Tools to run (defaults to ``self.tools``)

        Returns:
            FindingSet with outcome success, failure or error
        """
        threshold = self.default_threshold if threshold is None else threshold
        started_at = utc_now()
        log = stage_logger("stages", self.id, run_id)

        selected = list(self.tools if tools is None else tools)
        if project_dir is not None:
            runnable = []
            for tool in selected:
                if self.tool_applicable(tool.name, project_dir):
                    runnable.append(tool)
                else:
                    log.info(f"{tool.name} not configured for this project, skipping")
        else:
            runnable = selected

        if not runnable:
            log.info("Nothing to run for this project, skipping")
            return FindingSet(
                stage=self.id,
                outcome=StageOutcome.SUCCESS,
                threshold=threshold,
                skipped=True,
                started_at=started_at,
                finished_at=utc_now(),
            )

        ignore_list = policy.ignore_list(self.ignore_scope)
        deadline = time.monotonic() + timeout
        findings: list[Finding] = []
        refs: dict[str, str] = {}
        errors: list[str] = []
        warnings: list[str] = []

        def failed(tool: StageTool, message: str) -> None:
            message = f"{tool.name}: {message}"
            if tool.required:
                log.error(message)
                errors.append(message)
            else:
                log.warning(f"{message} (optional tool, continuing)")
                warnings.append(message)

        for tool in runnable:
            remaining = deadline - time.monotonic()
            try:
                if remaining <= 0:
                    raise ToolInvocationError(
                        f"Stage timeout of {timeout:g}s used up before it started",
                        stage=self.id,
                        tool=tool.name,
                        timed_out=True,
                    )
                output = invoker.invoke(self.id, ignore_list, remaining, tool=tool.name)
            except ToolInvocationError as e:
                failed(tool, e.message)
                continue
            except Exception as e:
                log.exception(f"Unexpected {tool.name} invocation failure")
                failed(tool, f"Tool invocation failed: {type(e).__name__}")
                continue

            try:
                refs.update(self._persist(tool.name, output, artifacts, run_id))
            except ArtifactError as e:
                message = f"{tool.name}: could not persist raw output: {e}"
                log.error(message)
                errors.append(message)

            try:
                parsed = self.parse(output, tool.name)
            except ParseError as e:
                failed(tool, e.message)
                continue
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                failed(tool, f"Unreadable tool output: {type(e).__name__}")
                continue

            findings.extend(
                replace(f, metadata={**f.metadata, "tool": tool.name}) for f in parsed
            )

        findings = list(policy.apply(_merge_duplicates(findings, log)))

        if errors:
            return FindingSet.errored(
                self.id,
                "; ".join(errors),
                artifacts=refs,
                findings=tuple(findings),
                threshold=threshold,
                started_at=started_at,
                warnings=tuple(warnings),
            )

        result = FindingSet(
            stage=self.id,
            outcome=StageOutcome.SUCCESS,
            findings=tuple(findings),
            artifacts=refs,
            threshold=threshold,
            warnings=tuple(warnings),
            started_at=started_at,
            finished_at=utc_now(),
        )
        if result.blocking_findings:
            result = replace(result, outcome=StageOutcome.FAILURE)
            log.warning(str(result.violation))
        else:
            log.info(
                f"Clean ({len(result.findings)} finding(s), "
                f"{len(result.suppressed_findings)} suppressed)"
            )
        return result

    def _persist(
        self,
        tool: str,
        output: "ToolOutput",
        artifacts: "ArtifactStore",
        run_id: str,
    ) -> dict[str, str]:
        """Store the report stream, and the other stream when the tool wrote one."""
        name = artifact_name(self.id, tool)
        refs = {name: artifacts.put(name, run_id, output.raw.encode("utf-8"))}
        if output.secondary:
            side = artifact_name(self.id, tool, output.secondary_stream)
            refs[side] = artifacts.put(side, run_id, output.secondary.encode("utf-8"))
        return refs

    def create_finding(
        self,
        identifier: str,
        description: str,
        severity: Severity,
        scope: PolicyScope | None = None,
        title: str | None = None,
        package: str | None = None,
        version: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Finding:
        """Create a finding attributed to this stage."""
        return Finding(
            identifier=identifier,
            severity=severity,
            stage=self.id,
            description=description or title or identifier,
            scope=scope or self.default_scope,
            title=title,
            package=package,
            version=version,
            metadata=metadata or {},
        )

    def _load_json(self, raw: str) -> Any:
        if not raw or not raw.strip():
            raise ParseError("Tool produced no output", stage=self.id)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise ParseError(
                f"Output is not valid JSON (line {e.lineno})",
                stage=self.id,
            ) from e


def _merge_duplicates(findings: list[Finding], log: "StageLogAdapter") -> list[Finding]:
    """Drop findings a later tool reported again (same id, scope, package and version)."""
    seen: set[tuple[Any, ...]] = set()
    unique = []
    for finding in findings:
        key = (finding.identifier, finding.scope, finding.package, finding.version)
        if key in seen:
            log.debug(f"{finding.identifier} already reported by another tool")
            continue
        seen.add(key)
        unique.append(finding)
    return unique
