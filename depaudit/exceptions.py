"""
Custom exceptions for depaudit.

All exceptions inherit from DepAuditError to allow catching all
pipeline-specific exceptions with a single except clause. Each exception
carries context about the error without exposing sensitive information.

Stage-local errors (ToolInvocationError, ParseError) are converted into
``error`` FindingSets by the stage engine; they never abort sibling stages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from depaudit.core.models import Finding


class DepAuditError(Exception):
    """
    Base exception for all depaudit errors.

    Attributes:
        message: Human-readable error description
        details: Additional context (sanitized, no secrets)
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, details={self.details!r})"


class ConfigurationError(DepAuditError):
    """
    Raised when there's an issue with configuration.

    Examples:
        - Missing required configuration values
        - Invalid configuration format
        - Configuration file not found
    """
    pass


class PolicyError(ConfigurationError):
    """
    Raised when the exception policy document cannot be loaded.

    Examples:
        - Record without identifier or rationale
        - Unknown scope
        - The same identifier listed twice in one scope
    """

    def __init__(
        self,
        message: str,
        source: str | None = None,
        index: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if source:
            from pathlib import Path
            details["source"] = Path(source).name
        if index is not None:
            details["record"] = index
        super().__init__(message, details)


class ToolInvocationError(DepAuditError):
    """
    Raised when a scanning tool could not be run.

    This is an infrastructure problem, not a security signal: the stage
    outcome becomes ``error`` and is never treated as clean.

    Examples:
        - Executable not found
        - Stage timeout exceeded
        - Invocation cancelled
    """

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        timed_out: bool = False,
        details: dict[str, Any] | None = None,
        tool: str | None = None,
    ) -> None:
        details = details or {}
        if stage:
            details["stage"] = stage
        if tool:
            details["tool"] = tool
        if timed_out:
            details["timed_out"] = True
        self.stage = stage
        self.tool = tool
        self.timed_out = timed_out
        super().__init__(message, details)


class ParseError(DepAuditError):
    """
    Raised when a tool ran but its output could not be read.

    Treated identically to ToolInvocationError for outcome purposes.
    """

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        details: dict[str, Any] | None = None,
        tool: str | None = None,
    ) -> None:
        details = details or {}
        if stage:
            details["stage"] = stage
        if tool:
            details["tool"] = tool
        self.stage = stage
        self.tool = tool
        super().__init__(message, details)


class PolicyViolation(DepAuditError):
    """
    Describes un-suppressed findings at or above a stage threshold.

    Note: This is the expected "the audit caught something" case. It is
    attached to failed FindingSets for reporting, not raised through the
    pipeline.
    """

    def __init__(
        self,
        stage: str,
        findings: "tuple[Finding, ...] | list[Finding]",
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        details["stage"] = stage
        details["count"] = len(findings)
        self.stage = stage
        self.findings = tuple(findings)
        identifiers = ", ".join(sorted({f.identifier for f in self.findings}))
        super().__init__(f"Un-suppressed findings: {identifiers}", details)


class AggregationGap(DepAuditError):
    """
    Raised (and recorded) when an expected stage never reported.

    The aggregator records gaps as ``error`` FindingSets instead of
    dropping them, so coverage gaps stay visible.
    """

    def __init__(
        self,
        stage: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        details["stage"] = stage
        self.stage = stage
        super().__init__("Stage did not report a result", details)


class ArtifactError(DepAuditError):
    """
    Raised when a raw artifact cannot be stored or read back.
    """
    pass


class AlertSinkError(DepAuditError):
    """
    Raised when the alert sink rejects a lookup or create call.

    Examples:
        - Authentication failure against the issue tracker
        - Repository not found
        - Rate limiting
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if status_code:
            details["status_code"] = status_code
        self.status_code = status_code
        super().__init__(message, details)


class ReportError(DepAuditError):
    """
    Raised when report generation fails.

    Examples:
        - Output file write permission denied
        - Invalid output format
    """
    pass


class RunCancelled(DepAuditError):
    """
    Raised when a pipeline run is cancelled before all stages finished.

    A cancelled run produces no PipelineRun and no alert.
    """

    def __init__(self, run_id: str, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        details["run_id"] = run_id
        self.run_id = run_id
        super().__init__("Pipeline run cancelled", details)
