"""
Vulnerability scan stage.

Runs three tools:

- cargo-audit JSON: known vulnerabilities are HIGH, advisory warnings
  (unsound, unmaintained, yanked, notice) get a lower severity depending on
  their kind.
- cargo-deny JSON lines (written to stderr): one diagnostic per line; the
  diagnostic code decides whether the finding belongs to the advisories,
  licenses or dependency-bans scope. Only runs when the project has a
  cargo-deny configuration.
- cargo-geiger JSON: every crate with unsafe code in use becomes an INFO
  finding, so it only blocks at the comprehensive audit level.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

from depaudit.constants import (
    STAGE_VULNERABILITY,
    TOOL_CARGO_AUDIT,
    TOOL_CARGO_DENY,
    TOOL_CARGO_GEIGER,
)
from depaudit.core.models import Finding, PolicyScope
from depaudit.core.severity import Severity
from depaudit.exceptions import ParseError
from depaudit.stages.base import BaseStage, ToolParser

if TYPE_CHECKING:
    from depaudit.engine.invoker import ToolOutput

WARNING_SEVERITY: dict[str, Severity] = {
    "unsound": Severity.MEDIUM,
    "unmaintained": Severity.LOW,
    "yanked": Severity.LOW,
    "notice": Severity.LOW,
}

DENY_CONFIGS = (Path("deny.toml"), Path(".deny.toml"), Path(".cargo") / "deny.toml")

LICENSE_CODES = frozenset({
    "rejected",
    "unlicensed",
    "no-license-field",
    "empty-license-field",
    "missing-clarification-file",
    "gather-failure",
    "license-not-encountered",
    "license-exception-not-encountered",
})

ADVISORY_CODES = frozenset({
    "vulnerability",
    "notice",
    "unmaintained",
    "unsound",
    "yanked",
    "index-failure",
    "advisory-not-detected",
})

# Informational diagnostics that never describe a problem
IGNORED_CODES = frozenset({"accepted", "allowed", "skipped"})

DIAGNOSTIC_SEVERITY: dict[str, Severity] = {
    "error": Severity.HIGH,
    "warning": Severity.LOW,
    "note": Severity.INFO,
    "help": Severity.INFO,
}


class VulnerabilityStage(BaseStage):
    """
    Scan the dependency graph against the advisory database.

    Its ignore-list is the advisories scope of the exception policy.
    """

    @property
    def id(self) -> str:
        return STAGE_VULNERABILITY

    @property
    def name(self) -> str:
        return "Vulnerability Scan"

    @property
    def description(self) -> str:
        return "Known vulnerabilities, license and ban policy, and unsafe code in dependencies"

    def parsers(self) -> dict[str, ToolParser]:
        return {
            TOOL_CARGO_AUDIT: self.parse_audit,
            TOOL_CARGO_DENY: self.parse_deny,
            TOOL_CARGO_GEIGER: self.parse_geiger,
        }

    def tool_applicable(self, tool: str, project_dir: Path) -> bool:
        if tool == TOOL_CARGO_DENY:
            return any((project_dir / config).is_file() for config in DENY_CONFIGS)
        return True

    def parse_audit(self, output: "ToolOutput") -> list[Finding]:
        data = self._load_json(output.raw)

        if not isinstance(data, dict) or not isinstance(data.get("vulnerabilities"), dict):
            raise ParseError("Unrecognised cargo-audit report", stage=self.id)

        findings = []
        for entry in data["vulnerabilities"].get("list") or []:
            findings.append(self._from_entry(entry, Severity.HIGH))

        warnings = data.get("warnings") or {}
        if not isinstance(warnings, dict):
            raise ParseError("Unrecognised warnings section", stage=self.id)

        for kind in sorted(warnings):
            severity = WARNING_SEVERITY.get(kind, Severity.LOW)
            for entry in warnings[kind] or []:
                findings.append(self._from_entry(entry, severity, kind=kind))

        return findings

    def _from_entry(self, entry: dict[str, Any], severity: Severity, kind: str | None = None) -> Finding:
        advisory = entry.get("advisory") or {}
        package = entry.get("package") or {}
        name = package.get("name")
        version = package.get("version")

        identifier = advisory.get("id")
        if not identifier:
            # yanked crates carry no advisory
            if not name:
                raise ParseError("Report entry without advisory id or package", stage=self.id)
            identifier = f"{kind or 'warning'}:{name}"

        declared = advisory.get("severity")
        if isinstance(declared, str):
            try:
                severity = Severity.from_string(declared)
            except ValueError:
                pass

        title = advisory.get("title") or (f"{name} {version} is {kind}" if kind else identifier)
        return self.create_finding(
            identifier=identifier,
            description=advisory.get("description") or title,
            severity=severity,
            title=title,
            package=name,
            version=version,
            metadata={"kind": kind or "vulnerability", "url": advisory.get("url")},
        )

    def parse_deny(self, output: "ToolOutput") -> list[Finding]:
        raw = output.raw.strip()
        if not raw:
            if output.exit_status == 0:
                return []
            raise ParseError(
                f"Tool produced no output (exit status {output.exit_status})",
                stage=self.id,
            )

        findings = []
        for lineno, line in enumerate(raw.splitlines(), 1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise ParseError(f"Line {lineno} is not valid JSON", stage=self.id) from e
            if not isinstance(record, dict):
                raise ParseError(f"Line {lineno} is not a JSON object", stage=self.id)
            if record.get("type") != "diagnostic":
                continue
            finding = self._from_diagnostic(record.get("fields") or {})
            if finding is not None:
                findings.append(finding)
        return findings

    def _from_diagnostic(self, fields: dict[str, Any]) -> Finding | None:
        code = fields.get("code") or "diagnostic"
        if code in IGNORED_CODES:
            return None

        severity = DIAGNOSTIC_SEVERITY.get(str(fields.get("severity", "")).lower())
        if severity is None:
            raise ParseError(f"Unknown diagnostic severity for '{code}'", stage=self.id)

        crate = _first_crate(fields)
        message = fields.get("message") or code

        if code in ADVISORY_CODES:
            scope = PolicyScope.ADVISORIES
            advisory = fields.get("advisory") or {}
            identifier = advisory.get("id") or f"{code}:{crate.get('name', 'unknown')}"
        elif code in LICENSE_CODES:
            scope = PolicyScope.LICENSES
            identifier = crate.get("name") or message
        else:
            scope = PolicyScope.BANS
            identifier = crate.get("name") or message

        return self.create_finding(
            identifier=identifier,
            description=message,
            severity=severity,
            scope=scope,
            title=f"{code}: {identifier}",
            package=crate.get("name"),
            version=crate.get("version"),
            metadata={"code": code},
        )

    def parse_geiger(self, output: "ToolOutput") -> list[Finding]:
        data = self._load_json(output.raw)
        if not isinstance(data, dict) or not isinstance(data.get("packages"), list):
            raise ParseError("Unrecognised cargo-geiger report", stage=self.id)

        findings = []
        for entry in data["packages"]:
            package = entry.get("package") or {}
            ident = package.get("id") or package
            name = ident.get("name")
            if not name:
                raise ParseError("Geiger entry without crate name", stage=self.id)
            version = ident.get("version")

            unsafety = entry.get("unsafety") or {}
            used = unsafety.get("used") or {}
            count = sum(
                int(counts.get("unsafe_", 0))
                for counts in used.values()
                if isinstance(counts, dict)
            )
            if not count:
                continue

            findings.append(self.create_finding(
                identifier=f"unsafe:{name}",
                description=f"{name} {version} uses unsafe code ({count} unsafe item(s) in use)",
                severity=Severity.INFO,
                scope=PolicyScope.BANS,
                title=f"Unsafe code in {name}",
                package=name,
                version=version,
                metadata={
                    "unsafe_used": count,
                    "forbids_unsafe": bool(unsafety.get("forbids_unsafe")),
                },
            ))
        return findings


def _first_crate(fields: dict[str, Any]) -> dict[str, Any]:
    for graph in fields.get("graphs") or []:
        krate = graph.get("Krate") or graph.get("krate")
        if krate:
            return krate
    return {}
