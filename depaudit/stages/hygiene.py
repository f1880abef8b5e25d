"""
Dependency-hygiene stage.

Understands four reports:

- cargo-machete text: dependencies declared but never used, listed per
  crate manifest. LOW findings in the dependency-bans scope.
- cargo-udeps JSON: the same signal from a compiler-driven analysis
  (needs a nightly toolchain, so the tool is optional).
- cargo-outdated JSON: dependencies behind their latest release (INFO).
- ``cargo tree --duplicates`` text: crates locked at more than one
  version (INFO).

Unused dependencies fail the stage at the default threshold; outdated and
duplicated crates only do at the comprehensive audit level.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from depaudit.constants import (
    STAGE_HYGIENE,
    TOOL_CARGO_MACHETE,
    TOOL_CARGO_OUTDATED,
    TOOL_CARGO_TREE,
    TOOL_CARGO_UDEPS,
)
from depaudit.core.models import Finding, PolicyScope
from depaudit.core.severity import Severity
from depaudit.exceptions import ParseError
from depaudit.stages.base import BaseStage, ToolParser

if TYPE_CHECKING:
    from depaudit.engine.invoker import ToolOutput

# "<crate> -- <manifest>:" followed by one indented line per unused dependency
_MACHETE_CRATE = re.compile(r"^(\S+) -- (.+):$")
_MACHETE_DEP = re.compile(r"^\s+([A-Za-z0-9_][A-Za-z0-9_-]*)\s*$")

# Root lines of `cargo tree`; dependents are indented under them
_TREE_ROOT = re.compile(r"^([A-Za-z0-9_][A-Za-z0-9_-]*) v(\S+)")

UDEPS_KINDS = ("normal", "development", "build")


class HygieneStage(BaseStage):
    """Unused, outdated and duplicated dependencies."""

    @property
    def id(self) -> str:
        return STAGE_HYGIENE

    @property
    def name(self) -> str:
        return "Dependency Analysis"

    @property
    def description(self) -> str:
        return "Unused, outdated and duplicated dependencies"

    @property
    def default_scope(self) -> PolicyScope:
        return PolicyScope.BANS

    @property
    def ignore_scope(self) -> PolicyScope:
        return PolicyScope.BANS

    def parsers(self) -> dict[str, ToolParser]:
        return {
            TOOL_CARGO_MACHETE: self.parse_machete,
            TOOL_CARGO_UDEPS: self.parse_udeps,
            TOOL_CARGO_OUTDATED: self.parse_outdated,
            TOOL_CARGO_TREE: self.parse_tree,
        }

    def parse_machete(self, output: "ToolOutput") -> list[Finding]:
        # exit status: 0 clean, 1 unused dependencies found, anything else failed
        if output.exit_status not in (0, 1):
            raise ParseError(
                f"cargo-machete failed (exit status {output.exit_status})",
                stage=self.id,
            )

        findings = []
        crate = None
        for line in output.raw.splitlines():
            if not line.strip():
                crate = None
                continue
            header = _MACHETE_CRATE.match(line)
            if header:
                crate = header.group(1)
                continue
            dep = _MACHETE_DEP.match(line) if crate else None
            if dep:
                findings.append(self._unused(dep.group(1), crate))

        if output.exit_status == 1 and not findings:
            raise ParseError("Unused dependencies reported but none could be read", stage=self.id)
        return findings

    def parse_udeps(self, output: "ToolOutput") -> list[Finding]:
        data = self._load_json(output.raw)
        if not isinstance(data, dict) or not isinstance(data.get("unused_deps", {}), dict):
            raise ParseError("Unrecognised cargo-udeps report", stage=self.id)

        findings = []
        for package_id, entry in sorted((data.get("unused_deps") or {}).items()):
            # "demo 0.1.0 (path+file:///...)"
            crate = package_id.split(" ", 1)[0]
            for kind in UDEPS_KINDS:
                for dep in entry.get(kind) or []:
                    findings.append(self._unused(dep, crate, kind=kind))
        return findings

    def _unused(self, dep: str, crate: str, kind: str | None = None) -> Finding:
        return self.create_finding(
            identifier=f"unused:{dep}",
            description=f"{dep} is declared by {crate} but never used",
            severity=Severity.LOW,
            title=f"Unused dependency {dep} in {crate}",
            package=crate,
            metadata={"dependency": dep, "kind": kind or "normal"},
        )

    def parse_outdated(self, output: "ToolOutput") -> list[Finding]:
        if not output.raw.strip() and output.exit_status == 0:
            return []
        document = self._load_json(output.raw)
        if not isinstance(document, dict) or "dependencies" not in document:
            raise ParseError("Unrecognised cargo-outdated report", stage=self.id)
        return self._parse_outdated(document)

    def _parse_outdated(self, document: dict[str, Any]) -> list[Finding]:
        findings = []
        for dep in document.get("dependencies") or []:
            name = dep.get("name")
            if not name:
                raise ParseError("Outdated entry without crate name", stage=self.id)
            latest = dep.get("latest")
            findings.append(self.create_finding(
                identifier=f"outdated:{name}",
                description=f"{name} {dep.get('project')} is behind the latest release {latest}",
                severity=Severity.INFO,
                title=f"Outdated dependency {name}",
                package=name,
                version=dep.get("project"),
                metadata={"latest": latest, "kind": dep.get("kind")},
            ))
        return findings

    def parse_tree(self, output: "ToolOutput") -> list[Finding]:
        if output.exit_status != 0:
            raise ParseError(
                f"cargo tree failed (exit status {output.exit_status})",
                stage=self.id,
            )

        versions: dict[str, list[str]] = {}
        for line in output.raw.splitlines():
            root = _TREE_ROOT.match(line)
            if root is None:
                continue
            name, version = root.groups()
            seen = versions.setdefault(name, [])
            if version not in seen:
                seen.append(version)

        return [
            self.create_finding(
                identifier=f"duplicate:{name}",
                description=f"{name} is locked at {len(found)} versions: {', '.join(found)}",
                severity=Severity.INFO,
                title=f"Duplicate dependency {name}",
                package=name,
                metadata={"versions": found},
            )
            for name, found in sorted(versions.items())
            if len(found) > 1
        ]
