"""
Supply-chain verification stage.

Reads the JSON output of cargo-vet: crates missing audits are MEDIUM
findings, violations of recorded audits are HIGH. cargo-vet only runs for
projects with a cargo-vet configuration.

cargo-crev's ``verify`` table is read as well: crates without reviews are
INFO, warned about LOW, flagged MEDIUM and dangerous HIGH. crev needs a
local identity and fetched proof repositories, so it is an optional tool.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING

from depaudit.constants import STAGE_SUPPLY_CHAIN, TOOL_CARGO_CREV, TOOL_CARGO_VET
from depaudit.core.models import Finding, PolicyScope
from depaudit.core.severity import Severity
from depaudit.exceptions import ParseError
from depaudit.stages.base import BaseStage, ToolParser

if TYPE_CHECKING:
    from depaudit.engine.invoker import ToolOutput

VET_CONFIG = Path("supply-chain") / "config.toml"

CREV_SEVERITY: dict[str, Severity] = {
    "none": Severity.INFO,
    "warn": Severity.LOW,
    "flagged": Severity.MEDIUM,
    "dangerous": Severity.HIGH,
}

_CRATE_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
_VERSION = re.compile(r"^\d+\.\d+\.\d+\S*$")


class SupplyChainStage(BaseStage):
    """Verify that every dependency is covered by a trusted audit."""

    @property
    def id(self) -> str:
        return STAGE_SUPPLY_CHAIN

    @property
    def name(self) -> str:
        return "Supply Chain Security"

    @property
    def description(self) -> str:
        return "Audits and reviews covering every dependency"

    @property
    def default_scope(self) -> PolicyScope:
        return PolicyScope.BANS

    @property
    def default_threshold(self) -> Severity:
        return Severity.MEDIUM

    def parsers(self) -> dict[str, ToolParser]:
        return {
            TOOL_CARGO_VET: self.parse_vet,
            TOOL_CARGO_CREV: self.parse_crev,
        }

    def tool_applicable(self, tool: str, project_dir: Path) -> bool:
        if tool == TOOL_CARGO_VET:
            return (project_dir / VET_CONFIG).is_file()
        return True

    def parse_vet(self, output: "ToolOutput") -> list[Finding]:
        data = self._load_json(output.raw)
        if not isinstance(data, dict) or "conclusion" not in data:
            raise ParseError("Unrecognised cargo-vet report", stage=self.id)

        conclusion = str(data["conclusion"])
        findings = []

        for failure in data.get("failures") or []:
            name = failure.get("name")
            if not name:
                raise ParseError("Vet failure without crate name", stage=self.id)
            version = failure.get("version")
            criteria = ", ".join(failure.get("missing_criteria") or []) or "unknown"
            findings.append(self.create_finding(
                identifier=name,
                description=f"{name} {version} is missing audits for: {criteria}",
                severity=Severity.MEDIUM,
                title=f"Unvetted dependency {name}",
                package=name,
                version=version,
                metadata={"missing_criteria": failure.get("missing_criteria") or []},
            ))

        for violation in data.get("violations") or []:
            name = violation.get("name") or "unknown"
            findings.append(self.create_finding(
                identifier=name,
                description=violation.get("message") or f"Audit violation for {name}",
                severity=Severity.HIGH,
                title=f"Audit violation for {name}",
                package=name,
                version=violation.get("version"),
            ))

        if conclusion.startswith("fail") and not findings:
            findings.append(self.create_finding(
                identifier=f"cargo-vet:{conclusion}",
                description=f"cargo-vet concluded '{conclusion}' without details",
                severity=Severity.HIGH,
            ))

        return findings

    def parse_crev(self, output: "ToolOutput") -> list[Finding]:
        findings = []
        rows = 0
        for line in output.raw.splitlines():
            tokens = line.split()
            if not tokens:
                continue
            status = tokens[0].lower()
            if status != "pass" and status not in CREV_SEVERITY:
                # header and progress lines
                continue
            rows += 1
            if status == "pass":
                continue

            name, version = _crate_columns(tokens)
            if name is None:
                raise ParseError(f"Unreadable cargo-crev row: {line.strip()[:80]}", stage=self.id)
            findings.append(self.create_finding(
                identifier=f"crev:{name}",
                description=f"{name} {version} has crev verification status '{status}'",
                severity=CREV_SEVERITY[status],
                title=f"Unreviewed dependency {name}" if status == "none" else f"{status}: {name}",
                package=name,
                version=version,
                metadata={"status": status},
            ))

        if not rows and output.exit_status != 0:
            raise ParseError(
                f"cargo-crev failed (exit status {output.exit_status})",
                stage=self.id,
            )
        return findings


def _crate_columns(tokens: list[str]) -> tuple[str | None, str | None]:
    """Crate name and version: the first name followed by a semver column."""
    for previous, token in zip(tokens[1:], tokens[2:]):
        if _VERSION.match(token) and _CRATE_NAME.match(previous):
            return previous, token
    return None, None
