"""
Severity scale shared by every scan stage.

Scanners disagree on vocabulary (cargo-deny says ``warning``, advisories
say ``moderate``); everything is folded onto one ordered scale so stage
thresholds are plain comparisons.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Iterable

# Scanner vocabulary -> Severity member name
_ALIASES: dict[str, str] = {
    "INFORMATIONAL": "INFO",
    "NOTE": "INFO",
    "HELP": "INFO",
    "NONE": "INFO",
    "MODERATE": "MEDIUM",
    "IMPORTANT": "HIGH",
}


class Severity(IntEnum):
    """
    Ordered finding severity.

    ``Severity.HIGH >= Severity.MEDIUM`` is how a stage decides whether a
    finding blocks.
    """

    INFO = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def sarif_level(self) -> str:
        """SARIF result level: critical/high -> error, medium -> warning, else note."""
        if self >= Severity.HIGH:
            return "error"
        if self is Severity.MEDIUM:
            return "warning"
        return "note"

    @classmethod
    def from_string(cls, value: str) -> "Severity":
        """
        Parse a severity name, case-insensitively, including scanner aliases.

        Raises:
            ValueError: If the name is not recognised
        """
        normalized = value.strip().upper()
        try:
            return cls[_ALIASES.get(normalized, normalized)]
        except KeyError:
            valid = ", ".join(str(s) for s in cls)
            raise ValueError(f"Invalid severity '{value}'. Valid values: {valid}") from None

    def __str__(self) -> str:
        return self.name.lower()

    def __repr__(self) -> str:
        return f"Severity.{self.name}"


def severity_summary(severities: Iterable[Severity]) -> dict[str, int]:
    """Count per severity name, every level present (zero when unseen)."""
    counts = {str(s): 0 for s in Severity}
    for severity in severities:
        counts[str(severity)] += 1
    return counts
