"""
Exception policy store.

A read-only table of documented exceptions. The store is built once per
pipeline run and shared by every stage thread; nothing mutates it after
construction, so concurrent readers need no locking.
"""

from __future__ import annotations

from typing import Iterable, Iterator

from depaudit.core.models import ExceptionEntry, Finding, PolicyScope
from depaudit.exceptions import PolicyError
from depaudit.logging_config import get_logger

logger = get_logger("policy")


class PolicyStore:
    """
    Versioned, human-auditable table of suppressed finding identifiers.

    Example:
        store = PolicyStore([ExceptionEntry("RUSTSEC-2023-0071",
                                            PolicyScope.ADVISORIES,
                                            "Windows SSPI only")])
        store.ignore_list()  # ("RUSTSEC-2023-0071",)
    """

    def __init__(self, entries: Iterable[ExceptionEntry] = (), source: str | None = None) -> None:
        self._entries: tuple[ExceptionEntry, ...] = tuple(entries)
        self.source = source
        self._index: dict[tuple[PolicyScope, str], ExceptionEntry] = {}

        for position, entry in enumerate(self._entries):
            key = (entry.scope, entry.identifier)
            if key in self._index:
                raise PolicyError(
                    f"Duplicate exception for {entry.identifier} in scope {entry.scope.value}",
                    source=source,
                    index=position,
                )
            self._index[key] = entry

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ExceptionEntry]:
        return iter(self._entries)

    @property
    def entries(self) -> tuple[ExceptionEntry, ...]:
        return self._entries

    def match(self, finding: Finding) -> ExceptionEntry | None:
        """Exception entry suppressing ``finding``, matched exactly within its scope."""
        return self._index.get((finding.scope, finding.identifier))

    def entries_for(self, scope: PolicyScope) -> tuple[ExceptionEntry, ...]:
        return tuple(e for e in self._entries if e.scope is scope)

    def ignore_list(self, scope: PolicyScope = PolicyScope.ADVISORIES) -> tuple[str, ...]:
        """Identifiers handed to the tool invocation, in document order."""
        return tuple(e.identifier for e in self.entries_for(scope))

    def apply(self, findings: Iterable[Finding]) -> tuple[Finding, ...]:
        """
        Mark findings covered by an exception as suppressed.

        Never drops a finding: the result has the same length and order as
        the input.
        """
        result = []
        for finding in findings:
            entry = self.match(finding)
            if entry is not None and not finding.suppressed:
                logger.debug(f"Suppressed {finding.identifier} ({entry.scope.value})")
                finding = finding.suppress(entry)
            result.append(finding)
        return tuple(result)

    def unused_entries(self, findings: Iterable[Finding]) -> tuple[ExceptionEntry, ...]:
        """Entries that matched none of ``findings``; inert, but worth reviewing."""
        seen = {(f.scope, f.identifier) for f in findings}
        return tuple(
            e for e in self._entries
            if (e.scope, e.identifier) not in seen
        )
