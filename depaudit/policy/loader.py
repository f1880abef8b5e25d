"""
Exception policy loading.

Loading is pure parsing: it reads the document and builds a PolicyStore,
nothing else. Two formats are understood:

- A YAML policy document, either a list of records or a mapping with an
  ``exceptions`` list. Each record has ``identifier`` (or ``id``),
  ``scope``, ``rationale`` and an optional ``reference``.
- A cargo-deny ``deny.toml``. Advisory ignores, license exceptions and
  ban skips are translated into entries of the matching scope. Inline
  comments next to advisory ids are used as their rationale.

SECURITY: YAML is always read with safe_load.
"""

from __future__ import annotations

import re
import tomllib
from pathlib import Path
from typing import Any

import yaml

from depaudit.constants import MAX_FILE_SIZE_BYTES
from depaudit.core.models import ExceptionEntry, PolicyScope
from depaudit.exceptions import PolicyError
from depaudit.logging_config import get_logger
from depaudit.policy.store import PolicyStore

logger = get_logger("policy")

_INLINE_COMMENT = re.compile(r'"(?P<id>[^"]+)"\s*,?\s*#\s*(?P<comment>.+)$')


def load_policy(path: Path | str) -> PolicyStore:
    """
    Load an exception policy document from disk.

    Args:
        path: YAML policy document or cargo-deny ``deny.toml``

    Returns:
        Read-only policy store

    Raises:
        PolicyError: If the document is missing, too large or malformed
    """
    path = Path(path)
    if not path.is_file():
        raise PolicyError("Policy document not found", source=str(path))
    if path.stat().st_size > MAX_FILE_SIZE_BYTES:
        raise PolicyError("Policy document too large", source=str(path))

    text = path.read_text(encoding="utf-8")

    if path.suffix == ".toml":
        store = parse_deny_toml(text, source=str(path))
    else:
        store = parse_yaml_policy(text, source=str(path))

    logger.info(f"Loaded {len(store)} exception(s) from {path.name}")
    return store


def parse_yaml_policy(text: str, source: str | None = None) -> PolicyStore:
    """Build a PolicyStore from a YAML policy document."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise PolicyError(f"Invalid YAML: {e}", source=source) from e

    if data is None:
        return PolicyStore((), source=source)

    if isinstance(data, dict):
        data = data.get("exceptions", [])

    if not isinstance(data, list):
        raise PolicyError("Policy must be a list of exception records", source=source)

    entries = [_entry_from_record(record, i, source) for i, record in enumerate(data)]
    return PolicyStore(entries, source=source)


def _entry_from_record(record: Any, index: int, source: str | None) -> ExceptionEntry:
    if not isinstance(record, dict):
        raise PolicyError("Exception record must be a mapping", source=source, index=index)

    identifier = record.get("identifier") or record.get("id")
    if not identifier:
        raise PolicyError("Exception record has no identifier", source=source, index=index)

    try:
        scope = PolicyScope.from_string(str(record.get("scope", PolicyScope.ADVISORIES.value)))
        return ExceptionEntry(
            identifier=str(identifier).strip(),
            scope=scope,
            rationale=str(record.get("rationale") or "").strip(),
            reference=str(record.get("reference") or "SECURITY.md"),
        )
    except ValueError as e:
        raise PolicyError(str(e), source=source, index=index) from e


def parse_deny_toml(text: str, source: str | None = None) -> PolicyStore:
    """Build a PolicyStore from a cargo-deny configuration."""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise PolicyError(f"Invalid TOML: {e}", source=source) from e

    reference = Path(source).name if source else "deny.toml"
    comments = _inline_comments(text)
    entries: dict[tuple[PolicyScope, str], ExceptionEntry] = {}

    def add(identifier: str, scope: PolicyScope, rationale: str) -> None:
        key = (scope, identifier)
        # skip and skip-tree may both name a crate; first mention wins
        if key not in entries:
            entries[key] = ExceptionEntry(identifier, scope, rationale, reference)

    for item in data.get("advisories", {}).get("ignore", []):
        if isinstance(item, dict):
            advisory_id = item.get("id")
            rationale = item.get("reason") or comments.get(advisory_id or "")
        else:
            advisory_id = str(item)
            rationale = comments.get(advisory_id)
        if not advisory_id:
            raise PolicyError("Advisory ignore without id", source=source)
        if not rationale:
            logger.warning(f"Advisory {advisory_id} is ignored without a documented rationale")
            rationale = "Ignored in deny.toml (no rationale given)"
        add(advisory_id, PolicyScope.ADVISORIES, rationale)

    licenses = data.get("licenses", {})
    for item in licenses.get("exceptions", []):
        name = item.get("name") or item.get("crate")
        if not name:
            raise PolicyError("License exception without crate name", source=source)
        allowed = ", ".join(item.get("allow", []))
        add(name, PolicyScope.LICENSES, item.get("reason") or f"Allowed license(s): {allowed}")

    bans = data.get("bans", {})
    for key in ("skip", "skip-tree"):
        for item in bans.get(key, []):
            if isinstance(item, str):
                item = {"name": item}
            name = item.get("name") or item.get("crate")
            if not name:
                raise PolicyError(f"bans.{key} entry without crate name", source=source)
            add(name, PolicyScope.BANS, item.get("reason") or "Multiple versions tolerated")

    return PolicyStore(entries.values(), source=source)


def _inline_comments(text: str) -> dict[str, str]:
    """Map quoted ids to the comment trailing them on the same line."""
    comments: dict[str, str] = {}
    for line in text.splitlines():
        match = _INLINE_COMMENT.search(line.strip())
        if match:
            comments[match.group("id")] = match.group("comment").strip()
    return comments
