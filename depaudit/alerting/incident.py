"""
Incident-class keys.

The key is derived from the set of unhealthy stages, so a new failure
combination gets its own alert instead of hiding behind an open one.
Sinks find the key again through a marker embedded in the alert body and,
for trackers with short label limits, through a digest label.
"""

from __future__ import annotations

import hashlib
import re
from typing import TYPE_CHECKING, Iterable

from depaudit.constants import INCIDENT_KEY_PREFIX, INCIDENT_LABEL_PREFIX

if TYPE_CHECKING:
    from depaudit.core.models import PipelineRun

_MARKER = "<!-- depaudit:incident-key={key} -->"
_MARKER_PATTERN = re.compile(r"<!-- depaudit:incident-key=(?P<key>[^\s]+) -->")


def incident_key_for(stages: Iterable[str]) -> str:
    """Deterministic key for a set of unhealthy stage ids."""
    unique = sorted(set(stages))
    if not unique:
        raise ValueError("an incident needs at least one unhealthy stage")
    return f"{INCIDENT_KEY_PREFIX}:{'+'.join(unique)}"


def incident_key(run: "PipelineRun") -> str:
    return incident_key_for(run.unhealthy_stages)


def incident_marker(key: str) -> str:
    return _MARKER.format(key=key)


def extract_incident_key(body: str | None) -> str | None:
    if not body:
        return None
    match = _MARKER_PATTERN.search(body)
    return match.group("key") if match else None


def incident_label(key: str) -> str:
    """Short label (GitHub caps labels at 50 characters) identifying ``key``."""
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    return f"{INCIDENT_LABEL_PREFIX}{digest}"
