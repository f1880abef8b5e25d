"""Alert decision, deduplication and sinks."""

from depaudit.alerting.incident import incident_key, incident_key_for
from depaudit.alerting.manager import AlertDecision, AlertManager, AlertOutcome, decide
from depaudit.alerting.sinks import AlertSink, GitHubIssueSink, MemoryAlertSink

__all__ = [
    "AlertDecision",
    "AlertManager",
    "AlertOutcome",
    "AlertSink",
    "GitHubIssueSink",
    "MemoryAlertSink",
    "decide",
    "incident_key",
    "incident_key_for",
]
