"""
Alert sinks.

A sink only ever answers two calls: find the open alert for an incident
key, and create a new alert. Nothing here updates or closes an alert.

``create_if_absent`` combines both. Sinks with an atomic conditional create
override it; the default is a plain lookup followed by a create, which is
only as strong as the sink's read-after-write consistency.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Sequence

import httpx

from depaudit.alerting.incident import extract_incident_key, incident_label
from depaudit.core.models import Alert, AlertStatus, utc_now
from depaudit.exceptions import AlertSinkError
from depaudit.logging_config import get_logger

logger = get_logger("alerting")


class AlertSink(ABC):
    """Abstract alert sink (e.g. an issue tracker)."""

    #: True when create_if_absent is a single atomic operation
    atomic_create: bool = False

    @abstractmethod
    def find_open(self, key: str) -> Alert | None:
        ...

    @abstractmethod
    def create(self, title: str, body: str, labels: Sequence[str]) -> Alert:
        """
        Create an alert.

        The incident key travels inside ``body`` (see incident_marker).
        """
        ...

    def create_if_absent(
        self,
        key: str,
        title: str,
        body: str,
        labels: Sequence[str],
    ) -> tuple[Alert, bool]:
        """
        Return the open alert for ``key``, creating one if there is none.

        Returns:
            (alert, created)
        """
        existing = self.find_open(key)
        if existing is not None:
            return existing, False
        return self.create(title, body, labels), True


class MemoryAlertSink(AlertSink):
    """
    In-process alert sink.

    Used for dry runs and tests. Lookup and create happen under one lock,
    so ``create_if_absent`` is atomic.
    """

    atomic_create = True

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._alerts: list[Alert] = []

    @property
    def alerts(self) -> list[Alert]:
        with self._lock:
            return list(self._alerts)

    def open_alerts(self) -> list[Alert]:
        return [a for a in self.alerts if a.is_open]

    def find_open(self, key: str) -> Alert | None:
        with self._lock:
            return self._find_open_locked(key)

    def _find_open_locked(self, key: str) -> Alert | None:
        for alert in self._alerts:
            if alert.key == key and alert.is_open:
                return alert
        return None

    def create(self, title: str, body: str, labels: Sequence[str]) -> Alert:
        with self._lock:
            return self._create_locked(title, body, labels)

    def _create_locked(self, title: str, body: str, labels: Sequence[str]) -> Alert:
        key = extract_incident_key(body)
        if key is None:
            raise AlertSinkError("Alert body carries no incident key")
        alert = Alert(
            key=key,
            title=title,
            body=body,
            labels=tuple(labels),
            reference=str(len(self._alerts) + 1),
        )
        self._alerts.append(alert)
        return alert

    def create_if_absent(
        self,
        key: str,
        title: str,
        body: str,
        labels: Sequence[str],
    ) -> tuple[Alert, bool]:
        with self._lock:
            existing = self._find_open_locked(key)
            if existing is not None:
                return existing, False
            return self._create_locked(title, body, labels), True

    def close(self, reference: str) -> None:
        """Close an alert, the way a human would on the tracker."""
        with self._lock:
            self._alerts = [
                replace(a, status=AlertStatus.CLOSED) if a.reference == reference else a
                for a in self._alerts
            ]


class GitHubIssueSink(AlertSink):
    """
    Alert sink backed by GitHub issues.

    The incident key is found again through a short digest label and
    verified against the marker in the issue body. GitHub offers no
    conditional create, so deduplication is best-effort across processes.

    Example:
        sink = GitHubIssueSink("owner/repo", token=os.environ["GITHUB_TOKEN"])
        sink.find_open("security-audit:vulnerability")
    """

    def __init__(
        self,
        repository: str,
        token: str | None = None,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.Client(headers=headers, timeout=timeout)
        if client is not None:
            self._client.headers.update(headers)

    def close_client(self) -> None:
        self._client.close()

    def _issues_url(self) -> str:
        return f"{self.api_url}/repos/{self.repository}/issues"

    def find_open(self, key: str) -> Alert | None:
        params = {"state": "open", "labels": incident_label(key), "per_page": "100"}
        issues = self._request("GET", self._issues_url(), params=params)
        if not isinstance(issues, list):
            raise AlertSinkError("Unexpected issue list response")

        for issue in issues:
            if "pull_request" in issue:
                continue
            if extract_incident_key(issue.get("body")) == key:
                return self._to_alert(issue)
        return None

    def create(self, title: str, body: str, labels: Sequence[str]) -> Alert:
        key = extract_incident_key(body)
        if key is None:
            raise AlertSinkError("Alert body carries no incident key")

        all_labels = list(dict.fromkeys([*labels, incident_label(key)]))
        issue = self._request(
            "POST",
            self._issues_url(),
            json={"title": title[:256], "body": body, "labels": all_labels},
        )
        alert = self._to_alert(issue)
        logger.info(f"Created issue #{alert.reference} for {key}")
        return alert

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            resp = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise AlertSinkError(f"GitHub request failed: {type(e).__name__}") from e

        if resp.status_code == 401:
            raise AlertSinkError("GitHub authentication failed (invalid token).", 401)
        if resp.status_code == 404:
            raise AlertSinkError("GitHub repository not found.", 404)
        if resp.status_code in (403, 429) and resp.headers.get("x-ratelimit-remaining") == "0":
            raise AlertSinkError("GitHub rate limit exceeded.", resp.status_code)
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("message", "")
            except ValueError:
                detail = resp.text[:500] if resp.text else "Unknown error"
            raise AlertSinkError(f"GitHub returned {resp.status_code}: {detail}", resp.status_code)
        return resp.json()

    def _to_alert(self, issue: dict[str, Any]) -> Alert:
        body = issue.get("body") or ""
        key = extract_incident_key(body)
        if key is None:
            raise AlertSinkError("Issue body carries no incident key")
        created_at = utc_now()
        if issue.get("created_at"):
            created_at = datetime.fromisoformat(issue["created_at"].replace("Z", "+00:00"))
        return Alert(
            key=key,
            title=issue.get("title", ""),
            body=body,
            labels=tuple(label["name"] if isinstance(label, dict) else str(label)
                         for label in issue.get("labels", [])),
            created_at=created_at,
            status=AlertStatus.OPEN if issue.get("state", "open") == "open" else AlertStatus.CLOSED,
            reference=str(issue.get("number", "")),
        )
