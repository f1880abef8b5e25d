"""
Raw artifact storage.

Every stage persists the raw output of each of its tools before it is
parsed, so the forensic record survives failed and errored stages alike.
Artifacts are named ``<stage>.<tool>``; whatever a tool wrote to its other
stream is kept next to it as ``<stage>.<tool>.<stream>``.

Retention is "keep for N days, then discardable"; ``discard_expired``
implements the discarding for the file-backed store.
"""

from __future__ import annotations

import os
import re
import shutil
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Mapping

from depaudit.exceptions import ArtifactError
from depaudit.logging_config import get_logger

logger = get_logger("artifacts")

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_SUFFIX = ".out"


def artifact_name(stage_id: str, tool: str, stream: str | None = None) -> str:
    """Artifact name for a tool's report, or for its secondary ``stream``."""
    name = f"{stage_id}.{tool}"
    return f"{name}.{stream}" if stream else name


def stage_of(name: str) -> str:
    """Stage id an artifact name belongs to."""
    return name.split(".", 1)[0]


class ArtifactStore(ABC):
    """Abstract artifact store keyed by (artifact name, run id)."""

    @abstractmethod
    def put(self, name: str, run_id: str, blob: bytes) -> str:
        """Store ``blob`` and return an opaque reference to it."""
        ...

    @abstractmethod
    def get(self, name: str, run_id: str) -> bytes:
        """
        Read a stored artifact back.

        Raises:
            ArtifactError: If no artifact exists for the key
        """
        ...


class FileArtifactStore(ArtifactStore):
    """
    Store artifacts as ``<root>/<run_id>/<name>.out``.

    Writes go through a temporary file and an atomic rename so readers never
    see a half-written artifact.
    """

    def __init__(
        self,
        root: Path,
        retention_days: Mapping[str, int] | None = None,
        default_retention_days: int = 30,
    ) -> None:
        self.root = Path(root)
        self.retention_days = dict(retention_days or {})
        self.default_retention_days = default_retention_days

    def _path(self, name: str, run_id: str) -> Path:
        for field, value in (("name", name), ("run_id", run_id)):
            if not _SAFE_NAME.match(value):
                raise ArtifactError("Unsafe artifact key", details={"field": field})
        return self.root / run_id / f"{name}{_SUFFIX}"

    def put(self, name: str, run_id: str, blob: bytes) -> str:
        path = self._path(name, run_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_bytes(blob)
            os.replace(tmp, path)
        except OSError as e:
            raise ArtifactError(
                f"Failed to store artifact: {e.strerror or e}",
                details={"artifact": name, "run_id": run_id},
            ) from e
        logger.debug(f"Stored {len(blob)} byte(s) as {name} in run {run_id}")
        return str(path)

    def get(self, name: str, run_id: str) -> bytes:
        path = self._path(name, run_id)
        if not path.is_file():
            raise ArtifactError(
                "Artifact not found",
                details={"artifact": name, "run_id": run_id},
            )
        return path.read_bytes()

    def run_ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def discard_expired(self, now: float | None = None, dry_run: bool = False) -> int:
        """
        Remove artifacts older than their stage's retention window.

        Returns:
            Number of artifacts removed (or that would be, with dry_run)
        """
        now = time.time() if now is None else now
        removed = 0

        for run_id in self.run_ids():
            run_dir = self.root / run_id
            for artifact in run_dir.glob(f"*{_SUFFIX}"):
                stage_id = stage_of(artifact.name[: -len(_SUFFIX)])
                days = self.retention_days.get(stage_id, self.default_retention_days)
                try:
                    expired = artifact.stat().st_mtime < now - days * 86400
                except FileNotFoundError:
                    continue
                if not expired:
                    continue
                removed += 1
                if not dry_run:
                    artifact.unlink(missing_ok=True)

            if not dry_run and not any(run_dir.iterdir()):
                shutil.rmtree(run_dir, ignore_errors=True)

        if removed:
            logger.info(f"Discarded {removed} expired artifact(s)")
        return removed
