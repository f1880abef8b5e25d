"""
Common base for run reporters.

A reporter turns a PipelineRun into one document (SARIF, JSON, Markdown)
and knows the file name CI expects for it.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from depaudit.constants import MAX_REPORT_VALUE_LENGTH
from depaudit.exceptions import ReportError
from depaudit.logging_config import get_logger

if TYPE_CHECKING:
    from depaudit.core.models import PipelineRun

logger = get_logger("reporters")


class BaseReporter(ABC):
    """
    Abstract reporter.

    Subclasses provide ``format_name``, ``default_filename`` and
    ``generate``; ``write`` is shared.
    """

    @property
    @abstractmethod
    def format_name(self) -> str:
        ...

    @property
    @abstractmethod
    def default_filename(self) -> str:
        """File name used when ``write`` is given a directory."""
        ...

    @abstractmethod
    def generate(self, run: "PipelineRun") -> str:
        ...

    def target_path(self, output_path: Path) -> Path:
        """Resolve a directory (or suffix-less path) to ``<dir>/<default_filename>``."""
        if output_path.is_dir() or not output_path.suffix:
            return output_path / self.default_filename
        return output_path

    def write(self, run: "PipelineRun", output_path: Path) -> Path:
        """
        Render ``run`` and write it next to the other reports.

        The document is written to a temporary sibling first and then moved
        into place, so a crashed run never leaves a half-written report for
        the upload step.

        Raises:
            ReportError: If rendering or writing fails
        """
        file_path = self.target_path(output_path)

        try:
            content = self.generate(run)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise ReportError(f"Could not render {self.format_name} report: {e}") from e

        tmp_path = file_path.with_name(f".{file_path.name}.tmp")
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(content, encoding="utf-8")
            os.replace(tmp_path, file_path)
        except OSError as e:
            raise ReportError(f"Could not write {file_path}: {e}") from e

        logger.info(f"{self.format_name} report written to {file_path}")
        return file_path

    @staticmethod
    def truncate(text: str | None, limit: int = MAX_REPORT_VALUE_LENGTH) -> str:
        if not text:
            return ""
        return text if len(text) <= limit else f"{text[:limit]}..."
