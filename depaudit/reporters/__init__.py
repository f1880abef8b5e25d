"""Report generators module."""

from depaudit.reporters.base import BaseReporter
from depaudit.reporters.json_reporter import JSONReporter
from depaudit.reporters.markdown_reporter import MarkdownReporter
from depaudit.reporters.sarif import SarifReporter, build_interchange, render_interchange

__all__ = [
    "BaseReporter",
    "JSONReporter",
    "MarkdownReporter",
    "SarifReporter",
    "build_interchange",
    "render_interchange",
]
