"""
Logging configuration for depaudit.

Three concerns shape every record written by the pipeline:
- Tokens for the alert sink never reach a handler
- Scanner output is untrusted and may try to forge log lines
- CI systems want one JSON object per line when asked for it

Stage code logs through ``stage_logger`` so each record carries the stage
and run it belongs to.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, MutableMapping

from depaudit.constants import MAX_LOG_LINE_LENGTH, SECRET_KEYWORDS, SECRET_PATTERNS

REDACTED = "[REDACTED]"

_KEYWORD_PAIR = re.compile(
    r"(?i)\b(" + "|".join(re.escape(kw) for kw in sorted(SECRET_KEYWORDS)) + r")\s*[:=]\s*\S+"
)

# Attributes copied into JSON output when a record carries them
CONTEXT_FIELDS = ("stage", "run_id", "incident_key")


def redact(text: str) -> str:
    """Replace token-shaped substrings and ``key=value`` secrets in ``text``."""
    for pattern in SECRET_PATTERNS.values():
        text = pattern.sub(REDACTED, text)
    return _KEYWORD_PAIR.sub(lambda m: f"{m.group(1)}={REDACTED}", text)


class SecretFilter(logging.Filter):
    """Run ``redact`` over the message and its string arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)

        if isinstance(record.args, dict):
            record.args = {k: _redact_arg(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_redact_arg(arg) for arg in record.args)

        return True


def _redact_arg(value: Any) -> Any:
    return redact(value) if isinstance(value, str) else value


class SanitizingFormatter(logging.Formatter):
    """
    Keep every record on a single, bounded line.

    Control characters are dropped, CR/LF are escaped and overly long
    messages (a scanner dumping its whole output) are cut.
    """

    CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

    def __init__(self, *args: Any, max_length: int = MAX_LOG_LINE_LENGTH, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.max_length = max_length

    def format(self, record: logging.LogRecord) -> str:
        line = self.CONTROL_CHARS.sub("", super().format(record))
        line = line.replace("\r", "\\r").replace("\n", "\\n")
        if len(line) > self.max_length:
            line = f"{line[:self.max_length]}... [{len(line) - self.max_length} chars truncated]"
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with run context when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            {field: getattr(record, field) for field in CONTEXT_FIELDS if hasattr(record, field)}
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class StageLogAdapter(logging.LoggerAdapter):
    """
    Logger bound to one stage of one run.

    Messages are prefixed with ``[stage]`` and the record gets ``stage``
    and ``run_id`` attributes for the JSON formatter.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return f"[{self.extra['stage']}] {msg}", kwargs


def stage_logger(name: str, stage: str, run_id: str | None = None) -> StageLogAdapter:
    return StageLogAdapter(get_logger(name), {"stage": stage, "run_id": run_id})


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    no_color: bool = False,
) -> logging.Logger:
    """
    Set up logging for the depaudit namespace.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output structured JSON logs
        no_color: If True, disable colored output

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("depaudit")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(SecretFilter())

    formatter: logging.Formatter
    if json_output:
        formatter = JsonFormatter()
    elif no_color:
        formatter = SanitizingFormatter(
            "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    else:
        formatter = SanitizingFormatter(
            "\033[90m%(asctime)s\033[0m \033[1m%(levelname)-7s\033[0m "
            "\033[36m%(name)s\033[0m: %(message)s",
            datefmt="%H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``depaudit`` namespace (``engine`` -> ``depaudit.engine``)."""
    if not name.startswith("depaudit"):
        name = f"depaudit.{name}"
    return logging.getLogger(name)
