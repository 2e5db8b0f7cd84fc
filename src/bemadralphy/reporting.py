"""Logging setup and output formatting for text and JSON-lines modes."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, Any

from bemadralphy.pipeline.models import OutputFormat

LOGGER_NAME = "bemadralphy"
_HANDLER_MARKER = "_bemadralphy_handler"


class TextFormatter(logging.Formatter):
    """``[bemadralphy] [LEVEL] message``"""

    def format(self, record: logging.LogRecord) -> str:
        message = f"[bemadralphy] [{record.levelname}] {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


class JsonLinesFormatter(logging.Formatter):
    """One JSON object per record with event, run id, and structured data."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname.lower(),
            "event": getattr(record, "event", None) or record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, "run_id", None),
            "data": getattr(record, "data", None) or {},
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(
    output: OutputFormat = OutputFormat.TEXT,
    *,
    verbose: bool = False,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Install one handler on the package logger, replacing a previous one."""

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonLinesFormatter() if output is OutputFormat.JSON else TextFormatter())
    setattr(handler, _HANDLER_MARKER, True)
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False
    return logger


def render_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True, default=str)
