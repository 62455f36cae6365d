"""Structured logging for the truth pipeline.

``TRUTH_LOG_FORMAT`` selects "json" (default) or "text". Both formats carry
the ``truth_*`` extras that ingestion, recompute and the worker attach
(user, job type, provider, outcome, duration); JSON nests them under
``context`` without the prefix.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

SERVICE_NAME = "health-truth"
EXTRA_PREFIX = "truth_"

# Per-request INFO lines from the HTTP client would drown the pipeline's own.
_NOISY_LOGGERS = ("httpx", "httpcore")


def truth_context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key[len(EXTRA_PREFIX):]: value
        for key, value in record.__dict__.items()
        if key.startswith(EXTRA_PREFIX)
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = truth_context(record)
        if context:
            entry["context"] = context

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            entry["error"] = {
                "type": type(exc).__name__,
                "traceback": "".join(traceback.format_exception(*record.exc_info)),
            }

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = truth_context(record)
        if not context:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        head, sep, rest = line.partition("\n")
        return f"{head} [{pairs}]{sep}{rest}"


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
