"""Logging setup for collector runs.

Two formats are available, selected by ``SHELLCAP_LOG_FORMAT``:
- "text": one human-readable line per record
- "json": one JSON object per record, for log shippers

Both stamp every record with the run id so interleaved output from
concurrent device sessions can be told apart across runs.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from shellcap.config import settings

# Attributes every LogRecord has; anything else came in via ``extra=``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


def _record_extras(record: logging.LogRecord) -> dict:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


class ShellcapJSONFormatter(logging.Formatter):
    """Format records as single-line JSON objects."""

    def __init__(self, run_id: str = ""):
        super().__init__()
        self.run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "shellcap",
            "run_id": self.run_id,
        }
        extras = _record_extras(record)
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ShellcapTextFormatter(logging.Formatter):
    """Format records as plain text lines prefixed with a short run id."""

    def __init__(self, run_id: str = ""):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s [%(run_id)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        self.run_id = run_id[:8]

    def format(self, record: logging.LogRecord) -> str:
        record.run_id = self.run_id
        return super().format(record)


def setup_logging(run_id: str = "") -> None:
    """Configure the root logger from settings.

    Replaces existing root handlers with a single stderr handler so stdout
    stays free for configuration output (``shellcap fetch``).
    """
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    if str(settings.log_format).lower() == "json":
        formatter: logging.Formatter = ShellcapJSONFormatter(run_id=run_id)
    else:
        formatter = ShellcapTextFormatter(run_id=run_id)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
