"""Prometheus metrics for collector runs.

Collector runs are usually short-lived (cron or a systemd timer), so the
registry is written to a node_exporter textfile collector with
``write_metrics()`` instead of being served.
"""
from __future__ import annotations

import logging
from pathlib import Path

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    write_to_textfile,
)

logger = logging.getLogger(__name__)


sessions_total = Counter(
    "shellcap_sessions_total",
    "Device sessions by outcome",
    ["family", "outcome"],
)

session_duration = Histogram(
    "shellcap_session_seconds",
    "Duration of device sessions",
    ["family", "outcome"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

pagination_continuations = Counter(
    "shellcap_pagination_continuations_total",
    "Continuation keystrokes sent in response to pager banners",
    ["family"],
)


def record_session(family: str, outcome: str, seconds: float) -> None:
    """Count one finished session and its duration."""
    sessions_total.labels(family=family, outcome=outcome).inc()
    session_duration.labels(family=family, outcome=outcome).observe(seconds)


def write_metrics(path: str | Path) -> None:
    """Write the registry in textfile-collector format (atomic rename)."""
    write_to_textfile(str(path), REGISTRY)
    logger.debug("Wrote metrics to %s", path)
