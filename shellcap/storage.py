"""Where captured configurations go.

Only the interface matters to the rest of the package; ``DirectorySink`` is
the plain-files implementation used by ``shellcap run``. Putting the state
directory under version control is left to the operator.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path

from shellcap.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ConfigSink(ABC):
    """Receives one captured configuration per successful session."""

    @abstractmethod
    def store(self, host: str, config: bytes) -> Path | None:
        """Persist ``config`` for ``host``; return where it went, if anywhere."""


class DirectorySink(ConfigSink):
    """Write each configuration to ``<state_dir>/<host>``.

    Files are written to a temporary name and renamed into place, so a
    crashed run never leaves a half-written configuration behind.
    """

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)

    def path_for(self, host: str) -> Path:
        if not host or "/" in host or host in (".", ".."):
            raise ConfigurationError(f"Host {host!r} cannot be used as a file name")
        return self.state_dir / host

    def store(self, host: str, config: bytes) -> Path:
        path = self.path_for(host)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_bytes(config)
        os.replace(tmp, path)
        logger.info("Wrote %d bytes of configuration to %s", len(config), path)
        return path
