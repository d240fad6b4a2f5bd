"""Version information for shellcap.

The version is read from:
1. The VERSION file next to this module (primary source)
2. Git tags as fallback
"""

import os
import subprocess
from pathlib import Path


def _git(*args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            timeout=5,
            cwd=Path(__file__).parent,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def get_version() -> str:
    """Get the package version (e.g., "0.1.0")."""
    version_file = Path(__file__).parent / "VERSION"
    try:
        version = version_file.read_text().strip()
        if version:
            return version
    except OSError:
        pass

    tag = _git("describe", "--tags", "--abbrev=0")
    if tag:
        return tag[1:] if tag.startswith("v") else tag
    return "0.0.0"


__version__ = get_version()


def get_commit() -> str:
    """Commit SHA from SHELLCAP_GIT_SHA, else git rev-parse, else "unknown"."""
    env_sha = os.getenv("SHELLCAP_GIT_SHA", "").strip()
    if env_sha:
        return env_sha
    return _git("rev-parse", "HEAD") or "unknown"
