"""Line filter for captured configurations.

Devices put noise around the configuration (the echoed command, timestamps,
"Building configuration..." lines, a trailing prompt). A per-device
``filter_config`` in the inventory cleans that up before the result is
stored. The session engine never filters; the batch runner does.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Optional

from shellcap.errors import ConfigurationError
from shellcap.schemas import FilterConfig

logger = logging.getLogger(__name__)

LineFilter = Callable[[str], str]

# Replacement templates use $1, $name, ${name} and $$ group references.
_GROUP_REF = re.compile(r"\$(?:(\$)|\{([^}]*)\}|([0-9A-Za-z_]+))")


def _compile(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ConfigurationError(f"failed to compile regex: '{pattern}' ({e})") from e


def _replacement(template: str) -> Callable[[re.Match[str]], str]:
    """Turn a ``$``-style replacement template into an ``re.sub`` callable.

    Backslashes are literal. A reference to a group that does not exist or
    did not participate in the match expands to nothing.
    """
    def expand(match: re.Match[str]) -> str:
        def group(ref: re.Match[str]) -> str:
            if ref.group(1):
                return "$"
            name = ref.group(2) if ref.group(2) is not None else ref.group(3)
            key = int(name) if name.isascii() and name.isdigit() else name
            try:
                return match.group(key) or ""
            except IndexError:
                return ""

        return _GROUP_REF.sub(group, template)

    return expand


def _split_lines(raw: str) -> list[str]:
    """Split on "\\n" only, dropping one "\\r" before each terminator."""
    if not raw:
        return []
    lines = raw.split("\n")
    if raw.endswith("\n"):
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def build_filter(config: Optional[FilterConfig]) -> Optional[LineFilter]:
    """Compile a filter config into a callable.

    Order of operations per dump:
    1. drop ``trim_lines_head`` leading lines
    2. apply every ``replace_patterns`` substitution to each line (``$1`` or
       ``${name}`` refer to groups, ``$$`` is a literal dollar sign)
    3. drop lines matching any of ``filter_patterns``
    4. strip trailing whitespace
    5. drop ``trim_lines_tail`` trailing lines and join with "\\n"

    Returns None when there is nothing to apply.

    Raises:
        ConfigurationError: If any pattern is not a valid regex
    """
    if config is None:
        return None

    drop = [_compile(p) for p in config.filter_patterns]
    replacements = [(_compile(p), _replacement(repl)) for p, repl in config.replace_patterns]
    head = config.trim_lines_head
    tail = config.trim_lines_tail

    def apply(raw: str) -> str:
        lines = []
        for line in _split_lines(raw)[head:]:
            for regex, repl in replacements:
                line = regex.sub(repl, line)
            if any(regex.search(line) for regex in drop):
                continue
            lines.append(line.rstrip())

        if tail > len(lines):
            logger.warning("no lines remain after trimming")
            return ""
        return "\n".join(lines[:len(lines) - tail])

    return apply


def apply_filter(config: Optional[FilterConfig], raw: bytes) -> bytes:
    """Filter a captured buffer; unfiltered buffers pass through untouched."""
    line_filter = build_filter(config)
    if line_filter is None:
        return raw
    text = raw.decode("utf-8", errors="replace")
    return line_filter(text).encode("utf-8")
