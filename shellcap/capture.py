"""Capture gating for device output."""

from __future__ import annotations

import re
from enum import Enum

REDACTED = b"<redacted>"


class CaptureTransition(str, Enum):
    """What a step does to the capture window once its pattern matched."""
    ENABLE = "enable"
    DISABLE = "disable"
    UNCHANGED = "unchanged"


class CaptureWindow:
    """Per-session switch deciding whether output is kept.

    Output read while the window is closed is still scanned for patterns but
    never reaches the capture buffer (login banners, password prompts, menus).
    """

    def __init__(self) -> None:
        self.enabled = False

    def apply(self, transition: CaptureTransition) -> None:
        if transition == CaptureTransition.ENABLE:
            self.enabled = True
        elif transition == CaptureTransition.DISABLE:
            self.enabled = False


class CaptureBuffer:
    """Append-only byte sequence of captured configuration output."""

    def __init__(self) -> None:
        self._data = bytearray()

    def append(self, chunk: bytes | bytearray) -> None:
        self._data.extend(chunk)

    def __len__(self) -> int:
        return len(self._data)

    def __bytes__(self) -> bytes:
        return bytes(self._data)

    def getvalue(self) -> bytes:
        return bytes(self._data)

    def redact(self, secrets: list[bytes]) -> int:
        """Replace every occurrence of the given secrets; return the count."""
        count = 0
        for secret in secrets:
            if not secret:
                continue
            data, n = re.subn(re.escape(secret), REDACTED, bytes(self._data))
            if n:
                self._data = bytearray(data)
                count += n
        return count

    def clear(self) -> None:
        self._data = bytearray()
