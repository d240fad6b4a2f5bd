"""Incremental pattern matching over a terminal read buffer.

The matcher never reads from a channel. The session engine owns the buffer,
appends whatever arrives and asks the matcher whether any candidate pattern
is present yet. Literal patterns are plain substring searches; a pattern may
opt in to regular-expression matching instead.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Sequence

from shellcap.errors import ConfigurationError

DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class Pattern:
    """Text to wait for in the device output.

    Fields:
        text: Literal text (or regex source when ``regex`` is set)
        repeatable: On match, send ``reply`` and keep waiting on the same
            candidate set instead of advancing to the next step
        reply: Keystroke(s) sent for a repeatable match, without line terminator
        erase: Regex for terminal residue the device emits after ``reply``
            (excluded from the capture)
        regex: Treat ``text`` as a regular expression
    """
    text: str
    repeatable: bool = False
    reply: str = ""
    erase: Optional[str] = None
    regex: bool = False

    def render(self, variables: Mapping[str, str]) -> "Pattern":
        """Substitute ``{name}`` placeholders in the pattern text."""
        if self.regex:
            values = {k: re.escape(v) for k, v in variables.items()}
        else:
            values = dict(variables)
        try:
            text = self.text.format_map(values)
        except KeyError as e:
            raise ConfigurationError(
                f"Unknown variable {e} in pattern {self.text!r}"
            ) from None
        return replace(self, text=text)

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class PatternMatch:
    """Where a candidate pattern was found in the buffer."""
    pattern: Pattern
    index: int
    start: int
    end: int
    failure: bool = False


class _Compiled:
    __slots__ = ("pattern", "index", "failure", "needle", "regex")

    def __init__(self, pattern: Pattern, index: int, failure: bool):
        self.pattern = pattern
        self.index = index
        self.failure = failure
        self.needle: bytes = b""
        self.regex: re.Pattern[bytes] | None = None
        if pattern.regex:
            try:
                self.regex = re.compile(pattern.text.encode("utf-8"))
            except re.error as e:
                raise ConfigurationError(f"Invalid regex {pattern.text!r}: {e}") from e
        else:
            self.needle = pattern.text.encode("utf-8")
            if not self.needle:
                raise ConfigurationError("Empty literal pattern")

    def search(self, buffer: bytes | bytearray, literal_start: int) -> tuple[int, int] | None:
        if self.regex is not None:
            m = self.regex.search(buffer)
            return (m.start(), m.end()) if m else None
        pos = buffer.find(self.needle, literal_start)
        if pos < 0:
            return None
        return pos, pos + len(self.needle)


class PatternMatcher:
    """Find the earliest occurrence of any candidate pattern.

    Failure patterns are scanned in the same pass. When several candidates
    match, the one starting earliest in the buffer wins; ties go to the
    expected patterns first, then to candidate order.
    """

    def __init__(
        self,
        patterns: Sequence[Pattern],
        failures: Sequence[Pattern] = (),
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if not patterns:
            raise ConfigurationError("A step needs at least one expected pattern")
        self.patterns = tuple(patterns)
        self.failures = tuple(failures)
        self.timeout = timeout
        self._compiled = [_Compiled(p, i, False) for i, p in enumerate(self.patterns)]
        self._compiled += [_Compiled(p, i, True) for i, p in enumerate(self.failures)]
        literal_lengths = [len(c.needle) for c in self._compiled if c.regex is None]
        self._overlap = max(literal_lengths, default=1) - 1
        self._scanned = 0

    def reset(self) -> None:
        """Forget scan progress; call after the buffer was consumed."""
        self._scanned = 0

    def search(self, buffer: bytes | bytearray) -> PatternMatch | None:
        """Return the earliest match in ``buffer`` or None if not matched yet."""
        literal_start = max(0, self._scanned - self._overlap)
        best: tuple[int, int, int, _Compiled, int] | None = None
        for order, compiled in enumerate(self._compiled):
            found = compiled.search(buffer, literal_start)
            if found is None:
                continue
            key = (found[0], int(compiled.failure), order)
            if best is None or key < best[:3]:
                best = (found[0], int(compiled.failure), order, compiled, found[1])
        self._scanned = len(buffer)
        if best is None:
            return None
        start, _, _, compiled, end = best
        return PatternMatch(
            pattern=compiled.pattern,
            index=compiled.index,
            start=start,
            end=end,
            failure=compiled.failure,
        )

    def expired(self, idle: float) -> bool:
        """True once ``idle`` seconds without new bytes exceed the bound."""
        return self.timeout > 0 and idle >= self.timeout

    def describe(self) -> tuple[str, ...]:
        """Texts of the expected patterns, for diagnostics."""
        return tuple(p.text for p in self.patterns)
