"""Error classification for device sessions.

Every session outcome other than success is one of the ``SessionError``
subclasses below. ``ConfigurationError`` is separate: it is raised before any
channel I/O when a device, protocol or filter definition is unusable.
"""

from __future__ import annotations


class ConfigurationError(Exception):
    """Invalid device, protocol or credential configuration."""


class SessionError(Exception):
    """Base exception for a failed device session."""

    kind = "session_error"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        step_index: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.host = host
        self.step_index = step_index

    def __str__(self) -> str:
        where = []
        if self.host:
            where.append(self.host)
        if self.step_index is not None:
            where.append(f"step {self.step_index + 1}")
        if where:
            return f"{self.kind} ({', '.join(where)}): {self.message}"
        return f"{self.kind}: {self.message}"


class AuthenticationFailed(SessionError):
    """Expected post-login prompt never appeared after a credential was sent."""

    kind = "authentication_failed"


class ExpectationTimeout(SessionError):
    """No candidate pattern matched within the step's idle bound."""

    kind = "expectation_timeout"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        step_index: int | None = None,
        patterns: tuple[str, ...] = (),
        tail: bytes = b"",
    ):
        super().__init__(message, host, step_index)
        self.patterns = patterns
        self.tail = tail


class TransportClosed(SessionError):
    """The remote end closed the channel before the protocol completed."""

    kind = "transport_closed"


class ProtocolMismatch(SessionError):
    """The device answered with something the protocol does not allow here."""

    kind = "protocol_mismatch"


class Cancelled(SessionError):
    """The session was aborted by the caller or by its deadline."""

    kind = "cancelled"
