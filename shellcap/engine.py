"""Session engine: play a vendor protocol against a terminal channel.

The engine owns everything that is per-session: the read buffer, the capture
window, the capture buffer and the session state. It reads whatever the
device sends, waits for one of the current step's patterns, applies the
step's capture transition and writes the step's response, strictly in order.

Timeouts are idle bounds: a step fails once no byte has arrived for the
step timeout, so a long configuration dump that keeps streaming (or keeps
paging) never times out just because it is long.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from shellcap.capture import CaptureBuffer, CaptureTransition, CaptureWindow
from shellcap.config import settings
from shellcap.credentials import Credential, CredentialRole, wipe_all
from shellcap.errors import (
    AuthenticationFailed,
    Cancelled,
    ConfigurationError,
    ExpectationTimeout,
    ProtocolMismatch,
    SessionError,
    TransportClosed,
)
from shellcap.matcher import PatternMatch, PatternMatcher
from shellcap.metrics import pagination_continuations, record_session
from shellcap.protocols import SessionState, Step, VendorProtocol
from shellcap.schemas import DeviceTarget
from shellcap.transport import ChannelClosed, TerminalChannel

logger = logging.getLogger(__name__)

# How much of the unmatched buffer is kept on a timeout, for diagnosis.
_TAIL_BYTES = 200


@dataclass
class SessionResult:
    """Outcome of one device session.

    On success ``config`` holds exactly the captured bytes; on failure it is
    empty and ``error`` says why.
    """
    host: str
    family: str
    success: bool
    config: bytes = b""
    error: Optional[SessionError] = None
    state: SessionState = SessionState.CLOSED
    steps_completed: int = 0
    continuations: int = 0
    duration: float = 0.0

    @property
    def outcome(self) -> str:
        if self.success:
            return "success"
        return self.error.kind if self.error is not None else "failed"


class SessionEngine:
    """Drive one terminal channel through one vendor protocol.

    An engine is single-use: create one per session.
    """

    def __init__(
        self,
        channel: TerminalChannel,
        step_timeout: float | None = None,
        chunk_size: int | None = None,
        terminate_timeout: float | None = None,
    ):
        self.channel = channel
        self.step_timeout = settings.step_timeout if step_timeout is None else step_timeout
        self.chunk_size = chunk_size or settings.read_chunk_size
        self.terminate_timeout = (
            settings.terminate_timeout if terminate_timeout is None else terminate_timeout
        )
        self.state = SessionState.CONNECTING

        self._window = CaptureWindow()
        self._capture = CaptureBuffer()
        self._pending = bytearray()
        self._skip = 0  # leading pending bytes read before the window opened
        self._erase: re.Pattern[bytes] | None = None
        self._read_task: asyncio.Future | None = None
        self._cancel_event = asyncio.Event()
        self._cancel_reason = "cancelled by caller"
        self._continuations = 0
        self._steps_completed = 0
        self._host = ""
        self._family = ""
        self._used = False

    # --- public API ---

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Abort the session: the pending wait ends and the session reports Cancelled."""
        self._cancel_reason = reason
        self._cancel_event.set()

    async def run(
        self,
        target: DeviceTarget,
        credentials: Sequence[Credential],
        protocol: VendorProtocol,
        deadline: float | None = None,
    ) -> SessionResult:
        """Play ``protocol`` for ``target`` and return the captured configuration.

        Args:
            target: Device identity; supplies the placeholder values
            credentials: Secrets for the roles the protocol needs; wiped on return
            protocol: Unbound vendor protocol
            deadline: Overall session bound in seconds (None/0 = none)

        Raises:
            ConfigurationError: Before any channel I/O, if the protocol needs a
                credential role that was not supplied or cannot be bound
        """
        if self._used:
            raise RuntimeError("SessionEngine instances are single-use")
        self._used = True
        self._host = target.host
        self._family = protocol.family

        try:
            missing = protocol.required_roles - {c.role for c in credentials}
            if missing:
                names = ", ".join(sorted(r.value for r in missing))
                raise ConfigurationError(
                    f"Protocol {protocol.family!r} needs {names} credential(s) for {target.host}"
                )
            bound = protocol.bind(target.substitutions())
        except ConfigurationError:
            wipe_all(list(credentials))
            raise
        by_role = {c.role: c for c in credentials}

        loop = asyncio.get_running_loop()
        deadline_handle = None
        if deadline:
            deadline_handle = loop.call_later(
                deadline, self.cancel, f"session deadline of {deadline}s exceeded"
            )

        started = time.monotonic()
        result: SessionResult | None = None
        try:
            await self._play(bound, by_role)
            redacted = self._capture.redact([c.secret for c in credentials])
            if redacted:
                logger.warning(
                    "Redacted %d credential occurrence(s) from %s output", redacted, target.host
                )
            await self._close_channel()
            self._set_state(SessionState.CLOSED)
            result = self._result(success=True, started=started)
            logger.info(
                "Session to %s (%s) completed: %d bytes captured",
                target.host, protocol.family, len(result.config),
            )
        except SessionError as e:
            self._set_state(SessionState.FAILED)
            logger.warning("Session to %s (%s) failed: %s", target.host, protocol.family, e)
            if isinstance(e, ExpectationTimeout) and e.tail:
                logger.debug("Unmatched output tail for %s: %r", target.host, e.tail)
            await self._terminate(bound)
            self._capture.clear()
            result = self._result(success=False, started=started, error=e)
        except asyncio.CancelledError:
            self._set_state(SessionState.FAILED)
            logger.warning("Session to %s (%s) interrupted", target.host, protocol.family)
            await asyncio.shield(self._terminate(bound))
            self._capture.clear()
            record_session(protocol.family, Cancelled.kind, time.monotonic() - started)
            raise
        finally:
            if deadline_handle is not None:
                deadline_handle.cancel()
            wipe_all(list(credentials))
        record_session(protocol.family, result.outcome, result.duration)
        return result

    # --- protocol playback ---

    async def _play(self, protocol: VendorProtocol, credentials: dict[CredentialRole, Credential]) -> None:
        after_credential = False
        for index, step in enumerate(protocol.steps):
            self._set_state(step.state)
            await self._expect(index, step, after_credential)
            if step.capture == CaptureTransition.ENABLE and not self._window.enabled:
                self._skip = len(self._pending)
            self._window.apply(step.capture)
            await self._respond(index, step, protocol.newline, credentials)
            after_credential = step.credential is not None
            self._steps_completed = index + 1
        self._set_state(SessionState.TERMINATING)

    async def _expect(self, index: int, step: Step, after_credential: bool) -> PatternMatch:
        timeout = self.step_timeout if step.timeout is None else step.timeout
        matcher = PatternMatcher(step.expect, step.failures, timeout)
        loop = asyncio.get_running_loop()
        last_activity = loop.time()

        while True:
            match = matcher.search(self._pending)
            if match is not None:
                if match.failure:
                    raise self._failure_error(index, match, matcher, after_credential)
                self._consume(match)
                matcher.reset()
                if not match.pattern.repeatable:
                    return match
                # Pager banner: answer it and keep waiting on the same step.
                self._continuations += 1
                pagination_continuations.labels(family=self._family).inc()
                if match.pattern.erase:
                    self._erase = re.compile(match.pattern.erase.encode("utf-8"))
                await self._write(index, match.pattern.reply.encode("utf-8"))
                continue

            idle = loop.time() - last_activity
            if matcher.expired(idle):
                raise self._timeout_error(index, matcher, after_credential)

            remaining = matcher.timeout - idle if matcher.timeout > 0 else None
            chunk = await self._read(index, remaining)
            if chunk is None:
                raise TransportClosed(
                    "channel closed by remote end while waiting for "
                    f"{' | '.join(matcher.describe())}",
                    self._host, index,
                )
            if chunk:
                self._pending.extend(chunk)
                last_activity = loop.time()

    def _consume(self, match: PatternMatch) -> None:
        """Drop everything up to the end of ``match`` from the read buffer.

        Bytes before the match are kept only while the capture window is
        open; the matched text itself is never captured.
        """
        segment = bytes(self._pending[:match.start])
        del self._pending[:match.end]

        if self._skip:
            segment = segment[min(self._skip, len(segment)):]
            self._skip = max(0, self._skip - match.end)
        if self._erase is not None:
            residue = self._erase.match(segment)
            if residue:
                segment = segment[residue.end():]
            self._erase = None
        if self._window.enabled and segment:
            self._capture.append(segment)

    async def _respond(
        self,
        index: int,
        step: Step,
        newline: str,
        credentials: dict[CredentialRole, Credential],
    ) -> None:
        if step.credential is not None:
            payload = credentials[step.credential].secret
            shown = f"<credential:{step.credential.value}>"
        elif step.send is not None:
            payload = step.send.encode("utf-8")
            shown = step.send
        else:
            return
        if not step.raw:
            payload += newline.encode("utf-8")
        logger.debug("%s step %d: sending %r", self._host, index + 1, shown)
        await self._write(index, payload)

    # --- channel I/O ---

    async def _read(self, index: int, timeout: float | None) -> bytes | None:
        """Read one chunk, returning early (b"") on timeout.

        A read that has not finished when the wait ends stays outstanding and
        is picked up by the next call, so no output is dropped and the channel
        never has two reads in flight.

        Raises:
            Cancelled: As soon as ``cancel()`` is called
            TransportClosed: If the channel read fails
        """
        if self._cancel_event.is_set():
            raise Cancelled(self._cancel_reason, self._host, index)

        if self._read_task is None:
            self._read_task = asyncio.ensure_future(self.channel.read(self.chunk_size))
        read_task = self._read_task
        cancel_task = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait(
                {read_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()

        if self._cancel_event.is_set():
            raise Cancelled(self._cancel_reason, self._host, index)
        if not read_task.done():
            return b""
        self._read_task = None
        try:
            return read_task.result()
        except ChannelClosed:
            return None
        except OSError as e:
            raise TransportClosed(f"read failed: {e}", self._host, index) from e

    async def _write(self, index: int, data: bytes) -> None:
        try:
            await self.channel.write(data)
        except (ChannelClosed, OSError) as e:
            raise TransportClosed(f"write failed: {e}", self._host, index) from e

    async def _terminate(self, protocol: VendorProtocol) -> None:
        """Best-effort logout, then close the channel."""
        try:
            if self.channel.is_open:
                await asyncio.wait_for(self._send_logout(protocol), self.terminate_timeout)
        except (asyncio.TimeoutError, ChannelClosed, OSError) as e:
            logger.debug("Logout sequence to %s not completed: %s", self._host, e)
        finally:
            await self._close_channel()

    async def _send_logout(self, protocol: VendorProtocol) -> None:
        newline = protocol.newline.encode("utf-8")
        for line in protocol.logout:
            await self.channel.write(line.encode("utf-8") + newline)

    async def _drain_read(self) -> None:
        """Let an outstanding read finish before the channel goes away."""
        task, self._read_task = self._read_task, None
        if task is None:
            return
        if not task.done():
            await asyncio.wait({task}, timeout=self.terminate_timeout)
        if not task.done():
            task.cancel()
        elif not task.cancelled() and task.exception() is not None:
            logger.debug("Discarded read error from %s: %s", self._host, task.exception())

    async def _close_channel(self) -> None:
        await self._drain_read()
        try:
            await self.channel.close()
        except (ChannelClosed, OSError) as e:
            logger.debug("Error closing channel to %s: %s", self._host, e)

    # --- helpers ---

    def _set_state(self, state: SessionState) -> None:
        if state != self.state:
            logger.debug("%s: %s -> %s", self._host, self.state.value, state.value)
            self.state = state

    def _failure_error(
        self,
        index: int,
        match: PatternMatch,
        matcher: PatternMatcher,
        after_credential: bool,
    ) -> SessionError:
        if after_credential:
            return AuthenticationFailed(
                f"device rejected the credential ({match.pattern.text!r})",
                self._host, index,
            )
        return ProtocolMismatch(
            f"device answered {match.pattern.text!r} while waiting for "
            f"{' | '.join(matcher.describe())}",
            self._host, index,
        )

    def _timeout_error(
        self,
        index: int,
        matcher: PatternMatcher,
        after_credential: bool,
    ) -> SessionError:
        expected = " | ".join(matcher.describe())
        if after_credential:
            return AuthenticationFailed(
                f"no post-login prompt ({expected}) within {matcher.timeout}s of the credential",
                self._host, index,
            )
        return ExpectationTimeout(
            f"none of [{expected}] seen within {matcher.timeout}s of the last output",
            self._host, index,
            patterns=matcher.describe(),
            tail=bytes(self._pending[-_TAIL_BYTES:]),
        )

    def _result(
        self,
        success: bool,
        started: float,
        error: SessionError | None = None,
    ) -> SessionResult:
        return SessionResult(
            host=self._host,
            family=self._family,
            success=success,
            config=self._capture.getvalue() if success else b"",
            error=error,
            state=self.state,
            steps_completed=self._steps_completed,
            continuations=self._continuations,
            duration=time.monotonic() - started,
        )


async def run_session(
    target: DeviceTarget,
    credentials: Sequence[Credential],
    protocol: VendorProtocol,
    channel: TerminalChannel,
    deadline: float | None = None,
    **engine_options,
) -> SessionResult:
    """Run one session with a fresh engine."""
    engine = SessionEngine(channel, **engine_options)
    return await engine.run(target, credentials, protocol, deadline=deadline)
