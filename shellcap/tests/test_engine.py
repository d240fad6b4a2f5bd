"""Tests for the session engine against scripted device transcripts."""

from __future__ import annotations

import asyncio
import time

import pytest
from prometheus_client import REGISTRY

from shellcap.credentials import Credential, CredentialRole
from shellcap.engine import SessionEngine, run_session
from shellcap.errors import (
    AuthenticationFailed,
    Cancelled,
    ConfigurationError,
    ExpectationTimeout,
    ProtocolMismatch,
    TransportClosed,
)
from shellcap.matcher import Pattern
from shellcap.protocols import SessionState, Step, VendorProtocol, get_vendor_protocol
from shellcap.schemas import DeviceTarget
from shellcap.tests.fakes import ScriptedChannel
from shellcap.transport import TerminalChannel


def _make_target(host="r1", user="alice", family="cisco_enable"):
    return DeviceTarget(host=host, user=user, family=family)


def _make_login(secret=b"hunter2"):
    return Credential(CredentialRole.LOGIN, secret)


def _make_cisco_channel(dump=b"line1\nline2\nr1#", **kwargs):
    return ScriptedChannel(
        greeting=b"alice@r1's password:",
        replies=[b"\r\nr1>", b"enable\r\nr1#", dump, b"r1$", b""],
        **kwargs,
    )


# ─── Happy paths ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_enable_mode_session_captures_dump():
    """Password, enable, dump: only the dump body is captured."""
    channel = _make_cisco_channel()

    result = await run_session(
        _make_target(), [_make_login()], get_vendor_protocol("cisco_enable"), channel
    )

    assert result.success is True
    assert result.config == b"line1\nline2\n"
    assert result.state == SessionState.CLOSED
    assert result.steps_completed == 5
    assert result.error is None
    assert channel.writes == [
        b"hunter2\n",
        b"enable\n",
        b"show running-config\n",
        b"exit\n",
        b"exit\n",
    ]
    assert channel.closed


@pytest.mark.asyncio
async def test_prompts_split_across_reads_still_match():
    """Prompts that arrive a few bytes at a time are matched once complete."""
    channel = _make_cisco_channel(chunk=2)

    result = await run_session(
        _make_target(), [_make_login()], get_vendor_protocol("cisco_enable"), channel
    )

    assert result.success is True
    assert result.config == b"line1\nline2\n"


@pytest.mark.asyncio
async def test_pager_banners_answered_and_residue_dropped():
    """Each --More-- banner gets one space; erase sequences never reach the capture."""
    erase = b"\x08" * 10 + b" " * 10 + b"\x08" * 10
    channel = ScriptedChannel(
        greeting=b"alice@r1's password:",
        replies=[
            b"\r\nr1>",
            b"r1#",
            b"page1\n --More-- ",
            erase + b"page2\n --More-- ",
            erase + b"page3\n --More-- ",
            erase + b"page4\nr1#",
            b"r1$",
        ],
    )
    before = REGISTRY.get_sample_value(
        "shellcap_pagination_continuations_total", {"family": "cisco_enable_paged"}
    ) or 0.0

    result = await run_session(
        _make_target(), [_make_login()], get_vendor_protocol("cisco_enable_paged"), channel
    )

    after = REGISTRY.get_sample_value(
        "shellcap_pagination_continuations_total", {"family": "cisco_enable_paged"}
    )
    assert result.success is True
    assert result.config == b"page1\npage2\npage3\npage4\n"
    assert result.continuations == 3
    assert after - before == 3
    assert channel.writes.count(b" ") == 3


@pytest.mark.asyncio
async def test_procurve_session_uses_carriage_returns():
    """Menu banner, pager off, dump and logout confirmation on an HP switch."""
    channel = ScriptedChannel(
        greeting=b"admin@sw2's password:",
        replies=[
            b"HP J9729A\r\nPress any key to continue",
            b"\r\nsw2# ",
            b"sw2# ",
            b'\r\nRunning configuration:\r\nhostname "sw2"\r\nsw2# ',
            b"sw2> ",
            b"Do you want to log out [y/n]? ",
        ],
    )

    result = await run_session(
        _make_target(host="sw2", user="admin", family="procurve"),
        [_make_login(b"pw")],
        get_vendor_protocol("procurve"),
        channel,
    )

    assert result.success is True
    assert result.config == b'\r\nRunning configuration:\r\nhostname "sw2"\r\n'
    assert channel.writes == [
        b"pw\r",
        b" ",
        b"no page\r",
        b"show running-config\r",
        b"exit\r",
        b"exit\r",
        b"y",
    ]


@pytest.mark.asyncio
async def test_vrp_session_sends_privileged_credential():
    """The extended command mode password is the privileged credential."""
    channel = ScriptedChannel(
        greeting=b"bob@sw1's password:",
        replies=[
            b"\r\nInfo: The max number of VTY users is 5.\r\n<sw1>",
            b"Warning: Now you enter an all-command mode. Continue? [Y/N]:",
            b"Please input password:",
            b"Info: You already have all commands.\r\n<sw1>",
            b"\r\n<sw1>",
            b"#\r\nsysname sw1\r\n#\r\nreturn\r\n<sw1>",
            b"",
        ],
    )
    credentials = [
        _make_login(b"login-pw"),
        Credential(CredentialRole.PRIVILEGED, b"cmdline-pw"),
    ]

    result = await run_session(
        _make_target(host="sw1", user="bob", family="vrp_cmdline"),
        credentials,
        get_vendor_protocol("huawei_vrp"),
        channel,
    )

    assert result.success is True
    assert result.config == b"#\r\nsysname sw1\r\n#\r\nreturn\r\n"
    assert b"cmdline-pw\n" in channel.writes
    assert channel.writes[-1] == b"quit\n"


@pytest.mark.asyncio
async def test_hostname_variable_overrides_short_name():
    """A hostname variable is used for prompts when the host is an address."""
    channel = ScriptedChannel(
        greeting=b"alice@10.0.0.1's password:",
        replies=[b"core1>", b"core1#", b"cfg\ncore1#", b"core1$"],
    )
    target = DeviceTarget(
        host="10.0.0.1", user="alice", family="cisco_enable", variables={"hostname": "core1"}
    )

    result = await run_session(target, [_make_login()], get_vendor_protocol("cisco_enable"), channel)

    assert result.success is True
    assert result.config == b"cfg\n"


# ─── Credentials ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_credential_never_appears_in_capture():
    """A device that prints the password inside its config has it redacted."""
    channel = _make_cisco_channel(dump=b"username alice password hunter2\nr1#")

    result = await run_session(
        _make_target(), [_make_login()], get_vendor_protocol("cisco_enable"), channel
    )

    assert result.success is True
    assert b"hunter2" not in result.config
    assert result.config == b"username alice password <redacted>\n"


@pytest.mark.asyncio
async def test_credentials_wiped_after_session():
    credential = _make_login()
    channel = _make_cisco_channel()

    await run_session(_make_target(), [credential], get_vendor_protocol("cisco_enable"), channel)

    assert credential.wiped


@pytest.mark.asyncio
async def test_credential_not_logged(caplog):
    """Sent secrets show up in debug logs only as a role placeholder."""
    caplog.set_level("DEBUG", logger="shellcap.engine")
    channel = _make_cisco_channel()

    await run_session(_make_target(), [_make_login()], get_vendor_protocol("cisco_enable"), channel)

    assert "hunter2" not in caplog.text
    assert "<credential:login>" in caplog.text


@pytest.mark.asyncio
async def test_missing_privileged_credential_fails_before_io():
    """A protocol needing a second credential is refused before any read or write."""
    channel = ScriptedChannel(greeting=b"bob@sw1's password:")
    engine = SessionEngine(channel)

    with pytest.raises(ConfigurationError, match="privileged"):
        await engine.run(
            _make_target(host="sw1", user="bob", family="vrp_cmdline"),
            [_make_login()],
            get_vendor_protocol("vrp_cmdline"),
        )

    assert channel.writes == []
    assert channel.reads == 0


# ─── Failure classification ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_silent_device_times_out():
    """Output that never matches ends in ExpectationTimeout, not a hang."""
    channel = ScriptedChannel(greeting=b"Welcome to the jungle\r\n")

    result = await run_session(
        _make_target(),
        [_make_login()],
        get_vendor_protocol("cisco_enable"),
        channel,
        step_timeout=0.2,
    )

    assert result.success is False
    assert isinstance(result.error, ExpectationTimeout)
    assert result.error.step_index == 0
    assert result.error.patterns == ("alice@r1's password:",)
    assert b"jungle" in result.error.tail
    assert result.state == SessionState.FAILED
    assert result.config == b""
    assert channel.closed


@pytest.mark.asyncio
async def test_rejected_password_is_authentication_failure():
    channel = ScriptedChannel(
        greeting=b"alice@r1's password:",
        replies=[b"Permission denied, please try again.\r\nalice@r1's password:"],
    )

    result = await run_session(
        _make_target(), [_make_login()], get_vendor_protocol("cisco_enable"), channel
    )

    assert isinstance(result.error, AuthenticationFailed)
    assert result.error.step_index == 1
    assert result.outcome == "authentication_failed"


@pytest.mark.asyncio
async def test_no_prompt_after_password_is_authentication_failure():
    channel = ScriptedChannel(greeting=b"alice@r1's password:")

    result = await run_session(
        _make_target(),
        [_make_login()],
        get_vendor_protocol("cisco_enable"),
        channel,
        step_timeout=0.2,
    )

    assert isinstance(result.error, AuthenticationFailed)


@pytest.mark.asyncio
async def test_cli_error_is_protocol_mismatch():
    """An error from the dump command fails the session without partial output."""
    channel = _make_cisco_channel(dump=b"% Invalid input detected at '^' marker.\r\nr1#")

    result = await run_session(
        _make_target(), [_make_login()], get_vendor_protocol("cisco_enable"), channel
    )

    assert isinstance(result.error, ProtocolMismatch)
    assert result.error.step_index == 3
    assert result.config == b""


@pytest.mark.asyncio
async def test_remote_close_is_transport_closed():
    channel = ScriptedChannel(greeting=b"alice@r1's password:", eof_when_drained=True)

    result = await run_session(
        _make_target(), [_make_login()], get_vendor_protocol("cisco_enable"), channel
    )

    assert isinstance(result.error, TransportClosed)
    assert result.error.step_index == 1


@pytest.mark.asyncio
async def test_failed_session_sends_logout_and_closes():
    channel = ScriptedChannel(greeting=b"alice@r1's password:", replies=[b"Access denied\r\n"])

    result = await run_session(
        _make_target(), [_make_login()], get_vendor_protocol("cisco_enable"), channel
    )

    assert result.success is False
    assert channel.writes[-2:] == [b"exit\n", b"exit\n"]
    assert channel.close_calls >= 1


# ─── Cancellation ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cancel_interrupts_wait():
    """cancel() ends the pending wait promptly with Cancelled."""
    channel = ScriptedChannel(greeting=b"")
    engine = SessionEngine(channel, step_timeout=30)
    asyncio.get_running_loop().call_later(0.05, engine.cancel)

    result = await asyncio.wait_for(
        engine.run(_make_target(), [_make_login()], get_vendor_protocol("cisco_enable")),
        timeout=5,
    )

    assert isinstance(result.error, Cancelled)
    assert not isinstance(result.error, ExpectationTimeout)
    assert engine.state == SessionState.FAILED
    assert channel.closed


@pytest.mark.asyncio
async def test_deadline_cancels_session():
    channel = ScriptedChannel(greeting=b"")

    result = await asyncio.wait_for(
        run_session(
            _make_target(),
            [_make_login()],
            get_vendor_protocol("cisco_enable"),
            channel,
            deadline=0.05,
            step_timeout=30,
        ),
        timeout=5,
    )

    assert isinstance(result.error, Cancelled)
    assert "deadline" in str(result.error)


@pytest.mark.asyncio
async def test_task_cancellation_closes_channel():
    """Cancelling the task still terminates the session before propagating."""
    channel = ScriptedChannel(greeting=b"")
    credential = _make_login()
    task = asyncio.create_task(
        run_session(_make_target(), [credential], get_vendor_protocol("cisco_enable"), channel)
    )
    await asyncio.sleep(0.05)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert channel.closed
    assert credential.wiped


# ─── Engine contract ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_engine_is_single_use():
    engine = SessionEngine(_make_cisco_channel())
    await engine.run(_make_target(), [_make_login()], get_vendor_protocol("cisco_enable"))

    with pytest.raises(RuntimeError):
        await engine.run(_make_target(), [_make_login()], get_vendor_protocol("cisco_enable"))


@pytest.mark.asyncio
async def test_bytes_before_capture_window_are_discarded():
    """Output that arrived before the window opened is not captured."""
    protocol = VendorProtocol(
        family="two_stage",
        steps=(
            Step(expect=("login:",), send="{user}"),
            Step(
                expect=("ready>",),
                capture="enable",
                send="dump",
                state=SessionState.CAPTURING,
            ),
            Step(
                expect=("ready>",),
                capture="disable",
                send="bye",
                state=SessionState.CAPTURING,
            ),
        ),
    )
    # "noise" follows the prompt in the same read, before the window opens.
    channel = ScriptedChannel(
        greeting=b"login:",
        replies=[b"ready>noise", b"body\nready>", b""],
    )

    result = await run_session(_make_target(), [], protocol, channel)

    assert result.success is True
    assert result.config == b"body\n"
    assert channel.writes[0] == b"alice\n"


@pytest.mark.asyncio
async def test_per_step_timeout_override():
    protocol = VendorProtocol(
        family="quick",
        steps=(Step(expect=(Pattern("never"),), timeout=0.1),),
    )
    channel = ScriptedChannel()

    result = await run_session(_make_target(), [], protocol, channel, step_timeout=30)

    assert isinstance(result.error, ExpectationTimeout)


@pytest.mark.asyncio
async def test_state_is_capturing_while_dump_streams():
    """The wait for the prompt that ends the dump happens in the capturing state."""

    class StateRecordingChannel(ScriptedChannel):
        engine = None

        async def read(self, size=4096):
            self.states.append((len(self.writes), self.engine.state))
            return await super().read(size)

    channel = StateRecordingChannel(
        greeting=b"alice@r1's password:",
        replies=[b"\r\nr1>", b"r1#", b"hostname r1\ninterface Gi0/1\nr1#", b"r1$", b""],
        chunk=4,
    )
    channel.states = []
    engine = SessionEngine(channel)
    channel.engine = engine

    result = await engine.run(_make_target(), [_make_login()], get_vendor_protocol("cisco_enable"))

    assert result.success is True
    during_dump = {state for writes, state in channel.states if writes == 3}
    after_exit = {state for writes, state in channel.states if writes == 4}
    assert during_dump == {SessionState.CAPTURING}
    assert after_exit == {SessionState.TERMINATING}


# ─── Channel failures ────────────────────────────────────────────────────


class _BlockingReadChannel(TerminalChannel):
    """Reads block a worker thread, like a pexpect read; tracks reads in flight."""

    def __init__(self, delay):
        self.delay = delay
        self.reads = 0
        self.in_flight = 0
        self.in_flight_at_close = None
        self.writes = []
        self._open = True

    def _blocking_read(self):
        self.in_flight += 1
        try:
            time.sleep(self.delay)
            return b""
        finally:
            self.in_flight -= 1

    async def read(self, size=4096):
        self.reads += 1
        return await asyncio.to_thread(self._blocking_read)

    async def write(self, data):
        self.writes.append(data)

    async def close(self):
        self.in_flight_at_close = self.in_flight
        self._open = False

    @property
    def is_open(self):
        return self._open


@pytest.mark.asyncio
async def test_cancel_waits_for_outstanding_read_before_close():
    channel = _BlockingReadChannel(delay=0.3)
    engine = SessionEngine(channel, step_timeout=30, terminate_timeout=2.0)
    asyncio.get_running_loop().call_later(0.05, engine.cancel)

    result = await asyncio.wait_for(
        engine.run(_make_target(), [_make_login()], get_vendor_protocol("cisco_enable")),
        timeout=5,
    )

    assert isinstance(result.error, Cancelled)
    assert channel.reads == 1
    assert channel.in_flight_at_close == 0


@pytest.mark.asyncio
async def test_slow_read_is_not_restarted_between_waits():
    """A read still running when a wait ends is reused, not duplicated."""
    channel = _BlockingReadChannel(delay=0.2)
    protocol = VendorProtocol(
        family="slow",
        steps=(Step(expect=(Pattern("never"),), timeout=0.05),),
    )
    engine = SessionEngine(channel, terminate_timeout=2.0)

    result = await engine.run(_make_target(), [], protocol)

    assert isinstance(result.error, ExpectationTimeout)
    assert channel.reads == 1
    assert channel.in_flight_at_close == 0


@pytest.mark.asyncio
async def test_read_oserror_is_transport_closed_and_logs_out():
    class FailingReadChannel(ScriptedChannel):
        async def read(self, size=4096):
            raise OSError(5, "Input/output error")

    channel = FailingReadChannel()

    result = await run_session(
        _make_target(), [_make_login()], get_vendor_protocol("cisco_enable"), channel
    )

    assert isinstance(result.error, TransportClosed)
    assert "Input/output error" in str(result.error)
    assert channel.writes == [b"exit\n", b"exit\n"]
    assert channel.closed


@pytest.mark.asyncio
async def test_write_oserror_is_transport_closed():
    class FailingWriteChannel(ScriptedChannel):
        async def write(self, data):
            raise OSError(32, "Broken pipe")

    channel = FailingWriteChannel(greeting=b"alice@r1's password:")

    result = await run_session(
        _make_target(), [_make_login()], get_vendor_protocol("cisco_enable"), channel
    )

    assert isinstance(result.error, TransportClosed)
    assert result.error.step_index == 0
    assert channel.closed
