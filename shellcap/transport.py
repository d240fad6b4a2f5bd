"""Terminal channels to remote device shells.

The session engine only ever sees a ``TerminalChannel``: something it can
read bytes from, write bytes to and ask to close. ``SpawnChannel`` is the
reference transport: it runs the system OpenSSH client inside a pseudo
terminal with pexpect, so the device sees an ordinary interactive login and
the password prompt arrives in-band like any other prompt.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import pexpect

from shellcap.config import settings

if TYPE_CHECKING:
    from shellcap.schemas import DeviceTarget

logger = logging.getLogger(__name__)


class ChannelClosed(Exception):
    """The underlying byte stream is gone."""


class TerminalChannel(ABC):
    """Bidirectional byte stream to an interactive shell."""

    @abstractmethod
    async def read(self, size: int = 4096) -> bytes | None:
        """Read whatever output is available.

        Returns b"" when nothing arrived within the poll interval and None
        once the remote end has closed the stream.
        """

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write bytes to the shell.

        Raises:
            ChannelClosed: If the stream is no longer writable
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the stream. Safe to call more than once."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the stream can still be read from or written to."""


def build_ssh_command(target: "DeviceTarget") -> list[str]:
    """Build the OpenSSH argument vector for a device target.

    Cipher, key exchange and host-key algorithms are passed straight to ssh
    so old devices can be reached with legacy algorithms (e.g.
    ``+diffie-hellman-group1-sha1``).
    """
    args = [
        settings.ssh_binary,
        "-p", str(target.port),
        "-o", "PubkeyAuthentication=no",
        "-o", "PreferredAuthentications=keyboard-interactive,password",
        "-o", f"ConnectTimeout={settings.ssh_connect_timeout}",
        "-o", f"StrictHostKeyChecking={settings.ssh_strict_host_key_checking}",
    ]
    if target.kex_algorithm:
        args += ["-o", f"KexAlgorithms={target.kex_algorithm}"]
    if target.cipher:
        args += ["-c", target.cipher]
    if target.host_key_algorithm:
        args += ["-o", f"HostKeyAlgorithms={target.host_key_algorithm}"]
    args.append(f"{target.user}@{target.host}")
    return args


class SpawnChannel(TerminalChannel):
    """Terminal channel backed by a pexpect-spawned ssh client.

    pexpect reads block, so they run in a worker thread with a short poll
    timeout; the event loop stays free for other sessions.
    """

    def __init__(self, child: "pexpect.spawn", poll_interval: float | None = None):
        self.child = child
        self.poll_interval = poll_interval if poll_interval is not None else settings.read_poll_interval
        self._open = True

    @classmethod
    def spawn(cls, target: "DeviceTarget") -> "SpawnChannel":
        """Start ssh for ``target`` and wrap it in a channel.

        Raises:
            ChannelClosed: If the ssh client could not be started
        """
        argv = build_ssh_command(target)
        logger.debug(f"Starting transport: {' '.join(argv)}")
        try:
            # Bytes mode: the engine matches and captures raw output.
            child = pexpect.spawn(argv[0], argv[1:], timeout=None, encoding=None, echo=False)
        except pexpect.ExceptionPexpect as e:
            raise ChannelClosed(f"cannot start {argv[0]}: {e}") from e
        return cls(child)

    def _read_blocking(self, size: int) -> bytes | None:
        try:
            return self.child.read_nonblocking(size, timeout=self.poll_interval)
        except pexpect.TIMEOUT:
            return b""
        except pexpect.EOF:
            self._open = False
            return None

    async def read(self, size: int = 4096) -> bytes | None:
        if not self._open:
            return None
        return await asyncio.to_thread(self._read_blocking, size)

    async def write(self, data: bytes) -> None:
        if not self.is_open:
            self._open = False
            raise ChannelClosed("ssh process has exited")
        try:
            self.child.send(data)
        except OSError as e:
            self._open = False
            raise ChannelClosed(str(e)) from e

    @property
    def is_open(self) -> bool:
        return self._open and self.child is not None and self.child.isalive()

    async def close(self) -> None:
        """Terminate the ssh client, escalating to SIGKILL if it refuses."""
        self._open = False
        child = self.child
        if child is None:
            return
        try:
            await asyncio.to_thread(child.close, True)
        except (OSError, pexpect.ExceptionPexpect):
            try:
                if child.pid:
                    os.kill(child.pid, signal.SIGKILL)
                    logger.debug(f"Force-killed ssh pid {child.pid}")
            except (ProcessLookupError, OSError):
                pass
        self.child = None

    def __repr__(self) -> str:
        pid = self.child.pid if self.child is not None else None
        return f"SpawnChannel(pid={pid}, open={self._open})"


async def open_channel(target: "DeviceTarget") -> TerminalChannel:
    """Default transport collaborator: spawn ssh for the target.

    Raises:
        ChannelClosed: If the ssh client could not be started
    """
    return await asyncio.to_thread(SpawnChannel.spawn, target)
