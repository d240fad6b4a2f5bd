"""Batch collection across an inventory of devices.

Each device gets its own session task. Failures are isolated: whatever goes
wrong for one device (unreadable credential file, ssh missing, device
refusing the password) is logged and reported for that device only, and
the remaining sessions carry on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from shellcap.config import settings
from shellcap.credentials import CredentialSource, wipe_all
from shellcap.engine import SessionResult, run_session
from shellcap.errors import ConfigurationError, SessionError, TransportClosed
from shellcap.output_filter import apply_filter, build_filter
from shellcap.protocols import get_vendor_protocol
from shellcap.schemas import DeviceSpec, DeviceTarget
from shellcap.storage import ConfigSink
from shellcap.transport import ChannelClosed, TerminalChannel, open_channel

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[DeviceTarget], Awaitable[TerminalChannel]]


@dataclass
class DeviceOutcome:
    """What happened to one inventory entry."""
    number: int
    host: str
    family: str
    success: bool
    error: Optional[str] = None
    error_kind: Optional[str] = None
    path: Optional[Path] = None
    config: bytes = b""
    session: Optional[SessionResult] = None


@dataclass
class RunSummary:
    outcomes: list[DeviceOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[DeviceOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> list[DeviceOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


def _deadline(value: float | None) -> float | None:
    if value is None:
        value = settings.session_deadline
    return value if value and value > 0 else None


async def fetch_device(
    number: int,
    device: DeviceSpec,
    credential_source: CredentialSource,
    channel_factory: ChannelFactory = open_channel,
    deadline: float | None = None,
    engine_options: dict[str, Any] | None = None,
) -> DeviceOutcome:
    """Run one device session and return its filtered configuration.

    Everything that can be checked locally (family, filter regexes,
    credential files) is checked before a channel is opened.

    Raises:
        SessionError: The session failed
        ConfigurationError: The device entry is unusable
        TransportClosed: The channel could not be opened
        OSError: A credential file could not be read or a channel failed to open
    """
    target = device.to_target()
    protocol = get_vendor_protocol(target.family)
    build_filter(device.filter_config)

    logger.info("Device %d (%s): fetching running-config", number, device.host)
    credentials = credential_source.load_for(device.password_file, device.secondary_password_file)
    channel: TerminalChannel | None = None
    try:
        try:
            channel = await channel_factory(target)
        except ChannelClosed as e:
            raise TransportClosed(str(e), device.host) from e
        result = await run_session(
            target,
            credentials,
            protocol,
            channel,
            deadline=_deadline(deadline),
            **(engine_options or {}),
        )
    finally:
        wipe_all(credentials)
        if channel is not None and channel.is_open:
            await channel.close()

    if not result.success:
        raise result.error
    return DeviceOutcome(
        number=number,
        host=device.host,
        family=protocol.family,
        success=True,
        config=apply_filter(device.filter_config, result.config),
        session=result,
    )


async def collect_device(
    number: int,
    device: DeviceSpec,
    sink: ConfigSink,
    credential_source: CredentialSource,
    semaphore: asyncio.Semaphore,
    channel_factory: ChannelFactory = open_channel,
    deadline: float | None = None,
    engine_options: dict[str, Any] | None = None,
) -> DeviceOutcome:
    """Fetch one device and store its configuration; never raises for device errors."""
    async with semaphore:
        try:
            outcome = await fetch_device(
                number,
                device,
                credential_source,
                channel_factory=channel_factory,
                deadline=deadline,
                engine_options=engine_options,
            )
            logger.info("Device %d (%s): writing running-config", number, device.host)
            outcome.path = await asyncio.to_thread(sink.store, device.host, outcome.config)
            return outcome
        except (SessionError, ConfigurationError, OSError) as e:
            logger.error("Device %d (%s): %s", number, device.host, e)
            return DeviceOutcome(
                number=number,
                host=device.host,
                family=device.model,
                success=False,
                error=str(e),
                error_kind=getattr(e, "kind", type(e).__name__),
            )


async def collect_all(
    devices: Sequence[DeviceSpec],
    sink: ConfigSink,
    credential_source: CredentialSource | None = None,
    channel_factory: ChannelFactory = open_channel,
    max_concurrent: int | None = None,
    deadline: float | None = None,
    engine_options: dict[str, Any] | None = None,
) -> RunSummary:
    """Collect configurations for every device concurrently.

    Args:
        devices: Validated inventory entries
        sink: Destination for successful captures
        credential_source: Loader for password files (default: paths as given)
        channel_factory: Opens a terminal channel for a target
        max_concurrent: Session limit (default from settings)
        deadline: Per-session deadline in seconds (default from settings; 0 = none)
        engine_options: Extra SessionEngine keyword arguments
    """
    limit = max_concurrent or settings.max_concurrent_sessions
    semaphore = asyncio.Semaphore(max(1, limit))
    source = credential_source or CredentialSource()

    logger.info("Fetching configs for %d devices (max %d concurrent)", len(devices), limit)
    outcomes = await asyncio.gather(*(
        collect_device(
            number,
            device,
            sink,
            source,
            semaphore,
            channel_factory=channel_factory,
            deadline=deadline,
            engine_options=engine_options,
        )
        for number, device in enumerate(devices, start=1)
    ))
    summary = RunSummary(outcomes=list(outcomes))
    logger.info(
        "Run finished: %d succeeded, %d failed",
        len(summary.succeeded), len(summary.failed),
    )
    return summary
