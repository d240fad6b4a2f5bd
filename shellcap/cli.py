"""Command line entry point.

Usage:
  shellcap run [--devices devices.json] [--state-dir configs]
  shellcap fetch --family cisco_enable alice ~/.secrets/r1 r1.example.net
  shellcap protocols [--verbose]

Exit status of ``run`` is 0 only when every device succeeded, 1 when at least
one device failed and 2 when the inventory itself is unusable.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid

from pydantic import ValidationError

from shellcap.config import settings
from shellcap.credentials import CredentialSource
from shellcap.errors import ConfigurationError, SessionError
from shellcap.logging_config import setup_logging
from shellcap.metrics import write_metrics
from shellcap.protocols import list_vendor_protocols, load_protocols_file
from shellcap.runner import collect_all, fetch_device
from shellcap.schemas import DeviceSpec, load_devices
from shellcap.storage import DirectorySink
from shellcap.transport import open_channel
from shellcap.version import __version__

logger = logging.getLogger("shellcap.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="shellcap", description="Retrieve running configurations from network devices.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--protocols-file", default=None, help="JSON file with extra vendor protocols")
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Collect every device in the inventory")
    run.add_argument("--devices", default=None, help=f"Inventory file (default: {settings.devices_file})")
    run.add_argument("--state-dir", default=None, help=f"Output directory (default: {settings.state_dir})")
    run.add_argument("--max-concurrent", type=int, default=None, help="Concurrent sessions")
    run.add_argument("--deadline", type=float, default=None, help="Per-session deadline in seconds")
    run.add_argument("--metrics-file", default=None, help="Write Prometheus textfile metrics here")

    fetch = sub.add_parser("fetch", help="Collect one device and print its configuration")
    fetch.add_argument("--family", required=True, help="Device family or alias")
    fetch.add_argument("--port", type=int, default=22)
    fetch.add_argument("--secondary-password-file", default=None)
    fetch.add_argument("--deadline", type=float, default=None)
    fetch.add_argument("user")
    fetch.add_argument("password_file")
    fetch.add_argument("host")
    fetch.add_argument("kexalgorithm", nargs="?", default=None)
    fetch.add_argument("cipher", nargs="?", default=None)
    fetch.add_argument("hostkeyalgorithm", nargs="?", default=None)

    protocols = sub.add_parser("protocols", help="List supported device families")
    protocols.add_argument("--verbose", "-v", action="store_true", help="Show each protocol's steps")
    return p


def _load_extra_protocols(path: str | None) -> None:
    path = path or settings.protocols_file
    if path:
        load_protocols_file(path)


def cmd_run(args: argparse.Namespace) -> int:
    devices_file = args.devices or settings.devices_file
    try:
        devices = load_devices(devices_file)
    except (ConfigurationError, OSError) as e:
        logger.error("Cannot load inventory %s: %s", devices_file, e)
        return EXIT_CONFIG

    sink = DirectorySink(args.state_dir or settings.state_dir)
    summary = asyncio.run(collect_all(
        devices,
        sink,
        credential_source=CredentialSource(),
        channel_factory=open_channel,
        max_concurrent=args.max_concurrent,
        deadline=args.deadline,
    ))
    if args.metrics_file:
        try:
            write_metrics(args.metrics_file)
        except OSError as e:
            logger.warning("Could not write metrics to %s: %s", args.metrics_file, e)
    return EXIT_OK if summary.all_succeeded else EXIT_FAILED


def cmd_fetch(args: argparse.Namespace) -> int:
    try:
        device = DeviceSpec(
            host=args.host,
            model=args.family,
            user=args.user,
            password_file=args.password_file,
            secondary_password_file=args.secondary_password_file,
            kexalgorithm=args.kexalgorithm,
            cipher=args.cipher,
            hostkeyalgorithm=args.hostkeyalgorithm,
            port=args.port,
        )
    except ValidationError as e:
        logger.error("Invalid device parameters: %s", e)
        return EXIT_CONFIG

    try:
        outcome = asyncio.run(fetch_device(
            1,
            device,
            CredentialSource(),
            channel_factory=open_channel,
            deadline=args.deadline,
        ))
    except ConfigurationError as e:
        logger.error("%s: %s", args.host, e)
        return EXIT_CONFIG
    except (SessionError, OSError) as e:
        logger.error("%s: %s", args.host, e)
        return EXIT_FAILED

    sys.stdout.flush()
    sys.stdout.buffer.write(outcome.config)
    sys.stdout.buffer.flush()
    return EXIT_OK


def cmd_protocols(args: argparse.Namespace) -> int:
    for protocol in list_vendor_protocols():
        aliases = f" (aliases: {', '.join(protocol.aliases)})" if protocol.aliases else ""
        print(f"{protocol.family}{aliases}")
        if protocol.description:
            print(f"    {protocol.vendor}: {protocol.description}")
        if args.verbose:
            for i, step in enumerate(protocol.steps, start=1):
                expect = " | ".join(p.text for p in step.expect)
                if step.credential is not None:
                    action = f"<credential:{step.credential.value}>"
                else:
                    action = repr(step.send) if step.send is not None else "-"
                print(f"    {i}. [{step.state.value}] {expect} -> {action}")
    return EXIT_OK


COMMANDS = {
    "run": cmd_run,
    "fetch": cmd_fetch,
    "protocols": cmd_protocols,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(run_id=uuid.uuid4().hex)
    logger.debug("shellcap %s: %s", __version__, args.command)
    try:
        _load_extra_protocols(args.protocols_file)
    except (ConfigurationError, OSError) as e:
        logger.error("Cannot load protocols: %s", e)
        return EXIT_CONFIG
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    raise SystemExit(main())
