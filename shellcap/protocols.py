"""Vendor session protocols for network devices.

This module provides the registry of device-family protocols: the ordered
prompt/response steps the session engine plays against a device shell to
log in, escalate, disable paging, dump the configuration and log out.

Protocols are data. The engine has no per-vendor branches; a new device
family is supported by adding a VendorProtocol value, never new control flow.

When adding a new device family:
1. Add an entry to VENDOR_PROTOCOLS (or ship it in a protocols JSON file)
2. Use {host}, {user} and {hostname} placeholders for target-specific text
3. Confirm prompt literals and the line terminator against a real transcript
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from shellcap.capture import CaptureTransition
from shellcap.credentials import CredentialRole
from shellcap.errors import ConfigurationError
from shellcap.matcher import Pattern

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle of a device session, in protocol order."""
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    PAGER_DISABLE = "pager_disable"
    CAPTURING = "capturing"
    TERMINATING = "terminating"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def order(self) -> int:
        return _STATE_ORDER.index(self)


_STATE_ORDER = [
    SessionState.CONNECTING,
    SessionState.AUTHENTICATING,
    SessionState.PRIVILEGE_ESCALATION,
    SessionState.PAGER_DISABLE,
    SessionState.CAPTURING,
    SessionState.TERMINATING,
    SessionState.CLOSED,
    SessionState.FAILED,
]


def _as_patterns(items) -> tuple[Pattern, ...]:
    return tuple(p if isinstance(p, Pattern) else Pattern(str(p)) for p in items)


def _render_text(text: str, variables: Mapping[str, str]) -> str:
    try:
        return text.format_map(dict(variables))
    except KeyError as e:
        raise ConfigurationError(f"Unknown variable {e} in {text!r}") from None


@dataclass(frozen=True)
class Step:
    """One expectation followed by a response.

    Fields:
        expect: Candidate patterns; the first to appear completes the step
            (repeatable ones loop instead)
        send: Text written once a pattern matched (None = send nothing)
        credential: Write the session's credential of this role instead of text
        capture: Capture-window transition applied before the send
        state: Session state while waiting for this step's patterns
        failures: Patterns meaning the device refused or diverged
        raw: Write the payload as a bare keystroke, without line terminator
        timeout: Idle bound override in seconds (None = engine default)
    """
    expect: tuple[Pattern, ...]
    send: Optional[str] = None
    credential: Optional[CredentialRole] = None
    capture: CaptureTransition = CaptureTransition.UNCHANGED
    state: SessionState = SessionState.AUTHENTICATING
    failures: tuple[Pattern, ...] = ()
    raw: bool = False
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "expect", _as_patterns(self.expect))
        object.__setattr__(self, "failures", _as_patterns(self.failures))
        object.__setattr__(self, "capture", CaptureTransition(self.capture))
        object.__setattr__(self, "state", SessionState(self.state))
        if self.credential is not None:
            object.__setattr__(self, "credential", CredentialRole(self.credential))
        if not self.expect:
            raise ConfigurationError("A step needs at least one expected pattern")
        if self.send is not None and self.credential is not None:
            raise ConfigurationError("A step sends either text or a credential, not both")
        for pattern in self.expect:
            if pattern.repeatable and not pattern.reply:
                raise ConfigurationError(
                    f"Repeatable pattern {pattern.text!r} needs a reply keystroke"
                )

    def render(self, variables: Mapping[str, str]) -> "Step":
        return replace(
            self,
            expect=tuple(p.render(variables) for p in self.expect),
            failures=tuple(p.render(variables) for p in self.failures),
            send=None if self.send is None else _render_text(self.send, variables),
        )


@dataclass(frozen=True)
class VendorProtocol:
    """Interaction script for one device family.

    Fields:
        family: Registry key (e.g., "cisco_enable")
        steps: Ordered steps played against the device shell
        vendor: Vendor name for display
        description: What kind of device this script fits
        aliases: Alternative family names that resolve to this protocol
        newline: Line terminator appended to non-raw sends
        logout: Lines sent, without waiting, for best-effort termination
    """
    family: str
    steps: tuple[Step, ...]
    vendor: str = ""
    description: str = ""
    aliases: tuple[str, ...] = ()
    newline: str = "\n"
    logout: tuple[str, ...] = ("exit",)

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "aliases", tuple(self.aliases))
        object.__setattr__(self, "logout", tuple(self.logout))
        self._validate()

    def _validate(self) -> None:
        if not self.steps:
            raise ConfigurationError(f"Protocol {self.family!r} has no steps")
        if self.newline not in ("\n", "\r", "\r\n"):
            raise ConfigurationError(f"Protocol {self.family!r}: unsupported newline {self.newline!r}")
        window_open = False
        previous = SessionState.CONNECTING
        for i, step in enumerate(self.steps, start=1):
            if step.state in (SessionState.CONNECTING, SessionState.CLOSED, SessionState.FAILED):
                raise ConfigurationError(
                    f"Protocol {self.family!r} step {i}: {step.state.value} is not a step state"
                )
            if step.state.order < previous.order:
                raise ConfigurationError(
                    f"Protocol {self.family!r} step {i}: state {step.state.value} "
                    f"after {previous.value}"
                )
            previous = step.state
            if step.capture == CaptureTransition.ENABLE:
                if step.state != SessionState.CAPTURING:
                    raise ConfigurationError(
                        f"Protocol {self.family!r} step {i}: capture can only open while capturing"
                    )
                window_open = True
            elif step.capture == CaptureTransition.DISABLE:
                window_open = False
            if step.credential is not None and window_open:
                raise ConfigurationError(
                    f"Protocol {self.family!r} step {i}: credential sent while capture is open"
                )

    @property
    def required_roles(self) -> frozenset[CredentialRole]:
        return frozenset(s.credential for s in self.steps if s.credential is not None)

    def bind(self, variables: Mapping[str, str]) -> "VendorProtocol":
        """Return a copy with ``{name}`` placeholders substituted."""
        return replace(
            self,
            steps=tuple(step.render(variables) for step in self.steps),
            logout=tuple(_render_text(line, variables) for line in self.logout),
        )


# =============================================================================
# Shared pattern sets
# =============================================================================

AUTH_FAILURES = (
    Pattern("Permission denied"),
    Pattern("Access denied"),
    Pattern("Authentication failed"),
    Pattern("% Bad passwords"),
    Pattern("Login incorrect"),
)

CLI_ERRORS = (
    Pattern("% Invalid input"),
    Pattern("% Unknown command"),
    Pattern("Error: Unrecognized command"),
)

SSH_PASSWORD_PROMPT = "{user}@{host}'s password:"

# Cisco-style pager banner; after the space reply the device erases the
# banner with backspace-space-backspace runs.
MORE_BANNER = Pattern(" --More-- ", repeatable=True, reply=" ", erase=r"\x08+ +\x08+")


# =============================================================================
# VENDOR PROTOCOL REGISTRY
# =============================================================================

VENDOR_PROTOCOLS: dict[str, VendorProtocol] = {
    "cisco_enable": VendorProtocol(
        family="cisco_enable",
        vendor="Cisco",
        description="Enable-mode CLI with paging already disabled for the login user",
        aliases=("ios", "cisco_ios"),
        steps=(
            Step(
                expect=(SSH_PASSWORD_PROMPT,),
                credential=CredentialRole.LOGIN,
                state=SessionState.AUTHENTICATING,
            ),
            Step(
                expect=("{hostname}>",),
                failures=AUTH_FAILURES,
                send="enable",
                state=SessionState.PRIVILEGE_ESCALATION,
            ),
            Step(
                expect=("{hostname}#",),
                failures=(Pattern("% Access denied"), Pattern("% Bad secrets")),
                capture=CaptureTransition.ENABLE,
                send="show running-config",
                state=SessionState.CAPTURING,
            ),
            Step(
                expect=("{hostname}#",),
                failures=CLI_ERRORS,
                capture=CaptureTransition.DISABLE,
                send="exit",
                state=SessionState.CAPTURING,
            ),
            Step(
                expect=("{hostname}$",),
                send="exit",
                state=SessionState.TERMINATING,
            ),
        ),
        logout=("exit", "exit"),
    ),
    "cisco_enable_paged": VendorProtocol(
        family="cisco_enable_paged",
        vendor="Cisco",
        description="Enable-mode CLI that pages output with --More-- banners",
        aliases=("ios_paged",),
        steps=(
            Step(
                expect=(SSH_PASSWORD_PROMPT,),
                credential=CredentialRole.LOGIN,
                state=SessionState.AUTHENTICATING,
            ),
            Step(
                expect=("{hostname}>",),
                failures=AUTH_FAILURES,
                send="enable",
                state=SessionState.PRIVILEGE_ESCALATION,
            ),
            Step(
                expect=("{hostname}#",),
                failures=(Pattern("% Access denied"), Pattern("% Bad secrets")),
                capture=CaptureTransition.ENABLE,
                send="show running-config",
                state=SessionState.CAPTURING,
            ),
            Step(
                expect=(MORE_BANNER, Pattern("{hostname}#")),
                failures=CLI_ERRORS,
                capture=CaptureTransition.DISABLE,
                send="exit",
                state=SessionState.CAPTURING,
            ),
            Step(
                expect=("{hostname}$",),
                send="exit",
                state=SessionState.TERMINATING,
            ),
        ),
        logout=("exit", "exit"),
    ),
    "procurve": VendorProtocol(
        family="procurve",
        vendor="HP",
        description="Menu-driven switch with a key-press banner and logout confirmation",
        aliases=("hp_procurve", "aruba_procurve"),
        newline="\r",
        steps=(
            Step(
                expect=(SSH_PASSWORD_PROMPT,),
                credential=CredentialRole.LOGIN,
                state=SessionState.AUTHENTICATING,
            ),
            Step(
                expect=("Press any key to continue",),
                failures=AUTH_FAILURES,
                send=" ",
                raw=True,
                state=SessionState.AUTHENTICATING,
            ),
            Step(
                expect=("{hostname}#",),
                send="no page",
                state=SessionState.PAGER_DISABLE,
            ),
            Step(
                expect=("{hostname}#",),
                failures=CLI_ERRORS,
                capture=CaptureTransition.ENABLE,
                send="show running-config",
                state=SessionState.CAPTURING,
            ),
            Step(
                expect=("{hostname}#",),
                capture=CaptureTransition.DISABLE,
                send="exit",
                state=SessionState.CAPTURING,
            ),
            Step(
                expect=("{hostname}>",),
                send="exit",
                state=SessionState.TERMINATING,
            ),
            Step(
                expect=("Do you want to log out",),
                send="y",
                raw=True,
                state=SessionState.TERMINATING,
            ),
        ),
        logout=("exit", "exit", "y"),
    ),
    "vrp_cmdline": VendorProtocol(
        family="vrp_cmdline",
        vendor="Huawei",
        description="VRP switch needing an extended command mode with its own password",
        aliases=("huawei_vrp",),
        steps=(
            Step(
                expect=(SSH_PASSWORD_PROMPT,),
                credential=CredentialRole.LOGIN,
                state=SessionState.AUTHENTICATING,
            ),
            Step(
                expect=("<{hostname}>",),
                failures=AUTH_FAILURES,
                send="_cmdline-mode on",
                state=SessionState.PRIVILEGE_ESCALATION,
            ),
            Step(
                expect=("Continue? [Y/N]",),
                failures=CLI_ERRORS,
                send="Y",
                state=SessionState.PRIVILEGE_ESCALATION,
            ),
            Step(
                expect=("password:",),
                failures=CLI_ERRORS,
                credential=CredentialRole.PRIVILEGED,
                state=SessionState.PRIVILEGE_ESCALATION,
            ),
            Step(
                expect=("<{hostname}>",),
                failures=(Pattern("Error: "),),
                send="screen-length 0 temporary",
                state=SessionState.PAGER_DISABLE,
            ),
            Step(
                expect=("<{hostname}>",),
                failures=CLI_ERRORS,
                capture=CaptureTransition.ENABLE,
                send="display current-configuration",
                state=SessionState.CAPTURING,
            ),
            Step(
                expect=("<{hostname}>",),
                capture=CaptureTransition.DISABLE,
                send="quit",
                state=SessionState.CAPTURING,
            ),
        ),
        logout=("quit",),
    ),
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

_ALIAS_TO_FAMILY: dict[str, str] = {}


def _index_aliases(protocol: VendorProtocol) -> None:
    _ALIAS_TO_FAMILY[protocol.family.lower()] = protocol.family
    for alias in protocol.aliases:
        _ALIAS_TO_FAMILY[alias.lower()] = protocol.family


for _protocol in VENDOR_PROTOCOLS.values():
    _index_aliases(_protocol)


def get_family_for_device(name: str) -> str:
    """Resolve a family name or alias to its canonical family."""
    lowered = name.lower()
    return _ALIAS_TO_FAMILY.get(lowered, lowered)


def get_vendor_protocol(family: str) -> VendorProtocol:
    """Look up the protocol for a device family or alias.

    Raises:
        ConfigurationError: If no protocol is registered under that name
    """
    protocol = VENDOR_PROTOCOLS.get(get_family_for_device(family))
    if protocol is None:
        raise ConfigurationError(
            f"No vendor protocol registered for device family {family!r}"
        )
    return protocol


def list_vendor_protocols() -> list[VendorProtocol]:
    """All registered protocols, sorted by family."""
    return [VENDOR_PROTOCOLS[k] for k in sorted(VENDOR_PROTOCOLS)]


def register_vendor_protocol(protocol: VendorProtocol, replace_existing: bool = False) -> None:
    """Add a protocol to the registry.

    Raises:
        ConfigurationError: If the family (or an alias) is already taken and
            ``replace_existing`` is False
    """
    names = [protocol.family.lower(), *(a.lower() for a in protocol.aliases)]
    if not replace_existing:
        for name in names:
            owner = _ALIAS_TO_FAMILY.get(name)
            if owner is not None and owner != protocol.family:
                raise ConfigurationError(f"Name {name!r} already belongs to {owner!r}")
        if protocol.family in VENDOR_PROTOCOLS:
            raise ConfigurationError(f"Protocol {protocol.family!r} is already registered")
    VENDOR_PROTOCOLS[protocol.family] = protocol
    _index_aliases(protocol)
    logger.debug("Registered vendor protocol %s (%d steps)", protocol.family, len(protocol.steps))


def load_protocols_file(path: str | Path, replace_existing: bool = False) -> list[VendorProtocol]:
    """Load protocol definitions from a JSON file and register them.

    Raises:
        ConfigurationError: If the file is not valid JSON or a definition is invalid
    """
    from pydantic import ValidationError

    from shellcap.schemas import ProtocolDefinition

    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Failed to parse protocols file {path}: {e}") from e
    if not isinstance(raw, list):
        raise ConfigurationError(f"Protocols file {path} must contain a JSON list")

    loaded: list[VendorProtocol] = []
    for entry in raw:
        try:
            definition = ProtocolDefinition.model_validate(entry)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid protocol definition in {path}: {e}") from e
        protocol = definition.to_protocol()
        register_vendor_protocol(protocol, replace_existing=replace_existing)
        loaded.append(protocol)
    logger.info("Loaded %d vendor protocol(s) from %s", len(loaded), path)
    return loaded
