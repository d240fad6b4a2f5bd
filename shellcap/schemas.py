"""Device inventory and protocol definition schemas.

These Pydantic models describe what the collector is asked to do: which
devices to visit (the inventory file), how to reach them (DeviceTarget) and,
optionally, extra vendor protocols shipped as JSON.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from shellcap.capture import CaptureTransition
from shellcap.credentials import CredentialRole
from shellcap.errors import ConfigurationError


def short_hostname(host: str) -> str:
    """Hostname portion of a dotted host name (segment before the first '.')."""
    return host.split(".", 1)[0]


# --- Session targets ---

class DeviceTarget(BaseModel):
    """Identity and transport parameters for one device session."""
    model_config = ConfigDict(frozen=True)

    host: str
    user: str
    family: str = ""
    port: int = 22
    kex_algorithm: Optional[str] = None
    cipher: Optional[str] = None
    host_key_algorithm: Optional[str] = None
    variables: dict[str, str] = Field(default_factory=dict)

    @property
    def hostname(self) -> str:
        return self.variables.get("hostname") or short_hostname(self.host)

    def substitutions(self) -> dict[str, str]:
        """Placeholder values for protocol construction."""
        values = dict(self.variables)
        values.update(host=self.host, user=self.user, hostname=self.hostname)
        return values


class FilterConfig(BaseModel):
    """Line filter applied to a captured configuration before it is stored."""
    model_config = ConfigDict(extra="forbid")

    trim_lines_head: int = Field(default=0, ge=0)
    trim_lines_tail: int = Field(default=0, ge=0)
    filter_patterns: list[str] = Field(default_factory=list)
    replace_patterns: list[tuple[str, str]] = Field(default_factory=list)


class DeviceSpec(BaseModel):
    """One inventory entry: the invocation parameters for a device session.

    Field names follow the inventory file format (``model`` is the device
    family, ``kexalgorithm``/``hostkeyalgorithm`` the ssh algorithm names).
    """
    model_config = ConfigDict(extra="forbid")

    host: str
    model: str
    user: str
    password_file: str
    secondary_password_file: Optional[str] = None
    cipher: Optional[str] = None
    kexalgorithm: Optional[str] = None
    hostkeyalgorithm: Optional[str] = None
    port: int = Field(default=22, gt=0, lt=65536)
    variables: dict[str, str] = Field(default_factory=dict)
    filter_config: Optional[FilterConfig] = None
    extra_expect_params: list[str] = Field(default_factory=list)

    @field_validator("host", "user")
    @classmethod
    def _single_token(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        if any(c.isspace() for c in value):
            raise ValueError("must not contain whitespace")
        return value

    @field_validator("password_file")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @model_validator(mode="after")
    def _check_protocol_credentials(self) -> "DeviceSpec":
        from shellcap.protocols import get_vendor_protocol

        try:
            protocol = get_vendor_protocol(self.model)
        except ConfigurationError as e:
            raise ValueError(str(e)) from None
        needs_secondary = CredentialRole.PRIVILEGED in protocol.required_roles
        if self.extra_expect_params:
            # Older inventories passed the privileged password file this way.
            if needs_secondary and not self.secondary_password_file and len(self.extra_expect_params) == 1:
                self.secondary_password_file = self.extra_expect_params[0]
            else:
                raise ValueError(
                    "extra_expect_params is only read as the secondary password file of a "
                    "family that needs one; use secondary_password_file or variables instead"
                )
        if needs_secondary and not self.secondary_password_file:
            raise ValueError(
                f"device family {protocol.family!r} requires secondary_password_file"
            )
        return self

    def to_target(self) -> DeviceTarget:
        from shellcap.protocols import get_family_for_device

        return DeviceTarget(
            host=self.host,
            user=self.user,
            family=get_family_for_device(self.model),
            port=self.port,
            kex_algorithm=self.kexalgorithm,
            cipher=self.cipher,
            host_key_algorithm=self.hostkeyalgorithm,
            variables=self.variables,
        )


def load_devices(path: str | Path) -> list[DeviceSpec]:
    """Read and validate an inventory file (a JSON list of devices).

    Raises:
        ConfigurationError: If the file is not valid JSON or an entry is invalid
        OSError: If the file cannot be read
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"failed to deserialize JSON from '{path}': {e}") from e
    try:
        return TypeAdapter(list[DeviceSpec]).validate_python(raw)
    except ValidationError as e:
        raise ConfigurationError(f"invalid device inventory '{path}': {e}") from e


# --- Protocol definitions (JSON) ---

class PatternDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str
    repeatable: bool = False
    reply: str = ""
    erase: Optional[str] = None
    regex: bool = False


class StepDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expect: list[Union[str, PatternDefinition]]
    send: Optional[str] = None
    credential: Optional[CredentialRole] = None
    capture: CaptureTransition = CaptureTransition.UNCHANGED
    state: str = "authenticating"
    failures: list[Union[str, PatternDefinition]] = Field(default_factory=list)
    raw: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)


class ProtocolDefinition(BaseModel):
    """A vendor protocol as written in a protocols JSON file."""
    model_config = ConfigDict(extra="forbid")

    family: str
    steps: list[StepDefinition]
    vendor: str = ""
    description: str = ""
    aliases: list[str] = Field(default_factory=list)
    newline: str = "\n"
    logout: list[str] = Field(default_factory=lambda: ["exit"])

    def to_protocol(self):
        from shellcap.matcher import Pattern
        from shellcap.protocols import SessionState, Step, VendorProtocol

        def _pattern(item: Union[str, PatternDefinition]) -> Pattern:
            if isinstance(item, str):
                return Pattern(item)
            return Pattern(**item.model_dump())

        try:
            steps = tuple(
                Step(
                    expect=tuple(_pattern(p) for p in s.expect),
                    send=s.send,
                    credential=s.credential,
                    capture=s.capture,
                    state=SessionState(s.state),
                    failures=tuple(_pattern(p) for p in s.failures),
                    raw=s.raw,
                    timeout=s.timeout,
                )
                for s in self.steps
            )
        except ValueError as e:
            raise ConfigurationError(f"Protocol {self.family!r}: {e}") from e
        return VendorProtocol(
            family=self.family,
            steps=steps,
            vendor=self.vendor,
            description=self.description,
            aliases=tuple(self.aliases),
            newline=self.newline,
            logout=tuple(self.logout),
        )
