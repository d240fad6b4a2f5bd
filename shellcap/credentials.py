"""Credential loading for device sessions.

Secrets are read from plain files (one secret per file). A single trailing
newline is trimmed, nothing else is touched: multiple trailing newlines are
trimmed only once and surrounding whitespace is kept.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class CredentialRole(str, Enum):
    """Logical role of a secret within a session."""
    LOGIN = "login"
    PRIVILEGED = "privileged"


def trim_trailing_newline(data: bytes) -> bytes:
    """Remove exactly one trailing newline, if present."""
    if data.endswith(b"\n"):
        return data[:-1]
    return data


class Credential:
    """A secret byte string bound to a role.

    The secret lives in a mutable buffer so it can be zeroed once the
    session that owns it is finished.
    """

    __slots__ = ("role", "_secret", "_wiped")

    def __init__(self, role: CredentialRole, secret: bytes):
        self.role = CredentialRole(role)
        self._secret = bytearray(secret)
        self._wiped = False

    @property
    def secret(self) -> bytes:
        if self._wiped:
            raise ValueError(f"{self.role.value} credential has already been wiped")
        return bytes(self._secret)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        """Overwrite the secret with zeros and drop it."""
        for i in range(len(self._secret)):
            self._secret[i] = 0
        self._secret = bytearray()
        self._wiped = True

    def __repr__(self) -> str:
        state = "wiped" if self._wiped else "set"
        return f"Credential(role={self.role.value!r}, secret=<{state}>)"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Credential):
            return NotImplemented
        return self.role == other.role and self._secret == other._secret

    __hash__ = None  # type: ignore[assignment]


class CredentialSource:
    """Load credentials from files on disk.

    Each path is read at most once per ``load`` call; the caller owns the
    returned ``Credential`` and is expected to ``wipe()`` it after use.
    """

    def __init__(self, base_dir: str | Path | None = None):
        self.base_dir = Path(base_dir) if base_dir else None

    def _resolve(self, path: str | Path) -> Path:
        p = Path(path).expanduser()
        if self.base_dir is not None and not p.is_absolute():
            p = self.base_dir / p
        return p

    def load(self, path: str | Path, role: CredentialRole = CredentialRole.LOGIN) -> Credential:
        """Read one secret file.

        Raises:
            OSError: If the file cannot be read
        """
        resolved = self._resolve(path)
        logger.debug("Loading %s credential from %s", CredentialRole(role).value, resolved)
        data = resolved.read_bytes()
        return Credential(role, trim_trailing_newline(data))

    def load_for(
        self,
        password_file: str | Path,
        secondary_password_file: str | Path | None = None,
    ) -> list[Credential]:
        """Load the login credential and, when given, the privileged one."""
        credentials = [self.load(password_file, CredentialRole.LOGIN)]
        if secondary_password_file:
            credentials.append(self.load(secondary_password_file, CredentialRole.PRIVILEGED))
        return credentials


def wipe_all(credentials: list[Credential]) -> None:
    """Zero every credential in the list."""
    for credential in credentials:
        credential.wipe()
