from __future__ import annotations

import logging
import os

import pytest

from shellcap import protocols
from shellcap.config import settings


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch, tmp_path):
    """Keep sessions fast and output inside the test's temp directory."""
    monkeypatch.setattr(settings, "step_timeout", 2.0)
    monkeypatch.setattr(settings, "terminate_timeout", 0.5)
    monkeypatch.setattr(settings, "read_poll_interval", 0.01)
    monkeypatch.setattr(settings, "session_deadline", 0.0)
    monkeypatch.setattr(settings, "state_dir", str(tmp_path / "configs"))
    monkeypatch.setattr(settings, "devices_file", str(tmp_path / "devices.json"))
    monkeypatch.setattr(settings, "protocols_file", "")
    yield


@pytest.fixture(autouse=True)
def _restore_protocol_registry():
    """Undo protocol registrations made by a test."""
    saved_protocols = dict(protocols.VENDOR_PROTOCOLS)
    saved_aliases = dict(protocols._ALIAS_TO_FAMILY)
    yield
    protocols.VENDOR_PROTOCOLS.clear()
    protocols.VENDOR_PROTOCOLS.update(saved_protocols)
    protocols._ALIAS_TO_FAMILY.clear()
    protocols._ALIAS_TO_FAMILY.update(saved_aliases)


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """setup_logging() replaces root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def password_files(tmp_path):
    """Login and privileged password files, each with one trailing newline."""
    login = tmp_path / "login.pw"
    login.write_bytes(b"hunter2\n")
    privileged = tmp_path / "enable.pw"
    privileged.write_bytes(b"s3cret!\n")
    return login, privileged


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly enabled."""
    if os.getenv("SHELLCAP_RUN_INTEGRATION") in {"1", "true", "TRUE", "yes", "YES"}:
        return

    skip_integration = pytest.mark.skip(
        reason="Integration tests need ssh and a device. Set SHELLCAP_RUN_INTEGRATION=1 to run."
    )
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)
