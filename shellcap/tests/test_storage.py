"""Tests for configuration sinks."""

import pytest

from shellcap.errors import ConfigurationError
from shellcap.storage import DirectorySink


def test_store_writes_host_file(tmp_path):
    sink = DirectorySink(tmp_path / "configs")

    path = sink.store("r1.example.net", b"hostname r1\n")

    assert path == tmp_path / "configs" / "r1.example.net"
    assert path.read_bytes() == b"hostname r1\n"


def test_store_overwrites_and_leaves_no_temp_file(tmp_path):
    sink = DirectorySink(tmp_path)
    sink.store("r1", b"old")

    sink.store("r1", b"new")

    assert (tmp_path / "r1").read_bytes() == b"new"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["r1"]


@pytest.mark.parametrize("host", ["", "..", "../etc/passwd"])
def test_rejects_unsafe_host_names(tmp_path, host):
    with pytest.raises(ConfigurationError):
        DirectorySink(tmp_path).store(host, b"x")
