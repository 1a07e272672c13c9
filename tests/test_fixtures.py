"""Unit coverage for the pytest helpers shipped with the harness."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmharness.config import HarnessSettings
from vmharness.fixtures import _require_executable, require_commands, skip_if_not_arch


def test_skip_if_not_arch() -> None:
    settings = HarnessSettings(arch="arm64")

    skip_if_not_arch(settings, "amd64", "arm64")
    with pytest.raises(pytest.skip.Exception, match="requires arch amd64"):
        skip_if_not_arch(settings, "amd64")


def test_require_commands_resolves_or_skips(guest_bin, monkeypatch) -> None:
    commands = guest_bin(["ip", "dhclient"])
    monkeypatch.setenv("PATH", "/nonexistent")
    settings = HarnessSettings(arch="amd64", command_path=(commands,))

    resolved = require_commands(settings, "cmds/core/ip", "cmds/core/dhclient")
    assert resolved == {
        "cmds/core/ip": commands / "ip",
        "cmds/core/dhclient": commands / "dhclient",
    }

    with pytest.raises(pytest.skip.Exception, match="pxeserver"):
        require_commands(settings, "cmds/core/ip", "testcmd/pxeserver")


def test_require_executable_skips_when_missing(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PATH", str(tmp_path))

    with pytest.raises(pytest.skip.Exception, match="not available"):
        _require_executable("qemu-system-x86_64")


def test_network_registry_fixture_hands_out_networks(network_registry) -> None:
    first = network_registry.new_network()
    second = network_registry.new_network()

    assert first.port != second.port
    assert not first.closed


def test_vm_shared_dir_exists(vm_shared_dir: Path) -> None:
    assert vm_shared_dir.is_dir()
    assert list(vm_shared_dir.iterdir()) == []
