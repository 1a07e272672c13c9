"""Shared pytest fixtures and host probes for VM-based tests.

Load with ``pytest_plugins = ["vmharness.fixtures"]``. Fixtures that need a
real emulator or kernel skip the invoking test when those are unavailable, so
the unit suite keeps running on hosts without QEMU.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Dict, Iterator, Optional

import pytest

from vmharness.config import HarnessSettings
from vmharness.image import PathCommandResolver, command_name
from vmharness.network import NetworkRegistry
from vmharness.orchestrator import Orchestrator
from vmharness.qemu import probe_qemu_version, resolve_qemu_executable


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "vm: boots real emulator instances (needs QEMU, VMTEST_KERNEL and guest commands)",
    )


def _require_executable(executable: str) -> str:
    """Ensure an executable exists in ``PATH`` or skip the invoking test."""

    path: Optional[str] = shutil.which(executable)
    if path is None:
        pytest.skip(f"required executable '{executable}' is not available in PATH")
    return path


def skip_if_not_arch(settings: HarnessSettings, *arches: str) -> None:
    """Skip the invoking test unless the guest arch is one of ``arches``."""

    if settings.arch not in arches:
        pytest.skip(f"test requires arch {' or '.join(arches)}; VMTEST_ARCH is {settings.arch}")


def require_commands(settings: HarnessSettings, *identifiers: str) -> Dict[str, Path]:
    """Resolve guest commands or skip the invoking test naming the missing ones."""

    resolver = PathCommandResolver(settings.command_path)
    resolved: Dict[str, Path] = {}
    missing = []
    for identifier in identifiers:
        path = resolver(identifier)
        if path is None:
            missing.append(command_name(identifier))
        else:
            resolved[identifier] = path
    if missing:
        pytest.skip(
            "guest commands not found in VMTEST_COMMAND_PATH or PATH: " + ", ".join(missing)
        )
    return resolved


@pytest.fixture(scope="session")
def vm_settings() -> HarnessSettings:
    try:
        return HarnessSettings.from_env()
    except ValueError as exc:
        pytest.fail(f"invalid VMTEST_* configuration: {exc}", pytrace=False)


@pytest.fixture(scope="session")
def qemu_executable(vm_settings: HarnessSettings) -> str:
    configured = resolve_qemu_executable(vm_settings)
    if configured is None:
        pytest.skip("no QEMU emulator found; set VMTEST_QEMU or install qemu-system")
    executable = _require_executable(configured) if "/" not in configured else configured
    if probe_qemu_version(executable) is None:
        pytest.skip(f"QEMU executable {executable!r} does not report a version")
    return executable


@pytest.fixture(scope="session")
def vm_kernel(vm_settings: HarnessSettings) -> Path:
    kernel = vm_settings.kernel
    if kernel is None:
        pytest.skip("VMTEST_KERNEL is not set")
    if not kernel.is_file():
        pytest.skip(f"VMTEST_KERNEL points at a missing file: {kernel}")
    return kernel


@pytest.fixture
def network_registry(vm_settings: HarnessSettings) -> Iterator[NetworkRegistry]:
    with NetworkRegistry(vm_settings.net_base_port) as registry:
        yield registry


@pytest.fixture
def vm_orchestrator(
    vm_settings: HarnessSettings,
    qemu_executable: str,
    vm_kernel: Path,
    tmp_path: Path,
) -> Iterator[Orchestrator]:
    log_dir = None if vm_settings.log_dir is not None else tmp_path / "vm-logs"
    orchestrator = Orchestrator(vm_settings, log_dir=log_dir)
    try:
        yield orchestrator
    finally:
        orchestrator.close()


@pytest.fixture
def vm_shared_dir(tmp_path: Path) -> Path:
    shared = tmp_path / "shared"
    shared.mkdir()
    return shared


__all__ = [
    "network_registry",
    "qemu_executable",
    "require_commands",
    "skip_if_not_arch",
    "vm_kernel",
    "vm_orchestrator",
    "vm_settings",
    "vm_shared_dir",
]
