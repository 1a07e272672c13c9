"""Harness for booting throwaway VMs and asserting on their consoles."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version as pkg_version

from .config import HarnessSettings
from .errors import (
    BuildError,
    ConsoleEOFError,
    ExitError,
    LaunchError,
    NetworkError,
    VMHarnessError,
    VMTimeoutError,
)
from .image import FileMapping, ImageBuilder, ImageSpec
from .instance import InstanceState, VMInstance
from .network import NetworkRegistry, VirtualNetwork
from .orchestrator import InstanceConfig, Orchestrator, start_instance

__all__ = [
    "BuildError",
    "ConsoleEOFError",
    "ExitError",
    "FileMapping",
    "HarnessSettings",
    "ImageBuilder",
    "ImageSpec",
    "InstanceConfig",
    "InstanceState",
    "LaunchError",
    "NetworkError",
    "NetworkRegistry",
    "Orchestrator",
    "VMHarnessError",
    "VMInstance",
    "VMTimeoutError",
    "VirtualNetwork",
    "start_instance",
]


def _discover_version() -> str:
    try:
        return pkg_version("vmharness")
    except PackageNotFoundError:
        return "unknown"


__version__ = _discover_version()
