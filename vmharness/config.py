"""Environment-driven settings for the VM harness."""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

ARCH_AMD64 = "amd64"
ARCH_ARM64 = "arm64"
SUPPORTED_ARCHES = (ARCH_AMD64, ARCH_ARM64)

DEFAULT_MEMORY_MB = 1024
DEFAULT_KILL_GRACE = 5.0
DEFAULT_CONSOLE_LINES = 10000
DEFAULT_GUEST_SHELL = "github.com/u-root/u-root/cmds/core/elvish"

_HOST_ARCH_ALIASES = {
    "x86_64": ARCH_AMD64,
    "amd64": ARCH_AMD64,
    "aarch64": ARCH_ARM64,
    "arm64": ARCH_ARM64,
}


def host_arch() -> str:
    """Return the harness arch name for the machine running the tests."""

    machine = platform.machine().lower()
    return _HOST_ARCH_ALIASES.get(machine, machine)


def _read_float_env(
    environ: Mapping[str, str],
    name: str,
    default: float,
    *,
    allow_zero: bool = False,
) -> float:
    """Return a positive number configured via environment variable.

    Values are validated so that misconfiguration surfaces as an explicit
    error rather than silently disabling a deadline.
    """

    value = environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a numeric value") from exc
    if parsed < 0 or (parsed == 0 and not allow_zero):
        qualifier = "zero or greater" if allow_zero else "greater than zero"
        raise ValueError(f"{name} must be {qualifier}")
    return parsed


def _read_int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer value") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return parsed


def _read_path_env(environ: Mapping[str, str], name: str) -> Optional[Path]:
    value = environ.get(name, "").strip()
    if not value:
        return None
    return Path(value).expanduser()


def _read_path_list_env(environ: Mapping[str, str], name: str) -> Tuple[Path, ...]:
    value = environ.get(name, "")
    return tuple(
        Path(entry).expanduser() for entry in value.split(os.pathsep) if entry.strip()
    )


@dataclass(frozen=True)
class HarnessSettings:
    """Resolved harness configuration.

    ``default_timeout`` of ``None`` means instances run without a wall-clock
    deadline unless their configuration supplies one.
    """

    arch: str = ARCH_AMD64
    qemu_executable: Optional[str] = None
    kernel: Optional[Path] = None
    command_path: Tuple[Path, ...] = ()
    memory_mb: int = DEFAULT_MEMORY_MB
    default_timeout: Optional[float] = None
    kill_grace: float = DEFAULT_KILL_GRACE
    net_base_port: Optional[int] = None
    log_dir: Optional[Path] = None
    console_max_lines: int = DEFAULT_CONSOLE_LINES
    guest_shell: str = DEFAULT_GUEST_SHELL

    def __post_init__(self) -> None:
        if self.arch not in SUPPORTED_ARCHES:
            raise ValueError(
                f"unsupported arch {self.arch!r}; expected one of {', '.join(SUPPORTED_ARCHES)}"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HarnessSettings":
        env = os.environ if environ is None else environ
        arch = env.get("VMTEST_ARCH", "").strip().lower() or host_arch()
        arch = _HOST_ARCH_ALIASES.get(arch, arch)
        timeout = _read_float_env(env, "VMTEST_TIMEOUT", 0.0, allow_zero=True)
        base_port_raw = env.get("VMTEST_NET_BASE_PORT", "").strip()
        net_base_port = (
            _read_int_env(env, "VMTEST_NET_BASE_PORT", 0) if base_port_raw else None
        )
        return cls(
            arch=arch,
            qemu_executable=env.get("VMTEST_QEMU", "").strip() or None,
            kernel=_read_path_env(env, "VMTEST_KERNEL"),
            command_path=_read_path_list_env(env, "VMTEST_COMMAND_PATH"),
            memory_mb=_read_int_env(env, "VMTEST_MEMORY", DEFAULT_MEMORY_MB),
            default_timeout=timeout or None,
            kill_grace=_read_float_env(env, "VMTEST_KILL_GRACE", DEFAULT_KILL_GRACE),
            net_base_port=net_base_port,
            log_dir=_read_path_env(env, "VMTEST_LOG_DIR"),
            console_max_lines=_read_int_env(
                env, "VMTEST_CONSOLE_LINES", DEFAULT_CONSOLE_LINES
            ),
            guest_shell=env.get("VMTEST_SHELL", "").strip() or DEFAULT_GUEST_SHELL,
        )


__all__ = [
    "ARCH_AMD64",
    "ARCH_ARM64",
    "DEFAULT_CONSOLE_LINES",
    "DEFAULT_GUEST_SHELL",
    "DEFAULT_KILL_GRACE",
    "DEFAULT_MEMORY_MB",
    "HarnessSettings",
    "SUPPORTED_ARCHES",
    "host_arch",
]
