"""Assemble emulator command lines for harness instances."""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from .config import ARCH_AMD64, ARCH_ARM64, HarnessSettings, host_arch
from .image import SHARED_DIR_TAG, BuiltImage
from .network import DEFAULT_NIC_MODEL, Endpoint


@dataclass(frozen=True)
class ArchProfile:
    """Per-architecture emulator defaults."""

    qemu_binary: str
    console: str
    machine: Optional[str] = None
    cpu: Optional[str] = None
    nic_model: str = DEFAULT_NIC_MODEL


ARCH_PROFILES = {
    ARCH_AMD64: ArchProfile(
        qemu_binary="qemu-system-x86_64",
        console="ttyS0",
    ),
    ARCH_ARM64: ArchProfile(
        qemu_binary="qemu-system-aarch64",
        console="ttyAMA0",
        machine="virt",
        cpu="max",
        nic_model="virtio-net-pci",
    ),
}


def arch_profile(arch: str) -> ArchProfile:
    try:
        return ARCH_PROFILES[arch]
    except KeyError:
        raise ValueError(f"no emulator profile for arch {arch!r}") from None


def resolve_qemu_executable(settings: HarnessSettings) -> Optional[str]:
    """Return the configured emulator or the arch default found in ``PATH``."""

    if settings.qemu_executable:
        return settings.qemu_executable
    return shutil.which(arch_profile(settings.arch).qemu_binary)


def kvm_available(arch: str) -> bool:
    """Return ``True`` when hardware acceleration can serve ``arch`` guests."""

    if arch != host_arch():
        return False
    return os.access("/dev/kvm", os.R_OK | os.W_OK)


def probe_qemu_version(executable: str) -> Optional[str]:
    """Return the first line of ``qemu --version`` output when available."""

    try:
        result = subprocess.run(
            [executable, "--version"],
            check=True,
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
        return None
    output = (result.stdout or "").strip()
    if not output:
        output = (result.stderr or "").strip()
    if not output:
        return None
    return output.splitlines()[0]


def kernel_command_line(arch: str, extra: Sequence[str] = ()) -> str:
    profile = arch_profile(arch)
    args = [f"console={profile.console}", f"earlyprintk={profile.console}"]
    args.extend(extra)
    return " ".join(args)


def build_qemu_command(
    settings: HarnessSettings,
    image: BuiltImage,
    *,
    executable: Optional[str] = None,
    endpoint: Optional[Endpoint] = None,
    shared_dir: Optional[Path] = None,
    memory_mb: Optional[int] = None,
    kernel_args: Sequence[str] = (),
    extra_args: Sequence[str] = (),
    accelerate: Optional[bool] = None,
) -> List[str]:
    """Return the argv that boots ``image`` with the requested wiring.

    Instances without an ``endpoint`` get no network device at all. Extra
    arguments are appended last so they can override earlier defaults.
    """

    profile = arch_profile(settings.arch)
    qemu = executable or resolve_qemu_executable(settings) or profile.qemu_binary
    if accelerate is None:
        accelerate = kvm_available(settings.arch)

    cmd = [qemu]
    if profile.machine:
        cmd.extend(["-machine", profile.machine])
    if accelerate:
        cmd.extend(["-accel", "kvm"])
    if profile.cpu:
        cmd.extend(["-cpu", "host" if accelerate else profile.cpu])
    cmd.extend(
        [
            "-m",
            str(memory_mb or settings.memory_mb),
            "-display",
            "none",
            "-serial",
            "stdio",
            "-monitor",
            "none",
            "-no-reboot",
            "-kernel",
            str(image.kernel),
            "-initrd",
            str(image.initramfs),
            "-append",
            kernel_command_line(settings.arch, kernel_args),
        ]
    )
    if endpoint is not None:
        cmd.extend(endpoint.qemu_args(profile.nic_model))
    else:
        cmd.extend(["-nic", "none"])
    if shared_dir is not None:
        cmd.extend(
            [
                "-fsdev",
                f"local,id=fsdev0,path={shared_dir},security_model=none",
                "-device",
                f"virtio-9p-pci,fsdev=fsdev0,mount_tag={SHARED_DIR_TAG}",
            ]
        )
    cmd.extend(extra_args)
    return cmd


__all__ = [
    "ARCH_PROFILES",
    "ArchProfile",
    "SHARED_DIR_TAG",
    "arch_profile",
    "build_qemu_command",
    "kernel_command_line",
    "kvm_available",
    "probe_qemu_version",
    "resolve_qemu_executable",
]
