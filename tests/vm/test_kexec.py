"""Kexec into the same image with a modified kernel command line.

The built initramfs is copied into the shared directory, so the guest finds
it at ``/testdata/initramfs.cpio`` and can reboot into it with ``kexec``.
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from vmharness.fixtures import require_commands, skip_if_not_arch
from vmharness.image import MOUNT_COMMAND
from vmharness.instance import InstanceState
from vmharness.orchestrator import InstanceConfig

pytestmark = pytest.mark.vm

CORE = "github.com/u-root/u-root/cmds/core"
KEXEC_CMDS = [f"{CORE}/init", f"{CORE}/cat", f"{CORE}/kexec", f"{CORE}/shutdown"]
READ_SUFFIX = [
    "var CMDLINE = (cat /proc/cmdline)",
    "var SUFFIX = $CMDLINE[-7..]",
    "echo SAW $SUFFIX",
]


def _kexec_config(vm_kernel, vm_shared_dir, script, commands=KEXEC_CMDS, extra_files=()) -> InstanceConfig:
    return InstanceConfig(
        name="kexec",
        commands=commands,
        init_script=script,
        files=[f"{vm_kernel}:kernel", *extra_files],
        shared_dir=vm_shared_dir,
        share_initramfs=True,
        timeout=60,
        qemu_args=["-m", "8192"],
    )


def _require_guest(vm_settings, *arches: str, commands=KEXEC_CMDS) -> None:
    skip_if_not_arch(vm_settings, *arches)
    require_commands(vm_settings, vm_settings.guest_shell, MOUNT_COMMAND, *commands)


def _require_gzip() -> str:
    gzip = shutil.which("gzip")
    if gzip is None:
        pytest.skip("gzip is required to decompress the kernel inside the guest")
    return gzip


def test_mount_kexec(vm_settings, vm_kernel, vm_orchestrator, vm_shared_dir) -> None:
    _require_guest(vm_settings, "amd64", "arm64")

    instance, cleanup = vm_orchestrator.start_instance(
        _kexec_config(
            vm_kernel,
            vm_shared_dir,
            READ_SUFFIX + ["kexec -i /testdata/initramfs.cpio -c $CMDLINE' KEXEC=Y' /kernel"],
        )
    )
    try:
        instance.expect("SAW KEXEC=Y")
        instance.kill()
        instance.wait()
        assert instance.state is InstanceState.KILLED
    finally:
        cleanup()


def test_mount_kexec_load_syscall(vm_settings, vm_kernel, vm_orchestrator, vm_shared_dir) -> None:
    _require_guest(vm_settings, "amd64", "arm64")
    gzip = _require_gzip()

    instance, cleanup = vm_orchestrator.start_instance(
        _kexec_config(
            vm_kernel,
            vm_shared_dir,
            READ_SUFFIX
            + ["kexec -d -i /testdata/initramfs.cpio --loadsyscall -c $CMDLINE' KEXEC=Y' /kernel"],
            extra_files=[gzip],
        )
    )
    try:
        instance.expect("SAW KEXEC=Y")
        instance.kill()
        instance.wait()
    finally:
        cleanup()


def test_mount_kexec_load_only(vm_settings, vm_kernel, vm_orchestrator, vm_shared_dir) -> None:
    _require_guest(vm_settings, "amd64", "arm64")
    gzip = _require_gzip()

    instance, cleanup = vm_orchestrator.start_instance(
        _kexec_config(
            vm_kernel,
            vm_shared_dir,
            [
                "var CMDLINE = (cat /proc/cmdline)",
                "echo kexecloadresult ?(kexec -d -l -i /testdata/initramfs.cpio --loadsyscall -c $CMDLINE /kernel)",
                "shutdown -h",
            ],
            extra_files=[gzip],
        )
    )
    try:
        instance.expect("kexecloadresult $ok")
        assert instance.wait() == 0
        assert instance.state is InstanceState.EXITED
    finally:
        cleanup()


def test_mount_kexec_load_custom_dtb(vm_settings, vm_kernel, vm_orchestrator, vm_shared_dir) -> None:
    commands = [f"{CORE}/init", f"{CORE}/cat", f"{CORE}/cp", f"{CORE}/kexec"]
    _require_guest(vm_settings, "arm64", commands=commands)

    instance, cleanup = vm_orchestrator.start_instance(
        _kexec_config(
            vm_kernel,
            vm_shared_dir,
            READ_SUFFIX
            + [
                "cp /sys/firmware/fdt /tmp/userfdt",
                "kexec -d --dtb /tmp/userfdt -i /testdata/initramfs.cpio --loadsyscall -c $CMDLINE' KEXEC=Y' /kernel",
            ],
            commands=commands,
        )
    )
    try:
        instance.expect("SAW KEXEC=Y")
        instance.kill()
        instance.wait()
    finally:
        cleanup()


def test_kexec_linux_image_cfg_file(
    vm_settings, vm_kernel, vm_orchestrator, vm_shared_dir, tmp_path: Path
) -> None:
    commands = [f"{CORE}/init", f"{CORE}/cat", f"{CORE}/echo", f"{CORE}/kexec", f"{CORE}/shutdown"]
    _require_guest(vm_settings, "amd64", "arm64", commands=commands)
    cfg_file = tmp_path / "linux_image_cfg.json"
    cfg_file.write_text(
        json.dumps(
            {
                "InitrdPath": "/testdata/initramfs.cpio",
                "KernelPath": "/kernel",
                "Cmdline": "/proc/cmdline",
                "Name": "testloadconfig",
            }
        ),
        encoding="utf-8",
    )

    instance, cleanup = vm_orchestrator.start_instance(
        _kexec_config(
            vm_kernel,
            vm_shared_dir,
            [
                "echo kexecloadresult ?(kexec -d -l -I /linux_image_cfg.json)",
                "shutdown -h",
            ],
            commands=commands,
            extra_files=[f"{cfg_file}:linux_image_cfg.json"],
        )
    )
    try:
        instance.expect("kexecloadresult $ok")
        assert instance.wait() == 0
        assert instance.state is InstanceState.EXITED
    finally:
        cleanup()
