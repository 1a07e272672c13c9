"""Test-facing entry point composing images, networks, instances and consoles."""

from __future__ import annotations

import datetime
import re
import shutil
import sys
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Set, Tuple, Union

from .config import HarnessSettings
from .errors import ExitError, VMTimeoutError
from .image import BuiltImage, FileMapping, ImageBuilder, ImageSpec, PathCommandResolver
from .instance import VMInstance
from .logging_utils import HarnessLog, log_event
from .metadata import record_instance_outcome, write_instance_metadata
from .network import Endpoint, VirtualNetwork
from .qemu import build_qemu_command, probe_qemu_version, resolve_qemu_executable

SHARED_INITRAMFS_NAME = "initramfs.cpio"

Cleanup = Callable[[], None]


@dataclass
class InstanceConfig:
    """Declarative description of one instance.

    ``timeout`` of ``None`` falls back to the harness default; ``0`` disables
    the wall-clock deadline. ``network`` of ``None`` leaves the instance
    without any network device.
    """

    name: str
    commands: Sequence[str] = ()
    init_script: Sequence[str] = ()
    files: Sequence[Union[str, FileMapping]] = ()
    network: Optional[VirtualNetwork] = None
    shared_dir: Optional[Path] = None
    share_initramfs: bool = False
    timeout: Optional[float] = None
    memory_mb: Optional[int] = None
    kernel_args: Sequence[str] = ()
    qemu_args: Sequence[str] = ()
    echo_console: bool = True

    def image_spec(self) -> ImageSpec:
        return ImageSpec(
            commands=tuple(self.commands),
            init_script=tuple(self.init_script),
            files=tuple(self.files),
            mount_shared_dir=self.shared_dir is not None,
        )


def _safe_slug(name: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9_-]", "-", name).strip("-")
    return slug or "instance"


def _stderr_line_writer(label: str) -> Callable[[str], None]:
    def write(line: str) -> None:
        sys.stderr.write(f"{label}: {line}\n")
        sys.stderr.flush()

    return write


class Orchestrator:
    """Start instances from :class:`InstanceConfig` values and tear them down.

    Every :meth:`start_instance` call returns the running instance together
    with a cleanup callable. Cleanups are idempotent, never raise, and are
    also run by :meth:`close` for anything the caller did not clean up.
    """

    def __init__(
        self,
        settings: Optional[HarnessSettings] = None,
        *,
        builder: Optional[ImageBuilder] = None,
        log_dir: Optional[Path] = None,
        accelerate: Optional[bool] = None,
    ) -> None:
        self.settings = settings if settings is not None else HarnessSettings.from_env()
        self.builder = builder or ImageBuilder(
            self.settings.kernel,
            PathCommandResolver(self.settings.command_path),
            shell=self.settings.guest_shell,
        )
        self.log_dir = self._resolve_log_dir(log_dir)
        self.harness_log = HarnessLog(self.log_dir / "harness.log")
        self.accelerate = accelerate
        self._lock = threading.Lock()
        self._cleanups: List[Cleanup] = []
        self._slugs: Set[str] = set()
        self._qemu_version: Optional[str] = None
        self._qemu_probed = False

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _resolve_log_dir(self, log_dir: Optional[Path]) -> Path:
        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            return log_dir
        if self.settings.log_dir is not None:
            stamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
            path = self.settings.log_dir / f"run-{stamp}"
            path.mkdir(parents=True, exist_ok=True)
            return path
        return Path(tempfile.mkdtemp(prefix="vmharness-logs-"))

    def _instance_dir(self, name: str) -> Path:
        base = _safe_slug(name)
        with self._lock:
            slug = base
            counter = 1
            while slug in self._slugs:
                counter += 1
                slug = f"{base}-{counter}"
            self._slugs.add(slug)
        path = self.log_dir / slug
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _probe_qemu(self, executable: Optional[str]) -> Optional[str]:
        if not self._qemu_probed and executable:
            self._qemu_version = probe_qemu_version(executable)
            self._qemu_probed = True
        return self._qemu_version

    def _effective_timeout(self, config: InstanceConfig) -> Optional[float]:
        if config.timeout is None:
            return self.settings.default_timeout
        return config.timeout or None

    def start_instance(self, config: InstanceConfig) -> Tuple[VMInstance, Cleanup]:
        """Build, wire and launch one instance.

        Build, attach and launch failures propagate after releasing whatever
        was acquired along the way.
        """

        if config.share_initramfs and config.shared_dir is None:
            raise ValueError("share_initramfs requires a shared_dir")
        spec = config.image_spec()
        self.harness_log.step(
            f"[{config.name}] Building boot image",
            body="\n".join(
                [f"command: {identifier}" for identifier in spec.commands]
                + [f"init: {line}" for line in spec.init_lines()]
                + [f"file: {item.source} -> /{item.guest_path}" for item in spec.files]
            ),
        )
        image = self.builder.build(spec)

        endpoint: Optional[Endpoint] = None
        try:
            if config.network is not None:
                endpoint = config.network.attach(config.name)
            if config.shared_dir is not None:
                config.shared_dir.mkdir(parents=True, exist_ok=True)
                if config.share_initramfs:
                    shutil.copyfile(image.initramfs, config.shared_dir / SHARED_INITRAMFS_NAME)
            executable = resolve_qemu_executable(self.settings)
            argv = build_qemu_command(
                self.settings,
                image,
                executable=executable,
                endpoint=endpoint,
                shared_dir=config.shared_dir,
                memory_mb=config.memory_mb,
                kernel_args=config.kernel_args,
                extra_args=config.qemu_args,
                accelerate=self.accelerate,
            )
            timeout = self._effective_timeout(config)
            instance_dir = self._instance_dir(config.name)
            serial_log = instance_dir / "serial.log"
            metadata_path = instance_dir / "metadata.json"
            write_instance_metadata(
                metadata_path,
                name=config.name,
                image=image,
                qemu_command=argv,
                qemu_version=self._probe_qemu(executable),
                harness_log=self.harness_log.path,
                serial_log=serial_log,
                endpoint=endpoint,
                shared_dir=config.shared_dir,
                timeout=timeout,
            )
            instance = VMInstance(
                config.name,
                argv,
                timeout=timeout,
                endpoint=endpoint,
                kill_grace=self.settings.kill_grace,
                serial_log=serial_log,
                harness_log=self.harness_log,
                line_sink=_stderr_line_writer(config.name) if config.echo_console else None,
                console_max_lines=self.settings.console_max_lines,
            )
            instance.start()
        except BaseException:
            if endpoint is not None and config.network is not None:
                config.network.detach(endpoint)
            image.release()
            raise

        cleanup = self._make_cleanup(instance, image, config.network, endpoint, metadata_path)
        with self._lock:
            self._cleanups.append(cleanup)
        return instance, cleanup

    def _make_cleanup(
        self,
        instance: VMInstance,
        image: BuiltImage,
        network: Optional[VirtualNetwork],
        endpoint: Optional[Endpoint],
        metadata_path: Path,
    ) -> Cleanup:
        lock = threading.Lock()
        done = False
        wait_budget = 3 * self.settings.kill_grace + 5.0

        def cleanup() -> None:
            nonlocal done
            with lock:
                if done:
                    return
                done = True

            errors: List[str] = []
            try:
                instance.kill()
            except Exception as exc:  # pragma: no cover - best effort teardown
                errors.append(f"kill: {exc!r}")
            try:
                instance.wait(timeout=wait_budget)
            except ExitError as exc:
                self.harness_log.step(f"[{instance.name}] {exc}")
            except VMTimeoutError as exc:
                if instance.state.terminal:
                    self.harness_log.step(f"[{instance.name}] {exc.args[0].splitlines()[0]}")
                else:
                    errors.append(f"wait: {exc.args[0].splitlines()[0]}")
            except Exception as exc:  # pragma: no cover - best effort teardown
                errors.append(f"wait: {exc!r}")
            if endpoint is not None and network is not None:
                try:
                    network.detach(endpoint)
                except Exception as exc:  # pragma: no cover - best effort teardown
                    errors.append(f"detach: {exc!r}")
            try:
                image.release()
            except Exception as exc:  # pragma: no cover - best effort teardown
                errors.append(f"release: {exc!r}")
            try:
                record_instance_outcome(
                    metadata_path,
                    state=instance.state.value,
                    exit_status=instance.exit_status,
                    signal_status=instance.signal_status,
                    elapsed_seconds=instance.elapsed,
                    cleanup_errors=errors,
                )
            except OSError as exc:  # pragma: no cover - best effort teardown
                errors.append(f"metadata: {exc!r}")

            if errors:
                self.harness_log.step(f"[{instance.name}] Cleanup finished with errors", body="\n".join(errors))
            else:
                self.harness_log.step(f"[{instance.name}] Cleanup finished")
            log_event(
                "vmharness.instance.cleanup",
                instance=instance.name,
                state=instance.state.value,
                errors=errors,
            )

        return cleanup

    def close(self) -> None:
        """Run every outstanding cleanup, most recently started first."""

        with self._lock:
            cleanups = list(reversed(self._cleanups))
            self._cleanups.clear()
        for cleanup in cleanups:
            cleanup()


def start_instance(
    config: InstanceConfig,
    *,
    settings: Optional[HarnessSettings] = None,
) -> Tuple[VMInstance, Cleanup]:
    """One-shot helper for callers without a long-lived :class:`Orchestrator`.

    The returned cleanup also closes the private orchestrator.
    """

    orchestrator = Orchestrator(settings)
    try:
        instance, cleanup = orchestrator.start_instance(config)
    except BaseException:
        orchestrator.close()
        raise

    def close() -> None:
        cleanup()
        orchestrator.close()

    return instance, close


__all__ = [
    "Cleanup",
    "InstanceConfig",
    "Orchestrator",
    "SHARED_INITRAMFS_NAME",
    "start_instance",
]
