"""Assemble bootable initramfs payloads from a declarative command/script/file list."""

from __future__ import annotations

import os
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .config import DEFAULT_GUEST_SHELL
from .cpio import CpioWriter, normalise_archive_path
from .errors import BuildError
from .logging_utils import log_event

COMMAND_DIR = "bbin"
INIT_SCRIPT_PATH = "bin/uinit"
SHARED_DIR_TAG = "tmpdir"
SHARED_DIR_MOUNT = "/testdata"
MOUNT_COMMAND = "github.com/u-root/u-root/cmds/core/mount"
SHARED_DIR_MOUNT_LINE = f"mount -t 9p -o trans=virtio {SHARED_DIR_TAG} {SHARED_DIR_MOUNT}"
BASE_DIRECTORIES = ("bin", COMMAND_DIR, "dev", "etc", "proc", "sys", "tmp", SHARED_DIR_MOUNT)
DEVICE_NODES = (
    ("dev/console", 5, 1, 0o600),
    ("dev/null", 1, 3, 0o666),
)

CommandResolver = Callable[[str], Optional[Path]]


def command_name(identifier: str) -> str:
    """Return the guest-side name of a command identifier.

    Identifiers may be package-style paths such as
    ``github.com/u-root/u-root/cmds/core/ip``; the last segment names the
    executable.
    """

    name = identifier.strip().rstrip("/").rsplit("/", 1)[-1]
    if not name:
        raise BuildError(f"command identifier {identifier!r} does not name an executable")
    return name


@dataclass(frozen=True)
class FileMapping:
    """Host ``source`` embedded at ``guest_path`` inside the image."""

    source: Path
    guest_path: str

    @classmethod
    def parse(cls, value: Union[str, "FileMapping"]) -> "FileMapping":
        """Parse ``"src:dst"``; a bare ``"path"`` keeps the same path in the guest."""

        if isinstance(value, FileMapping):
            return value
        source, sep, guest = value.partition(":")
        if not sep:
            guest = source
        if not source or not guest:
            raise BuildError(f"invalid file mapping {value!r}; expected SOURCE[:GUEST]")
        try:
            normalised = normalise_archive_path(guest)
        except ValueError as exc:
            raise BuildError(f"invalid guest path in file mapping {value!r}: {exc}") from exc
        return cls(source=Path(source), guest_path=normalised)


@dataclass(frozen=True)
class ImageSpec:
    """Immutable description of a boot image.

    ``commands`` collapse duplicates while keeping first-seen order;
    ``init_script`` lines are handed to the guest shell verbatim and in
    order. With ``mount_shared_dir`` set, the script first mounts the 9p
    share at :data:`SHARED_DIR_MOUNT`.
    """

    commands: Tuple[str, ...] = ()
    init_script: Tuple[str, ...] = ()
    files: Tuple[FileMapping, ...] = ()
    mount_shared_dir: bool = False

    def __post_init__(self) -> None:
        unique: List[str] = []
        for identifier in self.commands:
            if identifier not in unique:
                unique.append(identifier)
        object.__setattr__(self, "commands", tuple(unique))
        object.__setattr__(self, "init_script", tuple(self.init_script))
        object.__setattr__(self, "files", tuple(FileMapping.parse(item) for item in self.files))

    def init_lines(self) -> Tuple[str, ...]:
        prelude = (SHARED_DIR_MOUNT_LINE,) if self.mount_shared_dir else ()
        return prelude + self.init_script

    def render_init_script(self, interpreter: str) -> str:
        lines = self.init_lines()
        if not lines:
            return ""
        return f"#!{interpreter}\n" + "\n".join(lines) + "\n"


class PathCommandResolver:
    """Resolve command identifiers to pre-built executables on the host.

    Directories in ``search_path`` are consulted first, then ``PATH`` when
    ``use_system_path`` is set.
    """

    def __init__(self, search_path: Sequence[Path] = (), *, use_system_path: bool = True) -> None:
        self.search_path = tuple(Path(entry) for entry in search_path)
        self.use_system_path = use_system_path

    def __call__(self, identifier: str) -> Optional[Path]:
        name = command_name(identifier)
        for directory in self.search_path:
            candidate = directory / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate
        if self.use_system_path:
            found = shutil.which(name)
            if found:
                return Path(found)
        return None


@dataclass
class BuiltImage:
    """Build output plus the obligation to release its temporary storage."""

    kernel: Path
    initramfs: Path
    workdir: Path
    init_script_path: str = INIT_SCRIPT_PATH
    commands: Dict[str, str] = field(default_factory=dict)
    _released: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Remove the work directory; return ``False`` when already released."""

        with self._lock:
            if self._released:
                log_event("vmharness.image.release_skipped", workdir=self.workdir)
                return False
            self._released = True
        shutil.rmtree(self.workdir, ignore_errors=True)
        log_event("vmharness.image.release", workdir=self.workdir)
        return True


def _expand_mapping(mapping: FileMapping) -> List[Tuple[str, Optional[Path]]]:
    """Return ``(guest_path, source)`` pairs; directories have ``None`` sources."""

    source = mapping.source
    if source.is_dir():
        entries: List[Tuple[str, Optional[Path]]] = [(mapping.guest_path, None)]
        for root, dirnames, filenames in os.walk(source):
            dirnames.sort()
            relative_root = Path(root).relative_to(source)
            for dirname in dirnames:
                entries.append(
                    (normalise_archive_path(f"{mapping.guest_path}/{relative_root / dirname}"), None)
                )
            for filename in sorted(filenames):
                entries.append(
                    (
                        normalise_archive_path(f"{mapping.guest_path}/{relative_root / filename}"),
                        Path(root) / filename,
                    )
                )
        return entries
    if source.is_file():
        return [(mapping.guest_path, source)]
    raise BuildError(f"file mapping source does not exist: {source}")


class ImageBuilder:
    """Turn an :class:`ImageSpec` into a kernel plus initramfs on local storage."""

    def __init__(
        self,
        kernel: Optional[Path],
        resolver: CommandResolver,
        *,
        workdir_root: Optional[Path] = None,
        shell: str = DEFAULT_GUEST_SHELL,
    ) -> None:
        self.kernel = Path(kernel) if kernel is not None else None
        self.resolver = resolver
        self.workdir_root = workdir_root
        self.shell = shell

    @property
    def interpreter(self) -> str:
        return f"/{COMMAND_DIR}/{command_name(self.shell)}"

    def _required_commands(self, spec: ImageSpec) -> List[str]:
        """Return the spec's commands plus what the init wrapper needs to run."""

        required = list(spec.commands)
        wrapper: List[str] = []
        if spec.init_lines():
            wrapper.append(self.shell)
        if spec.mount_shared_dir:
            wrapper.append(MOUNT_COMMAND)
        present = {command_name(identifier) for identifier in required}
        for identifier in wrapper:
            if command_name(identifier) not in present:
                required.append(identifier)
                present.add(command_name(identifier))
        return required

    def _resolve_commands(self, commands: Iterable[str]) -> Dict[str, Path]:
        resolved: Dict[str, Path] = {}
        unresolved: List[str] = []
        for identifier in commands:
            try:
                path = self.resolver(identifier)
            except LookupError:
                path = None
            if path is None or not Path(path).is_file():
                unresolved.append(identifier)
                continue
            resolved[identifier] = Path(path)
        if unresolved:
            raise BuildError("unable to resolve commands: " + ", ".join(unresolved))
        return resolved

    def _plan(self, spec: ImageSpec, commands: Dict[str, Path]) -> Tuple[Dict[str, str], List[Tuple[str, Optional[Path]]]]:
        claimed: Dict[str, str] = {}

        def claim(guest_path: str, origin: str) -> None:
            previous = claimed.get(guest_path)
            if previous is not None:
                raise BuildError(
                    f"guest path /{guest_path} is claimed by both {previous} and {origin}"
                )
            claimed[guest_path] = origin

        command_paths: Dict[str, str] = {}
        for identifier in commands:
            guest_path = f"{COMMAND_DIR}/{command_name(identifier)}"
            claim(guest_path, f"command {identifier}")
            command_paths[identifier] = guest_path
        if spec.init_lines():
            claim(INIT_SCRIPT_PATH, "the init script")

        extra: List[Tuple[str, Optional[Path]]] = []
        directories = set()
        for mapping in spec.files:
            for guest_path, source in _expand_mapping(mapping):
                if source is None:
                    directories.add(guest_path)
                else:
                    claim(guest_path, f"file {source}")
                extra.append((guest_path, source))
        for guest_path in claimed:
            if guest_path in directories:
                raise BuildError(f"guest path /{guest_path} is both a directory and a file")
        return command_paths, extra

    def build(self, spec: ImageSpec) -> BuiltImage:
        if self.kernel is None:
            raise BuildError("no kernel configured; set VMTEST_KERNEL")
        if not self.kernel.is_file():
            raise BuildError(f"kernel image does not exist: {self.kernel}")

        commands = self._resolve_commands(self._required_commands(spec))
        command_paths, extra = self._plan(spec, commands)

        if self.workdir_root is not None:
            self.workdir_root.mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix="vmharness-image-", dir=self.workdir_root))
        initramfs = workdir / "initramfs.cpio"
        try:
            with initramfs.open("wb") as handle, CpioWriter(handle) as archive:
                for directory in BASE_DIRECTORIES:
                    archive.add_directory(directory)
                for name, major, minor, mode in DEVICE_NODES:
                    archive.add_device(name, major, minor, mode=mode)
                for identifier, guest_path in command_paths.items():
                    archive.add_path(guest_path, commands[identifier])
                if "init" in {command_name(identifier) for identifier in command_paths}:
                    archive.add_symlink("init", f"{COMMAND_DIR}/init")
                if spec.init_lines():
                    archive.add_file(
                        INIT_SCRIPT_PATH,
                        spec.render_init_script(self.interpreter),
                        mode=0o755,
                    )
                for guest_path, source in extra:
                    if source is None:
                        archive.add_directory(guest_path)
                    else:
                        archive.add_path(guest_path, source)
        except (OSError, ValueError) as exc:
            shutil.rmtree(workdir, ignore_errors=True)
            raise BuildError(f"failed to write initramfs: {exc}") from exc

        log_event(
            "vmharness.image.build",
            kernel=self.kernel,
            initramfs=initramfs,
            commands=list(command_paths.values()),
            files=[guest for guest, source in extra if source is not None],
            init_lines=len(spec.init_script),
            shared_mount=spec.mount_shared_dir,
        )
        return BuiltImage(
            kernel=self.kernel,
            initramfs=initramfs,
            workdir=workdir,
            commands=command_paths,
        )


__all__ = [
    "BuiltImage",
    "COMMAND_DIR",
    "CommandResolver",
    "FileMapping",
    "INIT_SCRIPT_PATH",
    "ImageBuilder",
    "ImageSpec",
    "MOUNT_COMMAND",
    "PathCommandResolver",
    "SHARED_DIR_MOUNT",
    "SHARED_DIR_MOUNT_LINE",
    "SHARED_DIR_TAG",
    "command_name",
]
