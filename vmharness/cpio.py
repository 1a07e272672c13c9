"""Minimal ``newc`` cpio archive writer for initramfs images."""

from __future__ import annotations

import stat
from pathlib import Path
from typing import BinaryIO, Set, Union

NEWC_MAGIC = b"070701"
TRAILER_NAME = "TRAILER!!!"


def _pad(length: int) -> bytes:
    return b"\0" * ((4 - length % 4) % 4)


def normalise_archive_path(name: str) -> str:
    """Return ``name`` relative to the archive root without ``.`` segments."""

    parts = [part for part in name.replace("\\", "/").split("/") if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise ValueError(f"archive path escapes the root: {name!r}")
    if not parts:
        raise ValueError("archive path must not be empty")
    return "/".join(parts)


class CpioWriter:
    """Stream entries into a ``newc`` archive.

    Every entry is written with zero timestamps and root ownership so the same
    sequence of calls always produces the same bytes. Parent directories are
    created implicitly the first time a path needs them.
    """

    def __init__(self, handle: BinaryIO) -> None:
        self._handle = handle
        self._inode = 0
        self._names: Set[str] = set()
        self._closed = False

    def __enter__(self) -> "CpioWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()

    def __contains__(self, name: str) -> bool:
        return normalise_archive_path(name) in self._names

    def _write_entry(
        self,
        name: str,
        mode: int,
        data: bytes = b"",
        *,
        nlink: int = 1,
        rdev_major: int = 0,
        rdev_minor: int = 0,
    ) -> None:
        if self._closed:
            raise ValueError("archive already closed")
        encoded_name = name.encode("utf-8") + b"\0"
        if name != TRAILER_NAME:
            self._inode += 1
            inode = self._inode
        else:
            inode = 0
        fields = [
            inode,
            mode,
            0,  # uid
            0,  # gid
            nlink,
            0,  # mtime
            len(data),
            0,  # devmajor
            0,  # devminor
            rdev_major,
            rdev_minor,
            len(encoded_name),
            0,  # check
        ]
        header = NEWC_MAGIC + b"".join(b"%08X" % value for value in fields)
        self._handle.write(header)
        self._handle.write(encoded_name)
        self._handle.write(_pad(len(header) + len(encoded_name)))
        if data:
            self._handle.write(data)
            self._handle.write(_pad(len(data)))

    def _ensure_parents(self, name: str) -> None:
        parts = name.split("/")[:-1]
        for depth in range(1, len(parts) + 1):
            parent = "/".join(parts[:depth])
            if parent not in self._names:
                self.add_directory(parent)

    def _claim(self, name: str) -> str:
        normalised = normalise_archive_path(name)
        if normalised in self._names:
            raise FileExistsError(f"duplicate archive entry: {normalised}")
        self._ensure_parents(normalised)
        self._names.add(normalised)
        return normalised

    def add_directory(self, name: str, mode: int = 0o755) -> None:
        normalised = normalise_archive_path(name)
        if normalised in self._names:
            return
        self._ensure_parents(normalised)
        self._names.add(normalised)
        self._write_entry(normalised, stat.S_IFDIR | mode, nlink=2)

    def add_file(self, name: str, data: Union[bytes, str], mode: int = 0o644) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        normalised = self._claim(name)
        self._write_entry(normalised, stat.S_IFREG | mode, data)

    def add_path(self, name: str, source: Path) -> None:
        """Copy a host file, preserving its permission bits."""

        mode = stat.S_IMODE(source.stat().st_mode)
        self.add_file(name, source.read_bytes(), mode=mode)

    def add_symlink(self, name: str, target: str) -> None:
        normalised = self._claim(name)
        self._write_entry(normalised, stat.S_IFLNK | 0o777, target.encode("utf-8"))

    def add_device(self, name: str, major: int, minor: int, *, mode: int = 0o600, block: bool = False) -> None:
        kind = stat.S_IFBLK if block else stat.S_IFCHR
        normalised = self._claim(name)
        self._write_entry(normalised, kind | mode, rdev_major=major, rdev_minor=minor)

    def close(self) -> None:
        if self._closed:
            return
        self._write_entry(TRAILER_NAME, 0)
        self._closed = True


__all__ = ["CpioWriter", "NEWC_MAGIC", "TRAILER_NAME", "normalise_archive_path"]
