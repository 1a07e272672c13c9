"""Minimal ``newc`` reader used to inspect archives written by the harness."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from vmharness.cpio import NEWC_MAGIC, TRAILER_NAME

HEADER_SIZE = 110


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    mode: int
    uid: int
    gid: int
    mtime: int
    data: bytes
    rdev_major: int
    rdev_minor: int


def _align(offset: int) -> int:
    return offset + (4 - offset % 4) % 4


def read_newc(payload: bytes) -> List[ArchiveEntry]:
    entries: List[ArchiveEntry] = []
    offset = 0
    while True:
        assert payload[offset : offset + 6] == NEWC_MAGIC, f"bad magic at offset {offset}"
        fields = [
            int(payload[offset + 6 + index * 8 : offset + 14 + index * 8], 16)
            for index in range(13)
        ]
        filesize = fields[6]
        namesize = fields[11]
        name_start = offset + HEADER_SIZE
        name = payload[name_start : name_start + namesize - 1].decode("utf-8")
        data_start = _align(name_start + namesize)
        data = payload[data_start : data_start + filesize]
        offset = _align(data_start + filesize)
        if name == TRAILER_NAME:
            assert offset == len(payload), "data after trailer"
            return entries
        entries.append(
            ArchiveEntry(
                name=name,
                mode=fields[1],
                uid=fields[2],
                gid=fields[3],
                mtime=fields[5],
                data=data,
                rdev_major=fields[9],
                rdev_minor=fields[10],
            )
        )


def entries_by_name(payload: bytes) -> Dict[str, ArchiveEntry]:
    return {entry.name: entry for entry in read_newc(payload)}
