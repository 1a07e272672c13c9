from pathlib import Path
import sys
from typing import Callable, Iterable

import pytest

# Ensure repository root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tests.fakes import write_fake_emulator  # noqa: E402

pytest_plugins = ["vmharness.fixtures"]


@pytest.fixture
def fake_emulator(tmp_path: Path) -> Callable[..., Path]:
    """Return a factory writing fake QEMU scripts under ``tmp_path``."""

    def create(body: str, name: str = "fake-qemu") -> Path:
        return write_fake_emulator(tmp_path / name, body)

    return create


@pytest.fixture
def fake_kernel(tmp_path: Path) -> Path:
    kernel = tmp_path / "vmlinuz"
    kernel.write_bytes(b"\x7fkernel-image")
    return kernel


@pytest.fixture
def guest_bin(tmp_path: Path) -> Callable[[Iterable[str]], Path]:
    """Return a factory populating a directory with fake guest executables."""

    directory = tmp_path / "guest-bin"

    def create(names: Iterable[str]) -> Path:
        directory.mkdir(exist_ok=True)
        for name in names:
            command = directory / name
            command.write_text(f"#!/bin/sh\necho {name} \"$@\"\n", encoding="utf-8")
            command.chmod(0o755)
        return directory

    return create
