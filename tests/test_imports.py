"""Basic import tests for the vmharness package."""

from pathlib import Path
import sys

# Ensure repository root is on sys.path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


def test_import_package() -> None:
    import vmharness

    assert vmharness.__version__


def test_import_modules() -> None:
    from vmharness import console, cpio, image, instance, network, orchestrator, qemu  # noqa: F401


def test_import_cli_entrypoint() -> None:
    """Ensure the CLI module imports without missing dependencies."""

    __import__("vmharness.cli")
