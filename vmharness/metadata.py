"""Utilities for recording per-instance run metadata alongside the logs."""

from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from vmharness.image import BuiltImage
    from vmharness.network import Endpoint


def _write(metadata_path: Path, metadata: Dict[str, object]) -> None:
    metadata_path.write_text(
        json.dumps(metadata, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )


def _load(metadata_path: Path) -> Optional[Dict[str, object]]:
    try:
        raw_metadata = metadata_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    if not raw_metadata.strip():
        return None
    try:
        metadata = json.loads(raw_metadata)
    except json.JSONDecodeError:
        return None
    if not isinstance(metadata, dict):
        return None
    return metadata


def write_instance_metadata(
    metadata_path: Path,
    *,
    name: str,
    image: "BuiltImage",
    qemu_command: List[str],
    qemu_version: Optional[str] = None,
    harness_log: Optional[Path] = None,
    serial_log: Optional[Path] = None,
    endpoint: Optional["Endpoint"] = None,
    shared_dir: Optional[Path] = None,
    timeout: Optional[float] = None,
) -> None:
    """Persist structured metadata describing a freshly configured instance."""

    metadata_path.parent.mkdir(parents=True, exist_ok=True)
    metadata: Dict[str, object] = {
        "generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "instance": name,
        "image": {
            "kernel": str(image.kernel),
            "initramfs": str(image.initramfs),
            "init_script": image.init_script_path,
            "commands": dict(image.commands),
        },
        "logs": {
            "harness": str(harness_log) if harness_log else None,
            "serial": str(serial_log) if serial_log else None,
        },
        "qemu": {
            "command": qemu_command,
        },
        "timeout_seconds": timeout,
    }
    if qemu_version:
        metadata["qemu"]["version"] = qemu_version
    if endpoint is not None:
        metadata["network"] = {
            "id": endpoint.network_id,
            "mac": endpoint.mac,
            "multicast": f"{endpoint.group}:{endpoint.port}",
        }
    if shared_dir is not None:
        metadata["shared_dir"] = str(shared_dir)
    _write(metadata_path, metadata)


def record_instance_outcome(
    metadata_path: Path,
    *,
    state: str,
    exit_status: Optional[int],
    signal_status: Optional[int] = None,
    elapsed_seconds: Optional[float] = None,
    cleanup_errors: Optional[List[str]] = None,
) -> None:
    """Merge the final lifecycle outcome into ``metadata.json`` when present."""

    metadata = _load(metadata_path)
    if metadata is None:
        return
    outcome: Dict[str, object] = {
        "state": state,
        "exit_status": exit_status,
        "signal_status": signal_status,
        "recorded_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }
    if elapsed_seconds is not None:
        outcome["elapsed_seconds"] = round(elapsed_seconds, 3)
    if cleanup_errors:
        outcome["cleanup_errors"] = list(cleanup_errors)
    metadata["outcome"] = outcome
    _write(metadata_path, metadata)


__all__ = ["record_instance_outcome", "write_instance_metadata"]
