"""Exception hierarchy shared by the harness components."""

from __future__ import annotations

from typing import List, Optional, Sequence


class VMHarnessError(Exception):
    """Base class for every error raised by the harness."""


class BuildError(VMHarnessError):
    """The boot image could not be assembled."""


class NetworkError(VMHarnessError):
    """A virtual network operation was rejected."""


class LaunchError(VMHarnessError):
    """The emulator process could not be started."""


def _format_tail(tail: Sequence[str]) -> List[str]:
    if not tail:
        return []
    lines = [f"Console tail (last {len(tail)} lines):"]
    lines.extend(f"  {line}" for line in tail)
    return lines


class VMTimeoutError(VMHarnessError, AssertionError):
    """A deadline passed before the awaited console output or process exit.

    ``pattern`` is ``None`` when the deadline belonged to a process wait rather
    than a console expectation.
    """

    def __init__(
        self,
        message: str,
        *,
        pattern: Optional[str] = None,
        elapsed: float = 0.0,
        tail: Sequence[str] = (),
    ) -> None:
        self.pattern = pattern
        self.elapsed = elapsed
        self.tail = list(tail)
        super().__init__("\n".join([message, *_format_tail(self.tail)]))


class ConsoleEOFError(VMHarnessError, AssertionError):
    """The console closed before the awaited output appeared."""

    def __init__(
        self,
        message: str,
        *,
        pattern: Optional[str] = None,
        reason: Optional[str] = None,
        tail: Sequence[str] = (),
    ) -> None:
        self.pattern = pattern
        self.reason = reason
        self.tail = list(tail)
        super().__init__("\n".join([message, *_format_tail(self.tail)]))


class ExitError(VMHarnessError):
    """The instance terminated with an unexpected exit status."""

    def __init__(self, name: str, status: Optional[int], signal_status: Optional[int] = None) -> None:
        self.name = name
        self.status = status
        self.signal_status = signal_status
        if signal_status is not None:
            detail = f"signal {signal_status}"
        else:
            detail = f"status {status}"
        super().__init__(f"instance {name!r} exited with {detail}")


__all__ = [
    "BuildError",
    "ConsoleEOFError",
    "ExitError",
    "LaunchError",
    "NetworkError",
    "VMHarnessError",
    "VMTimeoutError",
]
