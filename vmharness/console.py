"""Line-buffered console streams with ordered, deadline-bounded expectations."""

from __future__ import annotations

import codecs
import re
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Sequence, Tuple, Union

import pexpect

from .config import DEFAULT_CONSOLE_LINES
from .errors import ConsoleEOFError, VMTimeoutError
from .logging_utils import HarnessLog, log_event

ANSI_ESCAPE_PATTERN = re.compile(
    r"""
    \x1B(
        \[[0-?]*[ -/]*[@-~]      # CSI sequences, including bracketed paste toggles
        |\][^\x07]*(?:\x07|\x1b\\)  # OSC sequences for terminal title updates
        |P[^\x07\x1b]*(?:\x07|\x1b\\)  # DCS sequences
        |[@-Z\\-_]                 # 2-character sequences (e.g. ESCc)
        |_[^\x07]*(?:\x07|\x1b\\)    # APC sequences
        |\^[^\x07]*(?:\x07|\x1b\\)   # PM sequences
    )
    """,
    re.VERBOSE,
)

DEFAULT_HISTORY_LINES = 50
MAX_PARTIAL_LINE = 64 * 1024

LineSink = Callable[[str], None]


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from console output."""

    return ANSI_ESCAPE_PATTERN.sub("", text)


def _describe_timeout(timeout: Optional[float]) -> str:
    return "none" if timeout is None else f"{timeout:g}s"


class ConsoleStream:
    """Append-only sequence of console lines consumed by ordered expectations.

    The producer side (:meth:`feed`, :meth:`close`) never blocks: complete lines
    go into a bounded buffer and, once ``max_lines`` unread lines are pending,
    the oldest one is dropped. The consumer side (:meth:`expect`,
    :meth:`expect_any`, :meth:`read_line`) waits on a condition variable with a
    deadline. Lines scanned while looking for a match are consumed and are never
    delivered again.
    """

    def __init__(
        self,
        name: str = "console",
        *,
        default_timeout: Optional[float] = None,
        max_lines: int = DEFAULT_CONSOLE_LINES,
        history_lines: int = DEFAULT_HISTORY_LINES,
        line_sink: Optional[LineSink] = None,
        harness_log: Optional[HarnessLog] = None,
    ) -> None:
        if max_lines <= 0:
            raise ValueError("max_lines must be greater than zero")
        self.name = name
        self.default_timeout = default_timeout
        self.max_lines = max_lines
        self.line_sink = line_sink
        self.harness_log = harness_log
        self._cond = threading.Condition()
        self._consumer = threading.Lock()
        self._lines: Deque[str] = deque()
        self._history: Deque[str] = deque(maxlen=history_lines)
        self._partial = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._closed = False
        self._close_reason: Optional[str] = None
        self._produced = 0
        self._consumed = 0
        self._dropped = 0

    def __repr__(self) -> str:
        return f"ConsoleStream(name={self.name!r}, position={self._consumed}, closed={self._closed})"

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def close_reason(self) -> Optional[str]:
        with self._cond:
            return self._close_reason

    @property
    def position(self) -> int:
        """Number of lines consumed (or dropped) so far; never decreases."""

        with self._cond:
            return self._consumed

    @property
    def dropped(self) -> int:
        with self._cond:
            return self._dropped

    def tail(self, lines: int = DEFAULT_HISTORY_LINES) -> List[str]:
        """Return the most recently produced lines for diagnostics."""

        with self._cond:
            history = list(self._history)
        return history[-lines:] if lines > 0 else []

    def _log_step(self, message: str) -> None:
        if self.harness_log is not None:
            self.harness_log.step(f"[{self.name}] {message}")

    # Producer side ---------------------------------------------------------

    def _push_line(self, raw: str) -> None:
        line = strip_ansi(raw).replace("\r", "")
        if len(self._lines) >= self.max_lines:
            self._lines.popleft()
            self._consumed += 1
            self._dropped += 1
            if self._dropped == 1:
                log_event("vmharness.console.overflow", console=self.name, max_lines=self.max_lines)
        self._lines.append(line)
        self._history.append(line)
        self._produced += 1
        if self.line_sink is not None:
            self.line_sink(line)

    def feed(self, data: Union[str, bytes]) -> None:
        """Append raw console output; complete lines become visible to readers."""

        if isinstance(data, (bytes, bytearray)):
            text = self._decoder.decode(bytes(data))
        else:
            text = data
        if not text:
            return
        with self._cond:
            if self._closed:
                return
            buffered = self._partial + text
            *complete, remainder = buffered.split("\n")
            for raw in complete:
                self._push_line(raw)
            while len(remainder) > MAX_PARTIAL_LINE:
                self._push_line(remainder[:MAX_PARTIAL_LINE])
                remainder = remainder[MAX_PARTIAL_LINE:]
            self._partial = remainder
            if complete:
                self._cond.notify_all()

    def close(self, reason: Optional[str] = None) -> None:
        """Mark end-of-stream, flushing any unterminated final line."""

        with self._cond:
            if self._closed:
                return
            trailing = self._partial + self._decoder.decode(b"", final=True)
            self._partial = ""
            if trailing.strip():
                self._push_line(trailing)
            self._closed = True
            self._close_reason = reason
            self._cond.notify_all()
        log_event("vmharness.console.close", console=self.name, reason=reason, lines=self._produced)

    # Consumer side ---------------------------------------------------------

    def resolve_timeout(self, timeout: Optional[float]) -> Optional[float]:
        """Map a per-call timeout onto the effective deadline length.

        ``None`` and ``0`` defer to ``default_timeout``; a missing default means
        waiting without a deadline.
        """

        if timeout is not None and timeout < 0:
            raise ValueError("timeout must not be negative")
        if not timeout:
            timeout = self.default_timeout
        return timeout or None

    def _eof_error(self, pattern: Optional[str], what: str) -> ConsoleEOFError:
        reason = self._close_reason or "console closed"
        return ConsoleEOFError(
            f"console {self.name!r} closed before {what} ({reason})",
            pattern=pattern,
            reason=reason,
            tail=list(self._history),
        )

    def _timeout_error(self, pattern: Optional[str], what: str, elapsed: float) -> VMTimeoutError:
        return VMTimeoutError(
            f"timed out after {elapsed:.2f}s on console {self.name!r} waiting for {what}",
            pattern=pattern,
            elapsed=elapsed,
            tail=list(self._history),
        )

    def _scan(
        self,
        patterns: Optional[Sequence[str]],
        timeout: Optional[float],
    ) -> Tuple[int, str]:
        if patterns is None:
            what = "a line"
            label: Optional[str] = None
        else:
            what = " or ".join(repr(pattern) for pattern in patterns)
            label = patterns[0] if len(patterns) == 1 else " | ".join(patterns)
        if not self._consumer.acquire(blocking=False):
            raise RuntimeError(f"console {self.name!r} already has an active reader")
        try:
            started = time.monotonic()
            deadline = None if timeout is None else started + timeout
            with self._cond:
                while True:
                    while self._lines:
                        line = self._lines.popleft()
                        self._consumed += 1
                        if patterns is None:
                            return 0, line
                        for index, pattern in enumerate(patterns):
                            if pattern in line:
                                return index, line
                    if self._closed:
                        raise self._eof_error(label, what)
                    if deadline is None:
                        self._cond.wait()
                        continue
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise self._timeout_error(label, what, time.monotonic() - started)
                    self._cond.wait(remaining)
        finally:
            self._consumer.release()

    def read_line(self, timeout: Optional[float] = None) -> str:
        """Return the next unread line."""

        _, line = self._scan(None, self.resolve_timeout(timeout))
        return line

    def expect_any(self, patterns: Sequence[str], timeout: Optional[float] = None) -> Tuple[int, str]:
        """Consume lines until one contains any of ``patterns``.

        Returns the index of the first pattern found in the matching line
        together with that line.
        """

        if isinstance(patterns, str):
            patterns = [patterns]
        patterns = list(patterns)
        if not patterns or any(not pattern for pattern in patterns):
            raise ValueError("patterns must be non-empty strings")
        effective = self.resolve_timeout(timeout)
        self._log_step(
            "Awaiting patterns: "
            + ", ".join(repr(pattern) for pattern in patterns)
            + f" (timeout={_describe_timeout(effective)})"
        )
        log_event("vmharness.console.expect", console=self.name, patterns=patterns, timeout=effective)
        try:
            index, line = self._scan(patterns, effective)
        except (VMTimeoutError, ConsoleEOFError) as exc:
            self._log_step(f"Expectation failed: {exc.__class__.__name__}")
            log_event(
                "vmharness.console.expect_failed",
                console=self.name,
                patterns=patterns,
                error=exc.__class__.__name__,
            )
            raise
        self._log_step(f"Matched pattern: {patterns[index]!r}")
        log_event("vmharness.console.match", console=self.name, pattern=patterns[index], line=line)
        return index, line

    def expect(self, pattern: str, timeout: Optional[float] = None) -> str:
        """Consume lines until one contains ``pattern`` and return that line."""

        _, line = self.expect_any([pattern], timeout)
        return line


class ConsoleReader(threading.Thread):
    """Background task draining a pexpect child into a :class:`ConsoleStream`.

    The reader is the only thread that reads from the child, so it is also the
    only one allowed to reap it; ``on_exit`` runs on this thread once output
    ends and is expected to close the stream.
    """

    def __init__(
        self,
        child: "pexpect.spawn",
        stream: ConsoleStream,
        *,
        on_exit: Optional[Callable[[str], None]] = None,
        poll_interval: float = 0.2,
        chunk_size: int = 4096,
    ) -> None:
        super().__init__(name=f"console-reader-{stream.name}", daemon=True)
        self.child = child
        self.stream = stream
        self.on_exit = on_exit
        self.poll_interval = poll_interval
        self.chunk_size = chunk_size
        self._stop_requested = threading.Event()

    def stop(self) -> None:
        """Ask the reader to give up at its next poll even without EOF."""

        self._stop_requested.set()

    def run(self) -> None:
        reason = "console reached end of output"
        try:
            while True:
                try:
                    chunk = self.child.read_nonblocking(self.chunk_size, timeout=self.poll_interval)
                except pexpect.TIMEOUT:
                    if self._stop_requested.is_set():
                        reason = "console reader stopped"
                        break
                    continue
                except pexpect.EOF:
                    break
                self.stream.feed(chunk)
        except (pexpect.ExceptionPexpect, OSError, ValueError) as exc:
            reason = f"console reader failed: {exc!r}"
            log_event("vmharness.console.reader_error", console=self.stream.name, error=repr(exc))
        finally:
            if self.on_exit is not None:
                try:
                    self.on_exit(reason)
                finally:
                    self.stream.close(reason)
            else:
                self.stream.close(reason)


__all__ = [
    "ANSI_ESCAPE_PATTERN",
    "ConsoleReader",
    "ConsoleStream",
    "LineSink",
    "strip_ansi",
]
