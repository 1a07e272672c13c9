"""Supervision of one emulator process and its console."""

from __future__ import annotations

import enum
import os
import shlex
import signal
import threading
import time
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional, Sequence, Tuple

import pexpect

from .config import DEFAULT_CONSOLE_LINES, DEFAULT_KILL_GRACE
from .console import ConsoleReader, ConsoleStream, LineSink
from .errors import ExitError, LaunchError, VMTimeoutError
from .logging_utils import HarnessLog, log_event
from .network import Endpoint


class InstanceState(enum.Enum):
    BUILT = "built"
    STARTING = "starting"
    RUNNING = "running"
    KILLED = "killed"
    EXITED = "exited"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in (InstanceState.KILLED, InstanceState.EXITED, InstanceState.TIMED_OUT)


_TRANSITIONS = {
    InstanceState.BUILT: {InstanceState.STARTING},
    InstanceState.STARTING: {InstanceState.RUNNING, InstanceState.EXITED},
    InstanceState.RUNNING: {InstanceState.KILLED, InstanceState.EXITED, InstanceState.TIMED_OUT},
}


class VMInstance:
    """Owns one emulator process from launch to reaping.

    The console is drained by a :class:`ConsoleReader` thread which is also the
    only code path that reaps the process. :meth:`kill` and the wall-clock
    watchdog merely deliver signals and then wait for the reader to report
    the exit.
    """

    def __init__(
        self,
        name: str,
        argv: Sequence[str],
        *,
        timeout: Optional[float] = None,
        endpoint: Optional[Endpoint] = None,
        kill_grace: float = DEFAULT_KILL_GRACE,
        serial_log: Optional[Path] = None,
        harness_log: Optional[HarnessLog] = None,
        line_sink: Optional[LineSink] = None,
        console_max_lines: int = DEFAULT_CONSOLE_LINES,
        env: Optional[Dict[str, str]] = None,
        spawn: Callable[..., "pexpect.spawn"] = pexpect.spawn,
    ) -> None:
        if not argv:
            raise ValueError("argv must name the emulator executable")
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must not be negative")
        self.name = name
        self.argv: Tuple[str, ...] = tuple(str(arg) for arg in argv)
        self.timeout = timeout or None
        self.endpoint = endpoint
        self.kill_grace = kill_grace
        self.serial_log = serial_log
        self.harness_log = harness_log
        self.env = env
        self.console = ConsoleStream(
            name,
            default_timeout=self.timeout,
            max_lines=console_max_lines,
            line_sink=line_sink,
            harness_log=harness_log,
        )
        self._spawn = spawn
        self._state = InstanceState.BUILT
        self._state_lock = threading.RLock()
        self._exited = threading.Event()
        self._child: Optional["pexpect.spawn"] = None
        self._reader: Optional[ConsoleReader] = None
        self._watchdog: Optional[threading.Timer] = None
        self._serial_handle: Optional[IO[str]] = None
        self._started_at: Optional[float] = None
        self._ended_at: Optional[float] = None
        self._exit_status: Optional[int] = None
        self._signal_status: Optional[int] = None
        self._history: List[InstanceState] = [InstanceState.BUILT]

    def __repr__(self) -> str:
        return f"VMInstance(name={self.name!r}, state={self.state.value})"

    # Introspection ---------------------------------------------------------

    @property
    def state(self) -> InstanceState:
        with self._state_lock:
            return self._state

    @property
    def state_history(self) -> List[InstanceState]:
        with self._state_lock:
            return list(self._history)

    @property
    def exit_status(self) -> Optional[int]:
        return self._exit_status

    @property
    def signal_status(self) -> Optional[int]:
        return self._signal_status

    @property
    def pid(self) -> Optional[int]:
        return self._child.pid if self._child is not None else None

    @property
    def elapsed(self) -> Optional[float]:
        if self._started_at is None:
            return None
        end = self._ended_at if self._ended_at is not None else time.monotonic()
        return end - self._started_at

    @property
    def command_line(self) -> str:
        return shlex.join(self.argv)

    def _log_step(self, message: str, body: Optional[str] = None) -> None:
        if self.harness_log is not None:
            self.harness_log.step(f"[{self.name}] {message}", body=body)

    def _transition(self, new_state: InstanceState) -> bool:
        with self._state_lock:
            previous = self._state
            if new_state not in _TRANSITIONS.get(previous, ()):
                return False
            self._state = new_state
            self._history.append(new_state)
        log_event(
            "vmharness.instance.state",
            instance=self.name,
            previous=previous.value,
            state=new_state.value,
        )
        return True

    # Lifecycle -------------------------------------------------------------

    def start(self) -> "VMInstance":
        """Spawn the emulator and begin draining its console."""

        if not self._transition(InstanceState.STARTING):
            raise RuntimeError(f"instance {self.name!r} cannot start from state {self.state.value}")
        self._log_step("Launching emulator", body=self.command_line)
        if self.serial_log is not None:
            self.serial_log.parent.mkdir(parents=True, exist_ok=True)
            self._serial_handle = self.serial_log.open("w", encoding="utf-8")
        try:
            child = self._spawn(
                self.argv[0],
                list(self.argv[1:]),
                encoding="utf-8",
                codec_errors="replace",
                timeout=None,
                env=self.env,
            )
        except (pexpect.ExceptionPexpect, OSError) as exc:
            self._transition(InstanceState.EXITED)
            self._ended_at = time.monotonic()
            self._close_serial_log()
            self.console.close(f"launch failed: {exc}")
            self._exited.set()
            self._log_step("Emulator launch failed", body=repr(exc))
            log_event("vmharness.instance.launch_failed", instance=self.name, error=repr(exc))
            raise LaunchError(f"failed to launch instance {self.name!r}: {exc}") from exc

        child.logfile_read = self._serial_handle
        self._child = child
        self._started_at = time.monotonic()
        self._transition(InstanceState.RUNNING)
        log_event(
            "vmharness.instance.start",
            instance=self.name,
            pid=child.pid,
            timeout=self.timeout,
            command=list(self.argv),
        )
        self._reader = ConsoleReader(child, self.console, on_exit=self._on_console_exit)
        self._reader.start()
        if self.timeout is not None:
            self._watchdog = threading.Timer(self.timeout, self._on_deadline)
            self._watchdog.daemon = True
            self._watchdog.start()
        return self

    def _close_serial_log(self) -> None:
        handle = self._serial_handle
        self._serial_handle = None
        if handle is not None:
            handle.close()

    def _close_reason(self) -> str:
        state = self.state
        if state is InstanceState.KILLED:
            return "instance was killed"
        if state is InstanceState.TIMED_OUT:
            return f"instance exceeded its {self.timeout:g}s timeout"
        if self._signal_status is not None:
            return f"instance terminated by signal {self._signal_status}"
        return f"instance exited with status {self._exit_status}"

    def _on_console_exit(self, reason: str) -> None:
        """Reap the child once its output has ended; runs on the reader thread."""

        child = self._child
        try:
            if self._reader is not None and reason.startswith("console reader failed"):
                self._signal(signal.SIGKILL)
            if child is not None:
                try:
                    child.wait()
                except pexpect.ExceptionPexpect as exc:
                    log_event("vmharness.instance.wait_error", instance=self.name, error=repr(exc))
                self._exit_status = child.exitstatus
                self._signal_status = child.signalstatus
                try:
                    child.close(force=True)
                except (pexpect.ExceptionPexpect, OSError) as exc:
                    log_event("vmharness.instance.close_error", instance=self.name, error=repr(exc))
            self._ended_at = time.monotonic()
            self._transition(InstanceState.EXITED)
            if self._watchdog is not None:
                self._watchdog.cancel()
            self._close_serial_log()
            close_reason = self._close_reason()
            self.console.close(close_reason)
            self._log_step(
                "Emulator process ended",
                body=f"state={self.state.value}\nexit_status={self._exit_status}\n"
                f"signal_status={self._signal_status}\nconsole={reason}",
            )
            log_event(
                "vmharness.instance.exit",
                instance=self.name,
                state=self.state.value,
                exit_status=self._exit_status,
                signal_status=self._signal_status,
                elapsed=self.elapsed,
            )
        finally:
            self._exited.set()

    def _signal(self, signum: int) -> None:
        child = self._child
        if child is None or self._exited.is_set():
            return
        try:
            os.kill(child.pid, signum)
        except ProcessLookupError:
            pass

    def _terminate(self) -> None:
        """Escalate from SIGTERM to SIGKILL until the reader reports the exit."""

        self._signal(signal.SIGTERM)
        if self._exited.wait(self.kill_grace):
            return
        self._log_step("Emulator ignored SIGTERM; sending SIGKILL")
        self._signal(signal.SIGKILL)
        if self._exited.wait(self.kill_grace):
            return
        # Something else still holds the console open; stop draining it.
        if self._reader is not None:
            self._reader.stop()
        self._exited.wait(self.kill_grace)

    def _on_deadline(self) -> None:
        if not self._transition(InstanceState.TIMED_OUT):
            return
        self._log_step(f"Wall-clock timeout of {self.timeout:g}s elapsed; terminating")
        log_event("vmharness.instance.timeout", instance=self.name, timeout=self.timeout)
        self._terminate()

    def kill(self) -> None:
        """Force-stop the instance; a no-op unless it is running."""

        if not self._transition(InstanceState.KILLED):
            self._log_step(f"Kill requested in state {self.state.value}; nothing to do")
            return
        self._log_step("Kill requested")
        if self._watchdog is not None:
            self._watchdog.cancel()
        self._terminate()

    def _default_wait_timeout(self) -> Optional[float]:
        if self.timeout is None or self._started_at is None:
            return None
        remaining = self._started_at + self.timeout - time.monotonic()
        # Leave room for the watchdog's own SIGTERM/SIGKILL escalation.
        return max(remaining, 0.0) + 3 * self.kill_grace + 1.0

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until the process has exited and return its exit status.

        Killed instances return normally. A watchdog expiry raises
        :class:`VMTimeoutError`; a nonzero self-exit raises :class:`ExitError`.
        """

        if self.state is InstanceState.BUILT:
            return None
        if timeout is not None and timeout <= 0:
            timeout = None
        effective = timeout if timeout is not None else self._default_wait_timeout()
        started = time.monotonic()
        if not self._exited.wait(effective):
            elapsed = time.monotonic() - started
            raise VMTimeoutError(
                f"instance {self.name!r} still running after waiting {elapsed:.2f}s",
                elapsed=elapsed,
                tail=self.console.tail(),
            )
        state = self.state
        if state is InstanceState.TIMED_OUT:
            raise VMTimeoutError(
                f"instance {self.name!r} exceeded its {self.timeout:g}s timeout",
                elapsed=self.elapsed or 0.0,
                tail=self.console.tail(),
            )
        if state is InstanceState.EXITED and self._child is not None:
            if self._signal_status is not None or self._exit_status not in (0, None):
                raise ExitError(self.name, self._exit_status, self._signal_status)
        return self._exit_status

    # Console delegation ----------------------------------------------------

    def expect(self, pattern: str, timeout: Optional[float] = None) -> str:
        return self.console.expect(pattern, timeout)

    def expect_any(self, patterns: Sequence[str], timeout: Optional[float] = None) -> Tuple[int, str]:
        return self.console.expect_any(patterns, timeout)

    def read_line(self, timeout: Optional[float] = None) -> str:
        return self.console.read_line(timeout)


__all__ = ["InstanceState", "VMInstance"]
