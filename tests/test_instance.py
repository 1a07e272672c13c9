"""Lifecycle coverage for ``VMInstance`` using real ptys and shell commands."""

from __future__ import annotations

import signal
from pathlib import Path

import pytest

from vmharness.errors import ConsoleEOFError, ExitError, LaunchError, VMTimeoutError
from vmharness.instance import InstanceState, VMInstance
from vmharness.logging_utils import HarnessLog


def _shell(name: str, script: str, **kwargs) -> VMInstance:
    kwargs.setdefault("kill_grace", 1.0)
    return VMInstance(name, ["/bin/sh", "-c", script], **kwargs)


def test_clean_exit_reports_status(tmp_path: Path) -> None:
    serial_log = tmp_path / "vm" / "serial.log"
    instance = _shell("clean", "echo booted; echo shutting down", serial_log=serial_log)

    instance.start()
    assert instance.expect("booted", timeout=10) == "booted"

    assert instance.wait(timeout=10) == 0
    assert instance.state is InstanceState.EXITED
    assert instance.state_history == [
        InstanceState.BUILT,
        InstanceState.STARTING,
        InstanceState.RUNNING,
        InstanceState.EXITED,
    ]
    assert instance.console.closed
    assert "shutting down" in serial_log.read_text(encoding="utf-8")
    assert instance.elapsed is not None


def test_invalid_utf8_is_replaced_not_dropped() -> None:
    instance = _shell("garbled", "printf 'caf\\377 ready\\n'").start()

    line = instance.expect("ready", timeout=10)

    assert line == "caf\ufffd ready"
    instance.wait(timeout=10)


def test_nonzero_exit_raises_exit_error() -> None:
    instance = _shell("failing", "echo failing; exit 3").start()

    with pytest.raises(ExitError) as excinfo:
        instance.wait(timeout=10)

    assert excinfo.value.status == 3
    assert instance.exit_status == 3
    with pytest.raises(ConsoleEOFError, match="exited with status 3"):
        instance.expect("never", timeout=5)


def test_kill_stops_a_running_instance() -> None:
    harness_log = HarnessLog()
    instance = _shell("sleeper", "echo up; exec sleep 60", harness_log=harness_log).start()
    instance.expect("up", timeout=10)

    instance.kill()

    assert instance.state is InstanceState.KILLED
    assert instance.wait(timeout=10) is None
    assert instance.signal_status == signal.SIGTERM
    with pytest.raises(ConsoleEOFError, match="instance was killed"):
        instance.expect("never", timeout=5)
    instance.kill()
    assert instance.state is InstanceState.KILLED
    assert any("Kill requested" in entry for entry in harness_log.transcript)


def test_kill_escalates_to_sigkill() -> None:
    harness_log = HarnessLog()
    instance = _shell(
        "stubborn",
        "trap '' TERM; echo stubborn; exec sleep 60",
        kill_grace=0.5,
        harness_log=harness_log,
    ).start()
    instance.expect("stubborn", timeout=10)

    instance.kill()

    assert instance.wait(timeout=10) is None
    assert instance.signal_status == signal.SIGKILL
    assert any("SIGKILL" in entry for entry in harness_log.transcript)


def test_wall_clock_timeout_terminates_the_instance() -> None:
    instance = _shell("hung", "echo hang; exec sleep 60", timeout=0.5).start()

    with pytest.raises(VMTimeoutError, match="exceeded its 0.5s timeout"):
        instance.wait()

    assert instance.state is InstanceState.TIMED_OUT
    assert InstanceState.KILLED not in instance.state_history
    # Killing after the deadline is a no-op.
    instance.kill()
    assert instance.state is InstanceState.TIMED_OUT


def test_instance_timeout_is_the_default_for_expectations() -> None:
    instance = _shell("quiet", "exec sleep 60", timeout=30).start()
    try:
        assert instance.console.resolve_timeout(None) == 30
        with pytest.raises(VMTimeoutError):
            instance.expect("never", timeout=0.2)
    finally:
        instance.kill()


def test_wait_without_deadline_times_out_when_asked() -> None:
    instance = _shell("patient", "exec sleep 60").start()
    try:
        with pytest.raises(VMTimeoutError, match="still running"):
            instance.wait(timeout=0.2)
        assert instance.state is InstanceState.RUNNING
    finally:
        instance.kill()


def test_launch_failure_raises_launch_error(tmp_path: Path) -> None:
    instance = VMInstance("missing", [str(tmp_path / "no-such-emulator")])

    with pytest.raises(LaunchError):
        instance.start()

    assert instance.state is InstanceState.EXITED
    assert instance.console.closed
    instance.kill()
    assert instance.wait() is None


def test_unstarted_instance_is_inert() -> None:
    instance = _shell("idle", "true")

    instance.kill()
    assert instance.wait() is None
    assert instance.state is InstanceState.BUILT
    assert instance.pid is None


def test_start_twice_is_rejected() -> None:
    instance = _shell("once", "exec sleep 60").start()
    try:
        with pytest.raises(RuntimeError, match="cannot start"):
            instance.start()
    finally:
        instance.kill()


def test_constructor_validation() -> None:
    with pytest.raises(ValueError):
        VMInstance("empty", [])
    with pytest.raises(ValueError):
        VMInstance("negative", ["/bin/true"], timeout=-1)
