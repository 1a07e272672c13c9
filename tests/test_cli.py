"""Tests for the vmharness command line entry point."""

from pathlib import Path

import pytest

from vmharness import cli


@pytest.fixture
def harness_env(monkeypatch, tmp_path: Path, fake_kernel: Path, guest_bin):
    commands = guest_bin(["init", "ip", "elvish"])
    monkeypatch.setenv("VMTEST_ARCH", "amd64")
    monkeypatch.setenv("VMTEST_KERNEL", str(fake_kernel))
    monkeypatch.setenv("VMTEST_COMMAND_PATH", str(commands))
    monkeypatch.setenv("VMTEST_KILL_GRACE", "1")
    monkeypatch.delenv("VMTEST_TIMEOUT", raising=False)
    monkeypatch.delenv("VMTEST_LOG_DIR", raising=False)
    monkeypatch.delenv("VMTEST_SHELL", raising=False)
    return monkeypatch


def test_build_prints_artifacts(harness_env, capsys, tmp_path: Path) -> None:
    exit_code = cli.main(
        ["build", "--cmd", "cmds/core/init", "--init", "ip a", "--workdir-root", str(tmp_path / "images")]
    )

    assert exit_code == 0
    out = capsys.readouterr().out
    lines = dict(line.split(": ", 1) for line in out.splitlines())
    assert Path(lines["initramfs"]).is_file()
    assert Path(lines["workdir"]).parent == tmp_path / "images"


def test_build_reports_unresolved_commands(harness_env, capsys) -> None:
    exit_code = cli.main(["build", "--cmd", "testcmd/pxeserver"])

    assert exit_code == 2
    assert "unable to resolve commands: testcmd/pxeserver" in capsys.readouterr().err


def test_build_rejects_malformed_file_mapping(harness_env, capsys) -> None:
    assert cli.main(["build", "--file", "src:"]) == cli.EXIT_SETUP_FAILED
    assert "invalid file mapping 'src:'" in capsys.readouterr().err


def test_run_rejects_malformed_file_mapping(harness_env, capsys, tmp_path: Path) -> None:
    exit_code = cli.main(["run", "--file", ":guest", "--log-dir", str(tmp_path / "logs"), "--quiet"])

    assert exit_code == cli.EXIT_SETUP_FAILED
    assert "invalid file mapping ':guest'" in capsys.readouterr().err


def test_run_checks_expectations_in_order(harness_env, fake_emulator, tmp_path: Path) -> None:
    emulator = fake_emulator("echo 'starting file server'\necho 'Boot URI: tftp://192.168.0.1/pxelinux.0'\nexec sleep 60")
    harness_env.setenv("VMTEST_QEMU", str(emulator))

    exit_code = cli.main(
        [
            "run",
            "server",
            "--cmd",
            "cmds/core/ip",
            "--expect",
            "starting file server",
            "--expect",
            "Boot URI",
            "--expect-timeout",
            "10",
            "--log-dir",
            str(tmp_path / "logs"),
            "--quiet",
        ]
    )

    assert exit_code == 0
    assert (tmp_path / "logs" / "server" / "metadata.json").is_file()


def test_run_reports_unmet_expectations(harness_env, fake_emulator, capsys, tmp_path: Path) -> None:
    harness_env.setenv("VMTEST_QEMU", str(fake_emulator("echo 'kernel panic'\nexit 0")))

    exit_code = cli.main(
        ["run", "--expect", "SAW KEXEC=Y", "--log-dir", str(tmp_path / "logs"), "--quiet"]
    )

    assert exit_code == 1
    assert "SAW KEXEC=Y" in capsys.readouterr().err


def test_run_without_expectations_waits_for_exit(harness_env, fake_emulator, tmp_path: Path) -> None:
    harness_env.setenv("VMTEST_QEMU", str(fake_emulator("exit 4")))

    assert cli.main(["run", "--log-dir", str(tmp_path / "logs"), "--quiet"]) == 1

    harness_env.setenv("VMTEST_QEMU", str(fake_emulator("exit 0", name="clean-qemu")))
    assert cli.main(["run", "--log-dir", str(tmp_path / "logs"), "--quiet"]) == 0


def test_run_reports_launch_failures(harness_env, capsys, tmp_path: Path) -> None:
    harness_env.setenv("VMTEST_QEMU", str(tmp_path / "missing-qemu"))

    assert cli.main(["run", "--log-dir", str(tmp_path / "logs")]) == 2
    assert "failed to launch" in capsys.readouterr().err


def test_invalid_configuration_is_a_setup_failure(harness_env, capsys) -> None:
    harness_env.setenv("VMTEST_MEMORY", "plenty")

    assert cli.main(["build"]) == 2
    assert "VMTEST_MEMORY" in capsys.readouterr().err
