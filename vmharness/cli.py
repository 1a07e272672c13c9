"""Command line helpers for booting harness images by hand."""

from __future__ import annotations

import argparse
import sys
from contextlib import ExitStack
from pathlib import Path
from typing import Sequence

from .config import HarnessSettings
from .errors import BuildError, ConsoleEOFError, ExitError, LaunchError, NetworkError, VMTimeoutError
from .image import ImageBuilder, ImageSpec, PathCommandResolver
from .network import NetworkRegistry
from .orchestrator import InstanceConfig, Orchestrator

EXIT_OK = 0
EXIT_EXPECTATION_FAILED = 1
EXIT_SETUP_FAILED = 2


def _add_image_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--cmd",
        dest="commands",
        action="append",
        default=[],
        metavar="ID",
        help="Guest command to embed; repeat for several",
    )
    parser.add_argument(
        "--init",
        dest="init_script",
        action="append",
        default=[],
        metavar="LINE",
        help="Init script line run by the guest; repeat for several",
    )
    parser.add_argument(
        "--file",
        dest="files",
        action="append",
        default=[],
        metavar="SRC:DST",
        help="Host file or directory to embed at a guest path",
    )


def _report(message: str) -> None:
    print(f"vmharness: {message}", file=sys.stderr)


def _run_cli(args: argparse.Namespace) -> int:
    settings = HarnessSettings.from_env()
    with ExitStack() as stack:
        orchestrator = stack.enter_context(Orchestrator(settings, log_dir=args.log_dir))
        network = None
        if args.network:
            registry = stack.enter_context(NetworkRegistry(settings.net_base_port))
            network = registry.new_network()
        config = InstanceConfig(
            name=args.name,
            commands=args.commands,
            init_script=args.init_script,
            files=args.files,
            network=network,
            shared_dir=args.share_dir,
            share_initramfs=args.share_initramfs,
            timeout=args.timeout,
            memory_mb=args.memory,
            kernel_args=args.kernel_args,
            qemu_args=args.qemu_args,
            echo_console=not args.quiet,
        )
        try:
            instance, cleanup = orchestrator.start_instance(config)
        except (BuildError, LaunchError, NetworkError, ValueError) as exc:
            _report(str(exc))
            return EXIT_SETUP_FAILED
        stack.callback(cleanup)
        print(f"logs: {orchestrator.log_dir}", file=sys.stderr)
        try:
            for pattern in args.expect:
                instance.expect(pattern, timeout=args.expect_timeout)
            if not args.expect:
                instance.wait()
        except (VMTimeoutError, ConsoleEOFError, ExitError) as exc:
            _report(str(exc))
            return EXIT_EXPECTATION_FAILED
    return EXIT_OK


def _build_cli(args: argparse.Namespace) -> int:
    settings = HarnessSettings.from_env()
    builder = ImageBuilder(
        settings.kernel,
        PathCommandResolver(settings.command_path),
        workdir_root=args.workdir_root,
        shell=settings.guest_shell,
    )
    try:
        spec = ImageSpec(
            commands=tuple(args.commands),
            init_script=tuple(args.init_script),
            files=tuple(args.files),
        )
        image = builder.build(spec)
    except BuildError as exc:
        _report(str(exc))
        return EXIT_SETUP_FAILED
    print(f"kernel: {image.kernel}")
    print(f"initramfs: {image.initramfs}")
    print(f"workdir: {image.workdir}")
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``python -m vmharness``."""

    parser = argparse.ArgumentParser(description="Boot throwaway VMs from declarative images")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="boot one instance and watch its console")
    run_parser.add_argument("name", nargs="?", default="vm", help="Instance name")
    _add_image_arguments(run_parser)
    run_parser.add_argument(
        "--expect",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Console substring to wait for, in order; without any, wait for exit",
    )
    run_parser.add_argument("--expect-timeout", type=float, default=None, help="Seconds per expectation")
    run_parser.add_argument("--timeout", type=float, default=None, help="Instance wall-clock timeout in seconds")
    run_parser.add_argument("--memory", type=int, default=None, help="Guest memory in MiB")
    run_parser.add_argument("--share-dir", type=Path, default=None, help="Host directory exported to the guest")
    run_parser.add_argument(
        "--share-initramfs",
        action="store_true",
        help="Copy the built initramfs into the shared directory",
    )
    run_parser.add_argument("--network", action="store_true", help="Attach the instance to a fresh network")
    run_parser.add_argument(
        "--kernel-arg",
        dest="kernel_args",
        action="append",
        default=[],
        help="Extra kernel command line argument",
    )
    run_parser.add_argument(
        "--qemu-arg",
        dest="qemu_args",
        action="append",
        default=[],
        help="Extra emulator argument (use --qemu-arg=-flag for dashed values)",
    )
    run_parser.add_argument("--log-dir", type=Path, default=None, help="Directory for run logs")
    run_parser.add_argument("--quiet", action="store_true", help="Do not echo the console to stderr")
    run_parser.set_defaults(func=_run_cli)

    build_parser = subparsers.add_parser("build", help="build an image and keep its work directory")
    _add_image_arguments(build_parser)
    build_parser.add_argument(
        "--workdir-root",
        type=Path,
        default=None,
        help="Parent directory for the image work directory",
    )
    build_parser.set_defaults(func=_build_cli)

    parsed = parser.parse_args(argv)
    try:
        return parsed.func(parsed)
    except ValueError as exc:
        _report(str(exc))
        return EXIT_SETUP_FAILED


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
