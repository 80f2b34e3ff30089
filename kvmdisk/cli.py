"""CLI entry points for kvmdisk."""

from __future__ import annotations

import argparse
import dataclasses
import traceback
from pathlib import Path
from typing import List, Optional

from kvmdisk.cleanup import CleanupManager, describe
from kvmdisk.config import parse_build_config, parse_run_config
from kvmdisk.constants import _SENSITIVE_FIELDS, DEFAULT_DISK_IMAGE
from kvmdisk.exceptions import ProvisionError, TeardownError
from kvmdisk.models import BuildConfig, TeardownMode
from kvmdisk.pipeline import ProvisioningPipeline
from kvmdisk.preflight import PreflightValidator, render_report
from kvmdisk.runner import CommandRunner
from kvmdisk.tracker import ResourceTracker
from kvmdisk.utils import get_env, log


def preflight_target() -> Path:
    """Filesystem whose free space is checked: where the disk image is written."""
    explicit = get_env("PREFLIGHT_PATH")
    if explicit:
        return Path(explicit)
    image = Path(get_env("DISK_IMAGE", DEFAULT_DISK_IMAGE) or DEFAULT_DISK_IMAGE)
    parent = image.parent
    return parent if parent.exists() else Path(".")


def show_config(cfg: BuildConfig) -> None:
    """Print the resolved build configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"  {field.name}: ********")
        elif isinstance(value, list) and value and dataclasses.is_dataclass(value[0]):
            print(f"  {field.name}:")
            for i, item in enumerate(value):
                print(f"    [{i}]: " + ", ".join(f"{k}={v}" for k, v in dataclasses.asdict(item).items()))
        else:
            print(f"  {field.name}: {value}")


def cmd_preflight(args: argparse.Namespace) -> int:
    return PreflightValidator(preflight_target()).run()


def cmd_build(args: argparse.Namespace) -> int:
    cfg = parse_build_config()
    report = PreflightValidator(preflight_target()).validate()
    render_report(report)
    if report.exit_code != 0:
        log("ERROR", "Preflight found blocking issues; not starting the build")
        return report.exit_code
    outcome = ProvisioningPipeline(cfg).provision()
    return outcome.exit_code


def cmd_run(args: argparse.Namespace) -> int:
    from kvmdisk.vm import QemuLauncher

    cfg = parse_run_config(writable=args.writable, variant=args.kernel)
    retcode = QemuLauncher(cfg).launch()
    if retcode != 0:
        log("WARN", f"QEMU exited with status {retcode}")
    return retcode


def cmd_teardown(args: argparse.Namespace) -> int:
    cfg = parse_build_config()
    if cfg.state_file is None or not cfg.state_file.exists():
        log("INFO", "No recorded resources; nothing to tear down")
        return 0
    tracker = ResourceTracker.load(cfg.state_file)
    cleanup = CleanupManager(CommandRunner())
    released = cleanup.teardown(tracker, TeardownMode.PARTIAL)
    try:
        released += cleanup.teardown(tracker, TeardownMode.FINAL)
    except TeardownError as exc:
        log("ERROR", str(exc))
        return 1
    log("SUCCESS", f"Cleaned up: {describe(released)}")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    show_config(parse_build_config())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kvmdisk", description="Build and boot the experiment VM disk image")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("preflight", help="Check that this host can build and run the VM").set_defaults(
        func=cmd_preflight
    )
    sub.add_parser("build", help="Build the disk image").set_defaults(func=cmd_build)

    run = sub.add_parser("run", help="Boot the disk image with QEMU")
    run.add_argument(
        "-w", "--writable", action="store_true", help="Write guest changes to the image (default: snapshot)"
    )
    kernel = run.add_mutually_exclusive_group()
    kernel.add_argument(
        "-v", "--vanilla", dest="kernel", action="store_const", const="vanilla", help="Boot the vanilla kernel"
    )
    kernel.add_argument(
        "-m", "--mosaic", dest="kernel", action="store_const", const="mosaic", help="Boot the mosaic kernel"
    )
    run.set_defaults(func=cmd_run, kernel="kdev")

    sub.add_parser("teardown", help="Release resources left by an interrupted build").set_defaults(
        func=cmd_teardown
    )
    sub.add_parser("config", help="Show the resolved build configuration").set_defaults(func=cmd_config)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ProvisionError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        traceback.print_exc()
        return 1
