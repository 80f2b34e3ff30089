"""Disk image provisioning pipeline for kvmdisk."""

from __future__ import annotations

import contextlib
import signal
import threading
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

from kvmdisk.cleanup import CleanupManager, describe
from kvmdisk.constants import HOST_DEVICE_DIR
from kvmdisk.exceptions import Interrupted, ProvisionError, TeardownError
from kvmdisk.models import (
    BuildConfig,
    CommandResult,
    PipelineStep,
    ProvisioningOutcome,
    ResourceHandle,
    ResourceKind,
    TeardownMode,
)
from kvmdisk.runner import Argv, CommandRunner, chroot_argv
from kvmdisk.tracker import ResourceTracker
from kvmdisk.utils import guest_path, hash_password, log, make_private_mount_point

_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)
_MOUNT_KINDS = (ResourceKind.LOOP_MOUNT, ResourceKind.BIND_MOUNT)
_FSTAB_SWAP_LINE = "/swapfile none swap sw 0 0"


@contextlib.contextmanager
def _signal_handlers(handler: Callable[[int, object], None]) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = {signum: signal.signal(signum, handler) for signum in _HANDLED_SIGNALS}
    try:
        yield
    finally:
        for signum, prev in previous.items():
            signal.signal(signum, prev)


def _raise_interrupted(signum, frame) -> None:
    raise Interrupted(signum)


def _until_failure(results: Iterable[CommandResult]) -> CommandResult:
    """Consume lazily produced results, stopping at the first failing command."""
    last = CommandResult(argv=(), exit_code=0)
    for result in results:
        if not result.ok:
            return result
        last = result
    return last


def guest_commands(cfg: BuildConfig, password_hash: str) -> List[List[str]]:
    """Commands run inside the guest tree, in order, to configure the image."""
    user = cfg.guest_user
    home = f"/home/{user}"
    commands: List[List[str]] = [
        ["bash", "-c", "rm -f /etc/init/tty[2-8].conf"],
        ["sed", "-i", r"s:/dev/tty\[1-[2-8]\]:/dev/tty1:g", "/etc/default/console-setup"],
        ["adduser", user, "--disabled-password", "--gecos", ""],
        ["usermod", "-p", password_hash, user],
        [
            "sed",
            "-i",
            f"s|^ExecStart.*$|ExecStart=-/sbin/agetty --noissue --autologin {user} %I $TERM|g",
            "/lib/systemd/system/getty@.service",
        ],
        ["sed", "-i", f"/User privilege specification/a {user}\\tALL=(ALL) NOPASSWD:ALL", "/etc/sudoers"],
        ["chown", "-R", f"{user}:{user}", home],
        ["apt-get", "update"],
    ]
    if cfg.packages:
        commands.append(["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "--yes"] + cfg.packages)
    commands += [
        ["fallocate", "-l", cfg.swap_size, "/swapfile"],
        ["chmod", "600", "/swapfile"],
        ["mkswap", "/swapfile"],
        ["bash", "-c", f"echo '{_FSTAB_SWAP_LINE}' >> /etc/fstab"],
    ]
    return commands


class ProvisioningPipeline:
    """Build a bootable raw disk image in a fixed sequence of steps.

    Every resource a step acquires is recorded in the tracker as soon as it
    exists. A failing step (or SIGINT/SIGTERM) stops the sequence and unwinds
    exactly what was recorded; a final teardown runs after every build so no
    mount outlives the process.
    """

    def __init__(
        self,
        cfg: BuildConfig,
        runner: Optional[CommandRunner] = None,
        cleanup: Optional[CleanupManager] = None,
        tracker: Optional[ResourceTracker] = None,
    ) -> None:
        self.cfg = cfg
        self.runner = runner or CommandRunner()
        self.cleanup = cleanup or CleanupManager(self.runner)
        self.tracker = tracker if tracker is not None else ResourceTracker(cfg.state_file)
        self.mnt = cfg.mount_point
        self._step_index = 0
        self._step_description: Optional[str] = None
        self._step_produces: Optional[ResourceKind] = None
        self._deferred_signum: Optional[int] = None

    def steps(self) -> List[PipelineStep]:
        return [
            PipelineStep("Build workload binaries", self._build_workloads),
            PipelineStep("Allocate sparse disk image", self._create_disk, ResourceKind.DISK_FILE),
            PipelineStep("Format disk image", self._format_disk),
            PipelineStep("Loop-mount disk image", self._mount_disk, ResourceKind.LOOP_MOUNT),
            PipelineStep("Bootstrap base system", self._bootstrap),
            PipelineStep("Copy payload files", self._copy_payload),
            PipelineStep("Bind-mount host devices", self._bind_devices, ResourceKind.BIND_MOUNT),
            PipelineStep("Configure guest", self._configure_guest),
        ]

    def provision(self) -> ProvisioningOutcome:
        self._check_preconditions()
        failure: Optional[ProvisioningOutcome] = None
        interrupted = False
        try:
            with _signal_handlers(_raise_interrupted):
                failure = self._run_steps()
        except Interrupted as exc:
            interrupted = True
            name = signal.Signals(exc.signum).name
            log("ERROR", f"{name} received during step {self._step_index} ({self._step_description})")
            failure = ProvisioningOutcome(
                succeeded=False,
                failed_step=self._step_description,
                exit_code=128 + exc.signum,
            )
        with _signal_handlers(self._defer_signal):
            if interrupted:
                self._record_interrupted_mount()
            return self._finish(failure)

    def _defer_signal(self, signum, frame) -> None:
        log("WARN", f"{signal.Signals(signum).name} received during teardown; finishing cleanup first")
        if self._deferred_signum is None:
            self._deferred_signum = signum

    def _record_interrupted_mount(self) -> None:
        """Track a mount whose step was interrupted between the mount call and its recording."""
        kind = self._step_produces
        if kind not in _MOUNT_KINDS or self.tracker.holds(kind) or self.mnt is None:
            return
        path = self._resource_path(kind)
        if self.runner.execute(["mountpoint", "-q", path]).ok:
            log("WARN", f"{path} was mounted when the build was interrupted; releasing it")
            self._acquire(kind, path)

    def _check_preconditions(self) -> None:
        if self.cfg.state_file is not None and self.cfg.state_file.exists():
            leftover = ResourceTracker.load(self.cfg.state_file)
            if len(leftover):
                raise ProvisionError(
                    f"Resources from an earlier run are still recorded in {self.cfg.state_file}: "
                    f"{describe(leftover.in_release_order())}. Run 'kvmdisk teardown' first."
                )
        if self.mnt is not None and self.mnt.is_dir() and any(self.mnt.iterdir()):
            raise ProvisionError(f"Mount point {self.mnt} exists and is not empty")
        if self.cfg.disk_image.exists():
            log("WARN", f"{self.cfg.disk_image} exists and will be overwritten")

    def _run_steps(self) -> Optional[ProvisioningOutcome]:
        steps = self.steps()
        for index, step in enumerate(steps, start=1):
            self._step_index = index
            self._step_description = step.description
            self._step_produces = step.produces
            log("INFO", f"[{index}/{len(steps)}] {step.description}")
            result = step.action()
            if not result.ok:
                log("ERROR", f"Step {index} ({step.description}) failed [{result.command}]")
                if result.stderr.strip():
                    log("ERROR", result.stderr.strip().splitlines()[-1])
                return ProvisioningOutcome(
                    succeeded=False,
                    failed_step=step.description,
                    exit_code=result.exit_code if result.exit_code > 0 else 1,
                )
            if step.produces is not None:
                self._acquire(step.produces, self._resource_path(step.produces))
        return None

    def _finish(self, failure: Optional[ProvisioningOutcome]) -> ProvisioningOutcome:
        cleaned: List[ResourceHandle] = []
        if failure is not None:
            cleaned += self.cleanup.teardown(self.tracker, TeardownMode.PARTIAL)
        try:
            cleaned += self.cleanup.teardown(self.tracker, TeardownMode.FINAL)
        except TeardownError as exc:
            log("ERROR", f"{exc}; remaining resources are recorded in {self.cfg.state_file}")
            if failure is None:
                failure = ProvisioningOutcome(succeeded=False, failed_step="teardown", exit_code=1)

        if self._deferred_signum is not None:
            name = signal.Signals(self._deferred_signum).name
            log("ERROR", f"{name} received during teardown")
            failure = failure or ProvisioningOutcome(succeeded=False, failed_step="teardown")
            failure.exit_code = 128 + self._deferred_signum

        if cleaned:
            log("INFO", f"Cleaned up: {describe(cleaned)}")
        outcome = failure or ProvisioningOutcome(succeeded=True)
        outcome.cleaned_up = cleaned
        if outcome.succeeded:
            log("SUCCESS", f"Disk image ready: {self.cfg.disk_image}")
        else:
            log("ERROR", f"Build failed at '{outcome.failed_step}' (exit code {outcome.exit_code})")
        return outcome

    def _resource_path(self, kind: ResourceKind) -> Path:
        if kind is ResourceKind.DISK_FILE:
            return self.cfg.disk_image
        if kind is ResourceKind.BIND_MOUNT:
            return guest_path(self.mnt, HOST_DEVICE_DIR)
        return self.mnt

    def _acquire(self, kind: ResourceKind, path: Path) -> ResourceHandle:
        return self.tracker.acquire(kind, path, self._step_index)

    def _run(self, argv: Argv, privileged: bool = False, stream: bool = False) -> CommandResult:
        return self.runner.execute(argv, privileged=privileged, stream=stream)

    def _chroot(self, argv: Argv, stream: bool = False) -> CommandResult:
        return self._run(chroot_argv(self.mnt, argv), privileged=True, stream=stream)

    # Step actions

    def _build_workloads(self) -> CommandResult:
        return _until_failure(
            self._run(["make", "-C", self.cfg.payload_dir / w.dir, w.target], stream=True)
            for w in self.cfg.workloads
        )

    def _create_disk(self) -> CommandResult:
        return self._run(["qemu-img", "create", "-f", "raw", self.cfg.disk_image, self.cfg.disk_size])

    def _format_disk(self) -> CommandResult:
        return self._run([f"mkfs.{self.cfg.filesystem}", "-F", self.cfg.disk_image])

    def _mount_disk(self) -> CommandResult:
        if self.mnt is None:
            try:
                self.mnt = make_private_mount_point()
            except OSError as exc:
                return CommandResult(("mkdtemp",), 1, "", str(exc))
            self._acquire(ResourceKind.MOUNT_DIR, self.mnt)
        else:
            existed = self.mnt.exists()
            result = self._run(["mkdir", "-p", self.mnt], privileged=True)
            if not result.ok:
                return result
            if not existed:
                self._acquire(ResourceKind.MOUNT_DIR, self.mnt)
        return self._run(["mount", "-o", "loop", self.cfg.disk_image, self.mnt], privileged=True)

    def _bootstrap(self) -> CommandResult:
        argv = ["debootstrap", "--arch", self.cfg.arch, self.cfg.suite, str(self.mnt)]
        if self.cfg.mirror:
            argv.append(self.cfg.mirror)
        result = self._run(argv, privileged=True, stream=True)
        if result.ok:
            # The image now holds a bootable tree; later failures keep it.
            self.tracker.retain(ResourceKind.DISK_FILE)
        return result

    def _payload_copies(self) -> Iterator[CommandResult]:
        payload = self.cfg.payload_dir
        home = guest_path(self.mnt, f"/home/{self.cfg.guest_user}")
        yield self._run(["mkdir", "-p", home], privileged=True)

        for workload in self.cfg.workloads:
            binary = payload / workload.dir / workload.binary
            yield self._run(["cp", binary, guest_path(self.mnt, "/usr/local/bin/")], privileged=True)

        for pattern, target in (
            ("bootscripts/*.sh", guest_path(self.mnt, "/etc/profile.d/")),
            ("scripts/*.sh", home),
            ("scripts/*.py", home),
        ):
            files = sorted(payload.glob(pattern))
            if not files:
                log("WARN", f"No payload files match {payload / pattern}; skipping")
                continue
            yield self._run(["cp", *files, target], privileged=True)

        apps = payload / "apps"
        if apps.is_dir():
            yield self._run(["cp", "-r", apps, home], privileged=True)
        else:
            log("WARN", f"{apps} not found; skipping")

    def _copy_payload(self) -> CommandResult:
        return _until_failure(self._payload_copies())

    def _bind_devices(self) -> CommandResult:
        target = guest_path(self.mnt, HOST_DEVICE_DIR)
        result = self._run(["mkdir", "-p", target], privileged=True)
        if not result.ok:
            return result
        return self._run(["mount", "--bind", HOST_DEVICE_DIR, target], privileged=True)

    def _configure_guest(self) -> CommandResult:
        self._acquire(ResourceKind.CHROOT_CONTEXT, self.mnt)
        commands = guest_commands(self.cfg, hash_password(self.cfg.guest_password))
        return _until_failure(
            self._chroot(argv, stream=argv[0] in ("apt-get", "env")) for argv in commands
        )
