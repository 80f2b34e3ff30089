"""QEMU launcher for booting the provisioned disk image."""

from __future__ import annotations

import signal
import subprocess
from typing import List

from kvmdisk.constants import QEMU_BINARY, TCG_CPU_MODEL
from kvmdisk.exceptions import ProvisionError
from kvmdisk.host import kvm_available
from kvmdisk.models import RunConfig
from kvmdisk.utils import log


class QemuLauncher:
    def __init__(self, cfg: RunConfig) -> None:
        self.cfg = cfg
        self._kvm_available = kvm_available()

    def prepare(self) -> None:
        if not self.cfg.disk_image.is_file():
            raise ProvisionError(f"Disk image not found: {self.cfg.disk_image} (run 'kvmdisk build' first)")
        if not self.cfg.kernel.is_file():
            raise ProvisionError(f"Kernel image not found: {self.cfg.kernel}")
        if not self._kvm_available:
            if self.cfg.require_kvm:
                raise ProvisionError(
                    "REQUIRE_KVM=1 is set but /dev/kvm is not available. "
                    "Load the kvm modules or unset REQUIRE_KVM."
                )
            log("WARN", "/dev/kvm not available; falling back to TCG (10-50x slower)")

    def kernel_cmdline(self) -> str:
        console = " ".join(part for part in ("console=tty1 highres=off", self.cfg.serial_append) if part)
        return f"nokaslr {console} root=/dev/sda rw --no-log"

    def build_command(self) -> List[str]:
        cmd = [QEMU_BINARY]
        if self._kvm_available:
            cmd += ["-enable-kvm", "-cpu", "host"]
        else:
            cmd += ["-cpu", TCG_CPU_MODEL]
        cmd += [
            "-m",
            self.cfg.memory,
            "-smp",
            str(self.cfg.cpus),
            "-drive",
            f"file={self.cfg.disk_image},format=raw,if=ide",
            "-kernel",
            str(self.cfg.kernel),
            "-append",
            self.kernel_cmdline(),
            "-nographic",
        ]
        if not self.cfg.writable:
            cmd.append("-snapshot")
        cmd += self.cfg.serial_args
        return cmd

    def launch(self) -> int:
        """Boot the guest in the foreground and return QEMU's exit status."""
        self.prepare()
        cmd = self.build_command()
        mode = "read-write" if self.cfg.writable else "snapshot"
        log("INFO", f"Booting {self.cfg.kernel} with {self.cfg.disk_image} ({mode})")
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(cmd)
        except FileNotFoundError:
            raise ProvisionError(f"{QEMU_BINARY} not found in PATH")

        def _terminate(signum, frame):
            proc.terminate()

        prev_sigterm = signal.signal(signal.SIGTERM, _terminate)
        try:
            return proc.wait()
        except KeyboardInterrupt:
            proc.send_signal(signal.SIGINT)
            return proc.wait()
        finally:
            signal.signal(signal.SIGTERM, prev_sigterm)
