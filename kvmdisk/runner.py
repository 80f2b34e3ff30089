"""External command execution for kvmdisk."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from kvmdisk.models import CommandResult
from kvmdisk.utils import log

Argv = Sequence[Union[str, Path]]


class CommandRunner:
    """Run host commands and report their status as a CommandResult.

    Privileged commands are prefixed with ``sudo`` unless the process already
    runs as root. Long-running commands (debootstrap, apt) are streamed to the
    terminal instead of captured so the operator can follow progress.
    """

    def __init__(self, use_sudo: Optional[bool] = None) -> None:
        if use_sudo is None:
            use_sudo = os.geteuid() != 0
        self.use_sudo = use_sudo

    def execute(
        self,
        argv: Argv,
        *,
        privileged: bool = False,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        stream: bool = False,
    ) -> CommandResult:
        cmd: List[str] = [str(part) for part in argv]
        if privileged and self.use_sudo:
            cmd = ["sudo"] + cmd
        log("DEBUG", f"Running: {' '.join(cmd)}")
        run_env = None
        if env:
            run_env = dict(os.environ)
            run_env.update(env)
        try:
            proc = subprocess.run(
                cmd,
                cwd=cwd,
                env=run_env,
                text=True,
                capture_output=not stream,
                check=False,
            )
        except (FileNotFoundError, PermissionError) as exc:
            return CommandResult(tuple(str(part) for part in argv), 127, "", str(exc))
        return CommandResult(
            argv=tuple(str(part) for part in argv),
            exit_code=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )


def chroot_argv(root: Path, argv: Argv) -> List[str]:
    """Wrap a guest command so it runs with its filesystem root at ``root``."""
    return ["chroot", str(root)] + [str(part) for part in argv]
