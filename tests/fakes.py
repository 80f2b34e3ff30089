"""Fake collaborators shared by the test modules."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, Tuple

from kvmdisk.models import CommandResult


class FakeRunner:
    """In-memory stand-in for CommandRunner.

    Keeps a set of mounted paths so ``mountpoint -q`` and ``umount`` behave
    like the host would, and lets a test fail any command via ``fail_on``.
    """

    def __init__(
        self,
        fail_on: Optional[Callable[[Tuple[str, ...]], int]] = None,
        busy: Iterable[Path] = (),
        lazy_fails: Iterable[Path] = (),
    ) -> None:
        self.calls: List[Tuple[str, ...]] = []
        self.privileged: List[bool] = []
        self.mounted: Set[str] = set()
        self.fail_on = fail_on
        self.busy = {str(p) for p in busy}
        self.lazy_fails = {str(p) for p in lazy_fails}

    def execute(self, argv, *, privileged=False, cwd=None, env=None, stream=False) -> CommandResult:
        cmd = tuple(str(part) for part in argv)
        self.calls.append(cmd)
        self.privileged.append(privileged)
        if self.fail_on is not None:
            code = self.fail_on(cmd)
            if code:
                return CommandResult(cmd, code, "", f"{cmd[0]}: simulated failure")

        prog = cmd[0]
        if prog == "mountpoint":
            return CommandResult(cmd, 0 if cmd[-1] in self.mounted else 32)
        if prog == "mount":
            self.mounted.add(cmd[-1])
        elif prog == "umount":
            path = cmd[-1]
            lazy = "-l" in cmd
            if lazy and path in self.lazy_fails:
                return CommandResult(cmd, 32, "", f"umount: {path}: lazy detach failed")
            if not lazy and path in self.busy:
                return CommandResult(cmd, 32, "", f"umount: {path}: target is busy.")
            if path not in self.mounted:
                return CommandResult(cmd, 32, "", f"umount: {path}: not mounted.")
            self.mounted.discard(path)
        return CommandResult(cmd, 0)

    def commands(self, prog: str) -> List[Tuple[str, ...]]:
        return [c for c in self.calls if c[0] == prog]

    def index(self, cmd: Tuple[str, ...]) -> int:
        return self.calls.index(tuple(str(part) for part in cmd))


def fail_when(predicate: Callable[[Tuple[str, ...]], bool], code: int = 1):
    """Build a ``fail_on`` callback failing every command matching ``predicate``."""
    return lambda cmd: code if predicate(cmd) else 0
