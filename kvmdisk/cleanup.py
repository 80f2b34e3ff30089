"""Teardown of resources acquired while building a disk image."""

from __future__ import annotations

from typing import List

from kvmdisk.exceptions import TeardownError
from kvmdisk.models import ResourceHandle, ResourceKind, TeardownMode
from kvmdisk.runner import CommandRunner
from kvmdisk.tracker import ResourceTracker
from kvmdisk.utils import log

_MOUNT_KINDS = (ResourceKind.LOOP_MOUNT, ResourceKind.BIND_MOUNT)


def describe(handles: List[ResourceHandle]) -> str:
    return ", ".join(f"{h.kind.value} {h.path}" for h in handles) or "nothing"


class CleanupManager:
    """Release tracked resources, newest first.

    ``partial`` mode runs after a failed step: every release is attempted once
    and failures are logged, never raised, so the step that failed stays the
    reported cause. ``final`` mode runs after every build: it skips what is
    already gone, escalates busy unmounts to a lazy detach and raises
    TeardownError only if that escalation fails too.
    """

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def teardown(self, tracker: ResourceTracker, mode: TeardownMode) -> List[ResourceHandle]:
        released: List[ResourceHandle] = []
        remaining: List[ResourceHandle] = []
        if len(tracker):
            log("INFO", f"Tearing down ({mode.value}): {describe(tracker.in_release_order())}")
        for handle in tracker.in_release_order():
            if self._release(tracker, handle, mode):
                tracker.release(handle)
                released.append(handle)
            else:
                remaining.append(handle)

        if remaining:
            message = f"Could not release {describe(remaining)}"
            if mode is TeardownMode.FINAL:
                raise TeardownError(message, remaining)
            log("WARN", f"{message}; final teardown will retry")
        return released

    def _release(self, tracker: ResourceTracker, handle: ResourceHandle, mode: TeardownMode) -> bool:
        if handle.kind is ResourceKind.CHROOT_CONTEXT:
            self.terminate_users(handle)
            return True
        if handle.kind in _MOUNT_KINDS:
            if self._has_nested_mount(tracker, handle):
                log("WARN", f"Not unmounting {handle.path}: a mount beneath it is still held")
                return False
            return self._unmount(handle, mode)
        if handle.kind is ResourceKind.MOUNT_DIR:
            return self._remove_mount_dir(tracker, handle)
        if handle.kind is ResourceKind.DISK_FILE:
            return self._release_disk(tracker, handle)
        log("WARN", f"Unknown resource kind {handle.kind}")
        return False

    def terminate_users(self, handle: ResourceHandle) -> None:
        """Kill processes still using the guest tree so its mounts are not busy."""
        # fuser exits non-zero when nothing holds the path
        self.runner.execute(["fuser", "-k", handle.path], privileged=True)

    def is_mounted(self, handle: ResourceHandle) -> bool:
        return self.runner.execute(["mountpoint", "-q", handle.path]).ok

    def _unmount(self, handle: ResourceHandle, mode: TeardownMode) -> bool:
        if not self.is_mounted(handle):
            log("DEBUG", f"{handle.path} is not mounted")
            return True
        result = self.runner.execute(["umount", handle.path], privileged=True)
        if result.ok:
            return True
        reason = result.stderr.strip() or f"exit code {result.exit_code}"
        if mode is TeardownMode.PARTIAL:
            log("WARN", f"Failed to unmount {handle.path}: {reason}")
            return False
        log("WARN", f"{handle.path} busy ({reason}); detaching lazily")
        lazy = self.runner.execute(["umount", "-l", handle.path], privileged=True)
        if not lazy.ok:
            log("ERROR", f"Lazy unmount of {handle.path} failed: {lazy.stderr.strip()}")
        return lazy.ok

    def _remove_mount_dir(self, tracker: ResourceTracker, handle: ResourceHandle) -> bool:
        if any(tracker.holds(kind) for kind in _MOUNT_KINDS) or self.is_mounted(handle):
            log("WARN", f"Leaving {handle.path} in place: still mounted")
            return False
        result = self.runner.execute(["rm", "-rf", "--one-file-system", handle.path], privileged=True)
        if not result.ok:
            log("WARN", f"Failed to remove {handle.path}: {result.stderr.strip()}")
        return result.ok

    def _release_disk(self, tracker: ResourceTracker, handle: ResourceHandle) -> bool:
        if tracker.holds(ResourceKind.LOOP_MOUNT):
            log("WARN", f"Not releasing {handle.path}: it is still loop-mounted")
            return False
        if handle.retain:
            log("INFO", f"Keeping disk image {handle.path}")
            return True
        result = self.runner.execute(["rm", "-f", handle.path])
        if result.ok:
            log("INFO", f"Deleted incomplete disk image {handle.path}")
        else:
            log("WARN", f"Failed to delete {handle.path}: {result.stderr.strip()}")
        return result.ok

    @staticmethod
    def _has_nested_mount(tracker: ResourceTracker, handle: ResourceHandle) -> bool:
        for other in tracker:
            if other is handle or other.kind not in _MOUNT_KINDS:
                continue
            if other.path != handle.path and handle.path in other.path.parents:
                return True
        return False
