"""Acquisition-ordered record of host resources held by a build."""

from __future__ import annotations

import dataclasses
import json
import tempfile
from pathlib import Path
from typing import Iterator, List, Optional

from kvmdisk.exceptions import ProvisionError
from kvmdisk.models import ResourceHandle, ResourceKind
from kvmdisk.utils import ensure_directory, log


class ResourceTracker:
    """Ordered sequence of acquired resources.

    A handle is appended the moment its resource exists on the host and
    removed only after its release succeeded. When ``state_file`` is set the
    sequence is written to disk after every change so a later ``teardown``
    invocation can finish an interrupted cleanup.
    """

    def __init__(self, state_file: Optional[Path] = None) -> None:
        self.state_file = state_file
        self._handles: List[ResourceHandle] = []

    @classmethod
    def load(cls, state_file: Path) -> "ResourceTracker":
        tracker = cls(state_file)
        if not state_file.exists():
            return tracker
        try:
            data = json.loads(state_file.read_text())
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            tracker._handles = [ResourceHandle.from_dict(item) for item in data.get("resources", [])]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise ProvisionError(f"Cannot read resource state {state_file}: {exc}")
        return tracker

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[ResourceHandle]:
        return iter(list(self._handles))

    def handles(self) -> List[ResourceHandle]:
        return list(self._handles)

    def in_release_order(self) -> List[ResourceHandle]:
        """Last acquired first: children are released before their parents."""
        return list(reversed(self._handles))

    def get(self, kind: ResourceKind) -> Optional[ResourceHandle]:
        for handle in reversed(self._handles):
            if handle.kind == kind:
                return handle
        return None

    def holds(self, kind: ResourceKind) -> bool:
        return self.get(kind) is not None

    def acquire(self, kind: ResourceKind, path: Path, step: int) -> ResourceHandle:
        handle = ResourceHandle(kind=kind, path=Path(path), acquired_at=step)
        self._handles.append(handle)
        log("DEBUG", f"Acquired {kind.value} {path} (step {step})")
        self._save()
        return handle

    def release(self, handle: ResourceHandle) -> None:
        for idx in range(len(self._handles) - 1, -1, -1):
            if self._handles[idx] == handle:
                del self._handles[idx]
                log("DEBUG", f"Released {handle.kind.value} {handle.path}")
                self._save()
                return
        raise ProvisionError(f"{handle.kind.value} {handle.path} is not tracked")

    def retain(self, kind: ResourceKind) -> None:
        """Mark the newest handle of ``kind`` as one that survives a failed run."""
        for idx in range(len(self._handles) - 1, -1, -1):
            if self._handles[idx].kind == kind:
                self._handles[idx] = dataclasses.replace(self._handles[idx], retain=True)
                self._save()
                return
        raise ProvisionError(f"No {kind.value} is tracked")

    def _save(self) -> None:
        if self.state_file is None:
            return
        if not self._handles:
            self.state_file.unlink(missing_ok=True)
            return
        ensure_directory(self.state_file.parent)
        payload = {"resources": [handle.to_dict() for handle in self._handles]}
        with tempfile.NamedTemporaryFile(
            "w", delete=False, dir=self.state_file.parent, suffix=".tmp"
        ) as tmp:
            json.dump(payload, tmp, indent=2)
            tmp_path = Path(tmp.name)
        tmp_path.replace(self.state_file)
