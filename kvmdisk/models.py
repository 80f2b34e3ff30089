"""Data models for kvmdisk."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple


class CheckStatus(str, Enum):
    OK = "OK"
    MISSING = "MISSING"
    WARN = "WARN"


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: CheckStatus
    detail: str = ""


@dataclass(frozen=True)
class HostFacts:
    """Snapshot of the host metrics the preflight checks are evaluated against."""

    tools: Dict[str, Optional[str]]
    free_disk_bytes: int
    mem_available_kb: int
    kvm_device: bool
    cpu_virt_flags: bool


@dataclass
class PreflightReport:
    missing_tools: List[str] = field(default_factory=list)
    blocking_issues: List[str] = field(default_factory=list)
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 1 if self.blocking_issues else 0


class ResourceKind(str, Enum):
    DISK_FILE = "DiskFile"
    MOUNT_DIR = "MountDir"
    LOOP_MOUNT = "LoopMount"
    BIND_MOUNT = "BindMount"
    CHROOT_CONTEXT = "ChrootContext"


@dataclass(frozen=True)
class ResourceHandle:
    kind: ResourceKind
    path: Path
    acquired_at: int
    # Set once the image holds a bootstrapped tree; a failed run keeps it.
    retain: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "path": str(self.path),
            "acquired_at": self.acquired_at,
            "retain": self.retain,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ResourceHandle":
        return cls(
            kind=ResourceKind(data["kind"]),
            path=Path(str(data["path"])),
            acquired_at=int(data["acquired_at"]),  # type: ignore[arg-type]
            retain=bool(data.get("retain", False)),
        )


@dataclass(frozen=True)
class CommandResult:
    argv: Tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def command(self) -> str:
        return " ".join(self.argv)


@dataclass(frozen=True)
class PipelineStep:
    description: str
    action: Callable[[], CommandResult]
    produces: Optional[ResourceKind] = None


@dataclass
class ProvisioningOutcome:
    succeeded: bool
    failed_step: Optional[str] = None
    exit_code: int = 0
    cleaned_up: List[ResourceHandle] = field(default_factory=list)


class TeardownMode(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"


@dataclass
class WorkloadBuild:
    dir: str
    target: str
    binary: str


@dataclass
class BuildConfig:
    disk_image: Path
    disk_size: str
    filesystem: str
    suite: str
    arch: str
    mirror: Optional[str]
    payload_dir: Path
    mount_point: Optional[Path]
    guest_user: str
    guest_password: str
    packages: List[str]
    swap_size: str
    workloads: List[WorkloadBuild]
    state_file: Optional[Path] = None


@dataclass
class RunConfig:
    disk_image: Path
    kernel: Path
    memory: str
    cpus: int
    writable: bool
    serial_args: List[str]
    serial_append: str
    require_kvm: bool = False
