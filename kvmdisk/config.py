"""Configuration loading and environment variable parsing for kvmdisk."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kvmdisk import constants
from kvmdisk.constants import (
    DEFAULT_ARCH,
    DEFAULT_DISK_IMAGE,
    DEFAULT_DISK_SIZE,
    DEFAULT_FILESYSTEM,
    DEFAULT_GUEST_PASSWORD,
    DEFAULT_GUEST_USER,
    DEFAULT_KERNEL_ROOT,
    DEFAULT_PACKAGES,
    DEFAULT_PAYLOAD_DIR,
    DEFAULT_RUN_CPUS,
    DEFAULT_RUN_MEMORY,
    DEFAULT_SUITE,
    DEFAULT_SWAP_SIZE,
    DEFAULT_WORKLOADS,
    GUEST_USER_RE,
    KERNEL_IMAGE_RELPATH,
    KERNEL_VARIANTS,
    RESOURCE_STATE_SUFFIX,
)
from kvmdisk.exceptions import ProvisionError
from kvmdisk.models import BuildConfig, RunConfig, WorkloadBuild
from kvmdisk.utils import get_env, get_env_bool, log, parse_int_env, validate_size

_SUPPORTED_FILESYSTEMS = {"ext2", "ext3", "ext4"}


def load_config_file(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the optional YAML build configuration; a missing default file is not an error."""
    explicit = config_path is not None
    if config_path is None:
        config_path = constants.DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if explicit:
            raise ProvisionError(f"Build config missing: {config_path}")
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ProvisionError(f"{config_path} contains invalid YAML: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ProvisionError(f"{config_path} must contain a YAML mapping, got {type(data).__name__}")
    return data


def _setting(file_cfg: Dict[str, Any], env_name: str, key: str, default: str) -> str:
    raw = get_env(env_name)
    if raw is not None and raw.strip():
        return raw.strip()
    value = file_cfg.get(key)
    if value is None:
        return default
    return str(value).strip() or default


def _parse_workloads(raw: Any) -> List[WorkloadBuild]:
    if raw is None:
        raw = DEFAULT_WORKLOADS
    if not isinstance(raw, (list, tuple)):
        raise ProvisionError("workloads must be a list of {dir, target, binary} entries")
    workloads: List[WorkloadBuild] = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict) or not entry.get("dir") or not entry.get("target"):
            raise ProvisionError(f"workloads[{idx}] needs at least 'dir' and 'target'")
        workloads.append(
            WorkloadBuild(
                dir=str(entry["dir"]),
                target=str(entry["target"]),
                binary=str(entry.get("binary") or entry["target"]),
            )
        )
    return workloads


def _parse_packages(raw: Any) -> List[str]:
    if raw is None:
        return list(DEFAULT_PACKAGES)
    if isinstance(raw, str):
        return raw.split()
    if not isinstance(raw, (list, tuple)):
        raise ProvisionError("packages must be a list of package names")
    return [str(pkg) for pkg in raw]


def parse_build_config(config_path: Optional[Path] = None) -> BuildConfig:
    file_cfg = load_config_file(config_path)

    disk_image = Path(_setting(file_cfg, "DISK_IMAGE", "disk_image", DEFAULT_DISK_IMAGE))
    disk_size = validate_size(_setting(file_cfg, "DISK_SIZE", "disk_size", DEFAULT_DISK_SIZE))
    swap_size = validate_size(_setting(file_cfg, "SWAP_SIZE", "swap_size", DEFAULT_SWAP_SIZE), "SWAP_SIZE")

    filesystem = _setting(file_cfg, "FILESYSTEM", "filesystem", DEFAULT_FILESYSTEM).lower()
    if filesystem not in _SUPPORTED_FILESYSTEMS:
        supported = ", ".join(sorted(_SUPPORTED_FILESYSTEMS))
        raise ProvisionError(f"Unsupported filesystem '{filesystem}'. Supported: {supported}")

    guest_user = _setting(file_cfg, "GUEST_USER", "guest_user", DEFAULT_GUEST_USER)
    if not GUEST_USER_RE.match(guest_user):
        raise ProvisionError(f"Invalid GUEST_USER '{guest_user}'")
    guest_password = _setting(file_cfg, "GUEST_PASSWORD", "guest_password", DEFAULT_GUEST_PASSWORD)

    mount_raw = _setting(file_cfg, "MOUNT_POINT", "mount_point", "")
    # Unset means the build creates a fresh private directory.
    mount_point = Path(mount_raw) if mount_raw else None
    if mount_point == Path("/"):
        raise ProvisionError("MOUNT_POINT must not be the host root")

    mirror = _setting(file_cfg, "DEBOOTSTRAP_MIRROR", "mirror", "") or None

    state_raw = _setting(file_cfg, "STATE_FILE", "state_file", "")
    state_file = Path(state_raw) if state_raw else disk_image.with_name(disk_image.name + RESOURCE_STATE_SUFFIX)

    return BuildConfig(
        disk_image=disk_image,
        disk_size=disk_size,
        filesystem=filesystem,
        suite=_setting(file_cfg, "SUITE", "suite", DEFAULT_SUITE),
        arch=_setting(file_cfg, "DEBOOTSTRAP_ARCH", "arch", DEFAULT_ARCH),
        mirror=mirror,
        payload_dir=Path(_setting(file_cfg, "PAYLOAD_DIR", "payload_dir", DEFAULT_PAYLOAD_DIR)),
        mount_point=mount_point,
        guest_user=guest_user,
        guest_password=guest_password,
        packages=_parse_packages(file_cfg.get("packages")),
        swap_size=swap_size,
        workloads=_parse_workloads(file_cfg.get("workloads")),
        state_file=state_file,
    )


def resolve_kernel(variant: str, kernel_root: Optional[Path] = None) -> Path:
    if variant not in KERNEL_VARIANTS:
        supported = ", ".join(sorted(KERNEL_VARIANTS))
        raise ProvisionError(f"Unknown kernel variant '{variant}'. Supported: {supported}")
    if kernel_root is None:
        kernel_root = Path(get_env("KERNEL_ROOT", DEFAULT_KERNEL_ROOT) or DEFAULT_KERNEL_ROOT)
    return kernel_root / KERNEL_VARIANTS[variant] / KERNEL_IMAGE_RELPATH


def parse_run_config(writable: bool = False, variant: str = "kdev") -> RunConfig:
    disk_image = Path(get_env("DISK_IMAGE", DEFAULT_DISK_IMAGE) or DEFAULT_DISK_IMAGE)
    memory = (get_env("MEMORY") or DEFAULT_RUN_MEMORY).strip()
    validate_size(memory, "MEMORY")
    cpus = parse_int_env("CPUS", DEFAULT_RUN_CPUS)
    serial_raw = get_env("SERIAL", "") or ""
    try:
        serial_args = shlex.split(serial_raw)
    except ValueError as exc:
        raise ProvisionError(f"SERIAL cannot be parsed: {exc}")
    if writable:
        log("WARN", "Read-write mode: guest changes are written to the disk image")
    return RunConfig(
        disk_image=disk_image,
        kernel=resolve_kernel(variant),
        memory=memory,
        cpus=cpus,
        writable=writable,
        serial_args=serial_args,
        serial_append=(get_env("SERIAL_APPEND", "") or "").strip(),
        require_kvm=get_env_bool("REQUIRE_KVM", False),
    )
