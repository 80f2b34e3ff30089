"""Utility functions for kvmdisk."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional, Union

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from kvmdisk.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    MOUNT_DIR_PREFIX,
    TRUTHY,
)
from kvmdisk.exceptions import ProvisionError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ProvisionError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ProvisionError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ProvisionError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_size(raw: str, name: str = "DISK_SIZE") -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ProvisionError(
            f"Invalid {name} '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '10G')"
        )
    return raw


def hash_password(password: str) -> str:
    """Generate a bcrypt hash suitable for usermod -p inside the guest."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def guest_path(root: Union[str, Path], inside: Union[str, Path]) -> Path:
    """Map an absolute path inside the guest tree onto the mounted root."""
    relative = str(inside).lstrip(os.path.sep)
    return Path(root) / relative if relative else Path(root)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def make_private_mount_point() -> Path:
    """Create a fresh mode 0700 directory under the temp dir to mount the image on."""
    return Path(tempfile.mkdtemp(prefix=MOUNT_DIR_PREFIX))
