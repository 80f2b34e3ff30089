"""Global constants and path configuration for kvmdisk."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path(os.environ.get("KVMDISK_CONFIG", "kvmdisk.yaml"))

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

GIB = 1024**3

# Preflight thresholds
MIN_FREE_DISK_BYTES = 15 * GIB
MIN_AVAILABLE_MEMORY_KB = 12 * 1024 * 1024

REQUIRED_TOOLS = ("qemu-img", "qemu-system-x86_64", "debootstrap", "sudo")

KVM_DEVICE = Path("/dev/kvm")
MEMINFO_PATH = Path("/proc/meminfo")
CPUINFO_PATH = Path("/proc/cpuinfo")
VIRT_FLAGS_RE = re.compile(r"\b(vmx|svm)\b", re.IGNORECASE)

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
GUEST_USER_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")

# Build defaults
DEFAULT_DISK_IMAGE = "disk.img"
DEFAULT_DISK_SIZE = "10G"
DEFAULT_FILESYSTEM = "ext4"
DEFAULT_SUITE = "focal"
DEFAULT_ARCH = "amd64"
DEFAULT_PAYLOAD_DIR = "vmfiles"
DEFAULT_GUEST_USER = "oscar"
DEFAULT_GUEST_PASSWORD = "oscar"
DEFAULT_SWAP_SIZE = "2G"
DEFAULT_PACKAGES = ("sysstat", "psmisc", "libgomp1", "screen")
DEFAULT_WORKLOADS = ({"dir": "BUSE", "target": "busexmp", "binary": "busexmp"},)
HOST_DEVICE_DIR = Path("/dev")
RESOURCE_STATE_SUFFIX = ".resources.json"
MOUNT_DIR_PREFIX = "kvmdisk-mnt-"

# Run defaults
DEFAULT_KERNEL_ROOT = "."
DEFAULT_RUN_MEMORY = "12G"
DEFAULT_RUN_CPUS = "2"
KERNEL_VARIANTS = {
    "kdev": "kdev",
    "vanilla": "vanila",
    "mosaic": "mosaic",
}
KERNEL_IMAGE_RELPATH = Path("arch/x86_64/boot/bzImage")
QEMU_BINARY = "qemu-system-x86_64"
TCG_CPU_MODEL = "max"

_SENSITIVE_FIELDS = {"guest_password"}
