"""Host fact probes used by the preflight checks."""

from __future__ import annotations

import os
import shutil
import stat
from pathlib import Path
from typing import Dict, Iterable, Optional

from kvmdisk.constants import (
    CPUINFO_PATH,
    KVM_DEVICE,
    MEMINFO_PATH,
    REQUIRED_TOOLS,
    VIRT_FLAGS_RE,
)
from kvmdisk.models import HostFacts


def find_tools(tools: Iterable[str]) -> Dict[str, Optional[str]]:
    """Resolve each executable against PATH, preserving the requested order."""
    return {tool: shutil.which(tool) for tool in tools}


def get_available_disk_space(path: Path) -> int:
    return shutil.disk_usage(path).free


def get_available_memory_kb(meminfo: Path = MEMINFO_PATH) -> int:
    """Return MemAvailable from /proc/meminfo in kB (0 when unreadable)."""
    try:
        with open(meminfo) as f:
            for line in f:
                if line.startswith("MemAvailable:"):
                    return int(line.split()[1])
    except (OSError, ValueError, IndexError):
        return 0
    return 0


def kvm_device_present(device: Path = KVM_DEVICE) -> bool:
    """Return True if the KVM character device node exists."""
    try:
        return stat.S_ISCHR(os.stat(device).st_mode)
    except OSError:
        return False


def kvm_available(device: Path = KVM_DEVICE) -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    if not kvm_device_present(device):
        return False
    try:
        fd = os.open(device, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def has_cpu_virt_flags(cpuinfo: Path = CPUINFO_PATH) -> bool:
    """Return True if the CPU advertises vmx (Intel) or svm (AMD)."""
    try:
        with open(cpuinfo) as f:
            for line in f:
                if line.startswith("flags") and VIRT_FLAGS_RE.search(line):
                    return True
    except OSError:
        return False
    return False


def collect_host_facts(target: Path, tools: Iterable[str] = REQUIRED_TOOLS) -> HostFacts:
    return HostFacts(
        tools=find_tools(tools),
        free_disk_bytes=get_available_disk_space(target),
        mem_available_kb=get_available_memory_kb(),
        kvm_device=kvm_device_present(),
        cpu_virt_flags=has_cpu_virt_flags(),
    )
