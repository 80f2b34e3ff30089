"""Shared test fixtures: a fake command runner and a default build config."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from kvmdisk.models import BuildConfig, WorkloadBuild

from fakes import FakeRunner


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def payload_dir(tmp_path) -> Path:
    payload = tmp_path / "vmfiles"
    (payload / "BUSE").mkdir(parents=True)
    (payload / "BUSE" / "busexmp").write_text("binary")
    (payload / "bootscripts").mkdir()
    (payload / "bootscripts" / "autorun.sh").write_text("#!/bin/sh\n")
    (payload / "scripts").mkdir()
    (payload / "scripts" / "run.sh").write_text("#!/bin/sh\n")
    (payload / "scripts" / "parse.py").write_text("print('ok')\n")
    (payload / "apps").mkdir()
    return payload


@pytest.fixture
def build_config(tmp_path, payload_dir) -> BuildConfig:
    """Return a BuildConfig whose paths all live under tmp_path."""
    return BuildConfig(
        disk_image=tmp_path / "disk.img",
        disk_size="10G",
        filesystem="ext4",
        suite="focal",
        arch="amd64",
        mirror=None,
        payload_dir=payload_dir,
        mount_point=tmp_path / "mnt",
        guest_user="oscar",
        guest_password="oscar",
        packages=["sysstat", "psmisc", "libgomp1", "screen"],
        swap_size="2G",
        workloads=[WorkloadBuild(dir="BUSE", target="busexmp", binary="busexmp")],
        state_file=tmp_path / "disk.img.resources.json",
    )


@pytest.fixture(autouse=True)
def fast_password_hash():
    with patch("kvmdisk.pipeline.hash_password", return_value="$2b$12$fakehash"):
        yield


# Environment variables that configuration parsing reads.
_CONFIG_ENV_VARS = [
    "KVMDISK_CONFIG",
    "DISK_IMAGE",
    "DISK_SIZE",
    "SWAP_SIZE",
    "FILESYSTEM",
    "SUITE",
    "DEBOOTSTRAP_ARCH",
    "DEBOOTSTRAP_MIRROR",
    "PAYLOAD_DIR",
    "MOUNT_POINT",
    "GUEST_USER",
    "GUEST_PASSWORD",
    "STATE_FILE",
    "PREFLIGHT_PATH",
    "MEMORY",
    "CPUS",
    "KERNEL_ROOT",
    "SERIAL",
    "SERIAL_APPEND",
    "REQUIRE_KVM",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear configuration variables and point the default config file at nothing."""
    for key in _CONFIG_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("kvmdisk.constants.DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
