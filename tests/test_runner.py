"""Tests for kvmdisk.runner module."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

from kvmdisk.runner import CommandRunner, chroot_argv


def _completed(cmd, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


class TestExecute:
    def test_privileged_gets_sudo_prefix(self):
        runner = CommandRunner(use_sudo=True)
        with patch("kvmdisk.runner.subprocess.run", return_value=_completed([])) as mock_run:
            result = runner.execute(["mount", Path("/mnt")], privileged=True)
        assert mock_run.call_args[0][0] == ["sudo", "mount", "/mnt"]
        assert result.argv == ("mount", "/mnt")
        assert result.ok

    def test_unprivileged_has_no_prefix(self):
        runner = CommandRunner(use_sudo=True)
        with patch("kvmdisk.runner.subprocess.run", return_value=_completed([])) as mock_run:
            runner.execute(["qemu-img", "create"])
        assert mock_run.call_args[0][0] == ["qemu-img", "create"]

    def test_root_skips_sudo(self):
        runner = CommandRunner(use_sudo=False)
        with patch("kvmdisk.runner.subprocess.run", return_value=_completed([])) as mock_run:
            runner.execute(["umount", "/mnt"], privileged=True)
        assert mock_run.call_args[0][0] == ["umount", "/mnt"]

    def test_default_follows_effective_uid(self):
        with patch("kvmdisk.runner.os.geteuid", return_value=0):
            assert CommandRunner().use_sudo is False
        with patch("kvmdisk.runner.os.geteuid", return_value=1000):
            assert CommandRunner().use_sudo is True

    def test_failure_is_reported_not_raised(self):
        runner = CommandRunner(use_sudo=False)
        proc = _completed([], returncode=32, stderr="umount: /mnt: target is busy.\n")
        with patch("kvmdisk.runner.subprocess.run", return_value=proc):
            result = runner.execute(["umount", "/mnt"])
        assert result.exit_code == 32
        assert not result.ok
        assert "busy" in result.stderr

    def test_missing_executable_is_127(self):
        runner = CommandRunner(use_sudo=False)
        with patch("kvmdisk.runner.subprocess.run", side_effect=FileNotFoundError("no such file")):
            result = runner.execute(["debootstrap"])
        assert result.exit_code == 127
        assert "no such file" in result.stderr

    def test_streamed_output_is_not_captured(self):
        runner = CommandRunner(use_sudo=False)
        with patch("kvmdisk.runner.subprocess.run", return_value=_completed([], stdout=None)) as mock_run:
            result = runner.execute(["debootstrap"], stream=True)
        assert mock_run.call_args[1]["capture_output"] is False
        assert result.stdout == ""

    def test_env_extends_environment(self, monkeypatch):
        monkeypatch.setenv("KVMDISK_TEST_KEEP", "1")
        runner = CommandRunner(use_sudo=False)
        with patch("kvmdisk.runner.subprocess.run", return_value=_completed([])) as mock_run:
            runner.execute(["apt-get"], env={"DEBIAN_FRONTEND": "noninteractive"})
        env = mock_run.call_args[1]["env"]
        assert env["DEBIAN_FRONTEND"] == "noninteractive"
        assert env["KVMDISK_TEST_KEEP"] == "1"


def test_chroot_argv():
    assert chroot_argv(Path("/mnt"), ["apt-get", "update"]) == ["chroot", "/mnt", "apt-get", "update"]
