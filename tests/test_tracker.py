"""Tests for kvmdisk.tracker module."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from kvmdisk.exceptions import ProvisionError
from kvmdisk.models import ResourceHandle, ResourceKind
from kvmdisk.tracker import ResourceTracker


class TestOrdering:
    def test_release_order_is_reverse_of_acquisition(self):
        tracker = ResourceTracker()
        disk = tracker.acquire(ResourceKind.DISK_FILE, Path("disk.img"), 2)
        loop = tracker.acquire(ResourceKind.LOOP_MOUNT, Path("/mnt"), 4)
        bind = tracker.acquire(ResourceKind.BIND_MOUNT, Path("/mnt/dev"), 7)
        assert tracker.handles() == [disk, loop, bind]
        assert tracker.in_release_order() == [bind, loop, disk]

    def test_acquired_at_records_step(self):
        handle = ResourceTracker().acquire(ResourceKind.DISK_FILE, Path("disk.img"), 2)
        assert handle.acquired_at == 2
        assert handle.retain is False

    def test_release_removes_handle(self):
        tracker = ResourceTracker()
        handle = tracker.acquire(ResourceKind.DISK_FILE, Path("disk.img"), 2)
        tracker.release(handle)
        assert len(tracker) == 0
        assert tracker.get(ResourceKind.DISK_FILE) is None

    def test_release_untracked_raises(self):
        tracker = ResourceTracker()
        stray = ResourceHandle(ResourceKind.LOOP_MOUNT, Path("/mnt"), 4)
        with pytest.raises(ProvisionError, match="not tracked"):
            tracker.release(stray)


class TestRetain:
    def test_retain_marks_handle(self):
        tracker = ResourceTracker()
        tracker.acquire(ResourceKind.DISK_FILE, Path("disk.img"), 2)
        tracker.retain(ResourceKind.DISK_FILE)
        assert tracker.get(ResourceKind.DISK_FILE).retain is True

    def test_retain_missing_kind_raises(self):
        with pytest.raises(ProvisionError, match="No DiskFile"):
            ResourceTracker().retain(ResourceKind.DISK_FILE)


class TestPersistence:
    def test_state_written_after_each_change(self, tmp_path):
        state = tmp_path / "state.json"
        tracker = ResourceTracker(state)
        tracker.acquire(ResourceKind.DISK_FILE, tmp_path / "disk.img", 2)
        loop = tracker.acquire(ResourceKind.LOOP_MOUNT, tmp_path / "mnt", 4)
        data = json.loads(state.read_text())
        assert [item["kind"] for item in data["resources"]] == ["DiskFile", "LoopMount"]

        tracker.release(loop)
        data = json.loads(state.read_text())
        assert [item["kind"] for item in data["resources"]] == ["DiskFile"]

    def test_state_file_removed_when_empty(self, tmp_path):
        state = tmp_path / "state.json"
        tracker = ResourceTracker(state)
        handle = tracker.acquire(ResourceKind.DISK_FILE, tmp_path / "disk.img", 2)
        tracker.release(handle)
        assert not state.exists()

    def test_load_restores_sequence(self, tmp_path):
        state = tmp_path / "state.json"
        tracker = ResourceTracker(state)
        tracker.acquire(ResourceKind.DISK_FILE, tmp_path / "disk.img", 2)
        tracker.retain(ResourceKind.DISK_FILE)
        tracker.acquire(ResourceKind.LOOP_MOUNT, tmp_path / "mnt", 4)

        restored = ResourceTracker.load(state)
        assert restored.handles() == tracker.handles()
        assert restored.get(ResourceKind.DISK_FILE).retain is True

    def test_load_missing_file_is_empty(self, tmp_path):
        assert len(ResourceTracker.load(tmp_path / "missing.json")) == 0

    def test_load_corrupt_file_raises(self, tmp_path):
        state = tmp_path / "state.json"
        state.write_text("{not json")
        with pytest.raises(ProvisionError, match="Cannot read resource state"):
            ResourceTracker.load(state)

    def test_in_memory_tracker_writes_nothing(self, tmp_path):
        tracker = ResourceTracker()
        tracker.acquire(ResourceKind.DISK_FILE, tmp_path / "disk.img", 2)
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.parametrize("content", ["[]", '"resources"', '{"resources": ["LoopMount"]}'])
    def test_load_wrong_shape_raises(self, tmp_path, content):
        state = tmp_path / "state.json"
        state.write_text(content)
        with pytest.raises(ProvisionError, match="Cannot read resource state"):
            ResourceTracker.load(state)
