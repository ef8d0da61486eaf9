# -*- coding: utf-8 -*-
"""
id 分配器测试：从 0 开始严格递增、重启后不重复、落盘失败即停止发号
"""
import struct

import pytest

from msgstore.errors import AllocatorFailure, CapacityExceeded, CorruptState
from msgstore.id_allocator import IdAllocator
from stablemem.memory_manager import RegionManager


def _path(tmp_path):
    return str(tmp_path / "ids.msm")


def test_ids_start_at_zero_and_strictly_increase(tmp_path):
    with RegionManager(_path(tmp_path)) as m:
        ids = IdAllocator(m)
        assert ids.current() == 0
        got = [ids.allocate_next() for _ in range(50)]
        assert got == list(range(50))
        assert ids.current() == 50


def test_counter_survives_restart(tmp_path):
    path = _path(tmp_path)
    with RegionManager(path) as m:
        ids = IdAllocator(m)
        for _ in range(3):
            ids.allocate_next()
    with RegionManager(path) as m:
        ids = IdAllocator(m)
        assert ids.current() == 3
        assert ids.allocate_next() == 3


def test_counter_is_durable_without_clean_close(tmp_path):
    """分配返回时计数器已经落盘：不关闭直接“崩溃”，重启后也不会再发出同一个 id"""
    path = _path(tmp_path)
    m = RegionManager(path)
    issued = IdAllocator(m).allocate_next()
    m.pager._f.close()
    with RegionManager(path) as m2:
        assert IdAllocator(m2).allocate_next() == issued + 1


def test_persistence_failure_is_fatal(tmp_path, monkeypatch):
    with RegionManager(_path(tmp_path)) as m:
        ids = IdAllocator(m)
        ids.allocate_next()

        def disk_full(self):
            raise OSError("disk full")

        monkeypatch.setattr(RegionManager, "commit", disk_full)
        with pytest.raises(AllocatorFailure):
            ids.allocate_next()
        monkeypatch.undo()

        assert ids.failed
        with pytest.raises(AllocatorFailure):
            ids.allocate_next()
        assert ids.current() == 1


def test_exhausted_counter(tmp_path):
    with RegionManager(_path(tmp_path)) as m:
        ids = IdAllocator(m)
        m.open_region(0).write(4, struct.pack("<Q", 2 ** 64 - 1))
        m.commit()
        with pytest.raises(CapacityExceeded):
            ids.allocate_next()


def test_foreign_region_contents_rejected(tmp_path):
    with RegionManager(_path(tmp_path)) as m:
        r = m.open_region(0)
        r.grow(1)
        r.write(0, b"XXXX")
        m.commit()
        with pytest.raises(CorruptState):
            IdAllocator(m)
