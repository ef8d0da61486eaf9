# -*- coding: utf-8 -*-
"""
区域管理器测试：幂等打开、重启稳定、区域之间互不干扰、头页损坏拒绝启动、日志重放
"""
import os

import pytest

from stablemem.journal import Journal, journal_path
from stablemem.memory_manager import MAX_REGIONS, RegionFull, RegionManager
from stablemem.pager import CorruptState


def _path(tmp_path):
    return str(tmp_path / "store.msm")


def test_open_region_is_idempotent(tmp_path):
    """同一个 id 总是返回同一个句柄，新区域大小为 0"""
    with RegionManager(_path(tmp_path)) as m:
        assert m.open_region(3) is m.open_region(3)
        assert m.open_region(3).size() == 0
        with pytest.raises(ValueError):
            m.open_region(MAX_REGIONS)


def test_region_bytes_survive_restart(tmp_path):
    """提交后的字节在重启后仍映射到同一区域"""
    path = _path(tmp_path)
    with RegionManager(path, bucket_pages=2) as m:
        r = m.open_region(1)
        assert r.grow(1) == 0
        r.write(10, b"hello")
        m.commit()

    with RegionManager(path) as m:
        r = m.open_region(1)
        assert r.size() == 1
        assert m.bucket_pages == 2
        assert r.read(10, 5) == b"hello"
        assert r.read(0, 10) == bytes(10)


def test_growth_does_not_corrupt_other_regions(tmp_path):
    """交错增长两个区域，各自的内容保持独立；跨页读写正确"""
    path = _path(tmp_path)
    with RegionManager(path, page_size=512, bucket_pages=1) as m:
        a, b = m.open_region(0), m.open_region(1)
        a.grow(1)
        a.write(0, b"A" * 512)
        b.grow(1)
        b.write(0, b"B" * 512)
        a.grow(2)
        a.write(512, b"a" * 1024)
        a.write(500, b"x" * 30)
        m.commit()
        assert m.buckets_of(0) == [0, 2, 3]
        assert m.buckets_of(1) == [1]

    with RegionManager(path, page_size=512) as m:
        a, b = m.open_region(0), m.open_region(1)
        assert b.read(0, 512) == b"B" * 512
        assert a.read(0, 500) == b"A" * 500
        assert a.read(500, 30) == b"x" * 30
        assert a.read(530, 1006) == b"a" * 1006
        assert a.size_bytes() == 1536


def test_out_of_bounds_access(tmp_path):
    with RegionManager(_path(tmp_path)) as m:
        r = m.open_region(0)
        with pytest.raises(IndexError):
            r.read(0, 1)
        r.ensure(100)
        assert r.size() == 1
        with pytest.raises(IndexError):
            r.write(4090, b"0123456789")


def test_rollback_discards_uncommitted_growth(tmp_path):
    """未提交的增长与写入在回滚或关闭后消失"""
    path = _path(tmp_path)
    with RegionManager(path) as m:
        r = m.open_region(2)
        r.grow(1)
        r.write(0, b"draft")
        m.rollback()
        assert r.size() == 0
        assert m.bucket_count() == 0

        r.grow(1)
        r.write(0, b"kept")
        m.commit()
        r.write(0, b"lost")

    with RegionManager(path) as m:
        assert m.open_region(2).read(0, 4) == b"kept"


def test_corrupted_header_refuses_to_open(tmp_path):
    """头页任何一个字节损坏都导致 CorruptState"""
    path = _path(tmp_path)
    with RegionManager(path) as m:
        m.open_region(0).grow(1)
        m.commit()
    with open(path, "r+b") as f:
        f.seek(100)
        byte = f.read(1)
        f.seek(100)
        f.write(bytes([byte[0] ^ 0xFF]))
    with pytest.raises(CorruptState):
        RegionManager(path)


def test_foreign_or_truncated_file_refuses_to_open(tmp_path):
    path = _path(tmp_path)
    with open(path, "wb") as f:
        f.write(b"not a store" * 1000)
    with pytest.raises(CorruptState):
        RegionManager(path)

    path2 = str(tmp_path / "other.msm")
    with RegionManager(path2):
        pass
    with pytest.raises(CorruptState):
        RegionManager(path2, page_size=8192)


def test_torn_journal_is_discarded(tmp_path):
    """写日志阶段崩溃：残缺日志被丢弃，数据保持上一次提交"""
    path = _path(tmp_path)
    with RegionManager(path) as m:
        r = m.open_region(0)
        r.grow(1)
        r.write(0, b"v1")
        m.commit()
    with open(journal_path(path), "wb") as f:
        f.write(b"MSJ1" + b"\x00" * 7)

    with RegionManager(path) as m:
        assert m.open_region(0).read(0, 2) == b"v1"
    assert not os.path.exists(journal_path(path))


def test_complete_journal_is_replayed(tmp_path, monkeypatch):
    """日志已落盘但原地写回前崩溃：重启时按日志重放"""
    path = _path(tmp_path)
    m = RegionManager(path)
    r = m.open_region(0)
    r.grow(1)
    m.commit()
    r.write(0, b"committed")

    def crash(self, pages):
        raise OSError("simulated crash")

    monkeypatch.setattr(Journal, "_apply", crash)
    with pytest.raises(OSError):
        m.commit()
    monkeypatch.undo()
    with pytest.raises(CorruptState):
        m.commit()
    m.pager._f.close()          # 进程“死亡”，不做任何清理
    assert os.path.exists(journal_path(path))

    with RegionManager(path) as m2:
        assert m2.open_region(0).read(0, 9) == b"committed"
    assert not os.path.exists(journal_path(path))


def test_growth_past_bucket_table_raises_region_full(tmp_path):
    """bucket 表用尽时增长失败，且不改动任何区域"""
    with RegionManager(_path(tmp_path), page_size=512, bucket_pages=1) as m:
        a, b = m.open_region(0), m.open_region(1)
        a.grow(m.max_buckets - 1)
        with pytest.raises(RegionFull):
            b.grow(2)
        assert b.size() == 0
        assert m.bucket_count() == m.max_buckets - 1
        b.grow(1)
        assert m.bucket_count() == m.max_buckets
        m.commit()
