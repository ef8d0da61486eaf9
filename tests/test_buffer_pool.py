# -*- coding: utf-8 -*-
"""
缓冲池测试：命中统计、LRU/FIFO 替换、脏页不淘汰（no-steal）、回滚丢弃脏页
"""
import pytest

from stablemem.buffer_pool import BufferPool
from stablemem.pager import Pager


@pytest.fixture
def pager(tmp_path):
    p = Pager(str(tmp_path / "pages.bin"), page_size=512)
    for i in range(4):
        p.write_page(i, bytes([i]) * 512)
    yield p
    p.close()


def _touch(bp, pid):
    mv = bp.get_page(pid)
    first = mv[0]
    bp.unpin(pid)
    return first


def test_lru_evicts_least_recently_used(pager):
    bp = BufferPool(pager, capacity=2, policy="LRU")
    assert _touch(bp, 0) == 0
    assert _touch(bp, 1) == 1
    _touch(bp, 0)
    _touch(bp, 2)
    assert set(bp.frames) == {0, 2}
    s = bp.stats
    assert (s["hit"], s["miss"], s["evict"]) == (1, 3, 1)


def test_fifo_evicts_first_loaded(pager):
    bp = BufferPool(pager, capacity=2, policy="FIFO")
    _touch(bp, 0)
    _touch(bp, 1)
    _touch(bp, 0)
    _touch(bp, 2)
    assert set(bp.frames) == {1, 2}


def test_bad_policy_rejected(pager):
    with pytest.raises(ValueError):
        BufferPool(pager, capacity=2, policy="MRU")  # type: ignore[arg-type]


def test_dirty_pages_are_never_evicted(pager):
    """脏页在提交前既不写盘也不被淘汰，缓存临时超出容量"""
    bp = BufferPool(pager, capacity=1)
    mv = bp.get_page(0)
    mv[0] = 99
    bp.unpin(0, dirty=True)
    _touch(bp, 1)

    assert bp.frames[0].dirty
    assert pager.read_page(0)[0] == 0
    assert bp.stats_snapshot()["overflows"] == 1
    assert bp.dirty_pages() == {0: bytes([99]) + bytes(511)}

    bp.mark_clean()
    assert bp.dirty_pages() == {}
    assert len(bp.frames) == 1


def test_discard_dirty_rereads_from_disk(pager):
    bp = BufferPool(pager, capacity=4)
    mv = bp.get_page(3)
    mv[0] = 42
    bp.unpin(3, dirty=True)
    assert bp.discard_dirty() == 1
    assert _touch(bp, 3) == 3


def test_new_page_is_zeroed_and_dirty(pager):
    bp = BufferPool(pager, capacity=4)
    mv = bp.new_page(7)
    assert bytes(mv) == bytes(512)
    bp.unpin(7)
    assert 7 in bp.dirty_pages()


def test_unpin_without_get_page_fails(pager):
    bp = BufferPool(pager, capacity=2)
    with pytest.raises(KeyError):
        bp.unpin(1)


def test_file_log_captures_store_events(tmp_path):
    """开启日志落盘后，区域管理器的事件写入日志文件"""
    from stablemem.memory_manager import RegionManager

    log = tmp_path / "msgstore.log"
    BufferPool.reset_global_stats()
    BufferPool.enable_global_log(str(log))
    try:
        RegionManager(str(tmp_path / "x.msm")).close()
    finally:
        BufferPool.disable_global_log()
    assert "formatted new store" in log.read_text(encoding="utf-8")
    assert BufferPool.global_stats()["commits"] >= 1
