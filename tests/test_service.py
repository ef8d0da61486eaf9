# -*- coding: utf-8 -*-
"""
CRUD 服务测试：完整场景、NotFound 不改动存储、id 永不复用、重启持久、并发调用串行化
"""
import itertools
import threading

import pytest

from msgstore import api
from msgstore.context import StoreConfig, StoreContext
from msgstore.errors import AllocatorFailure
from msgstore.record import RecordPayload
from msgstore.service import LIST_OK_LOG, CrudService


def _open(path):
    ctx = StoreContext.open(StoreConfig(path=path))
    ticks = itertools.count(1_000)
    return ctx, CrudService(ctx, clock=lambda: next(ticks))


@pytest.fixture
def store_path(tmp_path):
    return str(tmp_path / "data" / "messages.msm")


@pytest.fixture
def svc(store_path):
    ctx, s = _open(store_path)
    yield s
    ctx.close()


def _payload(title="A", body="B", url="U"):
    return RecordPayload(title=title, body=body, attachment_url=url)


def test_scenario(svc):
    r0 = svc.add(_payload()).unwrap()
    assert (r0.id, r0.title, r0.body, r0.attachment_url, r0.updated_at) == (0, "A", "B", "U", None)
    r1 = svc.add(_payload()).unwrap()
    assert r1.id == 1

    up = svc.update(0, _payload(title="C"))
    assert up.is_ok
    assert up.value.id == 0
    assert up.value.title == "C"
    assert up.value.created_at == r0.created_at
    assert up.value.updated_at is not None and up.value.updated_at > r0.created_at
    assert svc.get(0).unwrap() == up.value

    gone = svc.delete(1)
    assert gone.unwrap() == r1
    res = svc.get(1)
    assert not res.is_ok
    assert res.error.kind == "NotFound"
    assert res.error.message == "a message with id=1 not found"


def test_update_on_absent_id_leaves_store_unchanged(svc):
    svc.add(_payload())
    before = svc.ctx.records.scan()
    res = svc.update(42, _payload(title="nope"))
    assert res.error.kind == "NotFound"
    assert res.error.message == "couldn't update a message with id=42. message not found"
    assert svc.ctx.records.scan() == before


def test_delete_absent_id(svc):
    res = svc.delete(3)
    assert res.error.kind == "NotFound"
    assert "couldn't delete message of id=3" in res.error.message


def test_list_after_adds_and_deletes(svc):
    empty = svc.list()
    assert empty.data == [] and empty.error is None and empty.logs == [LIST_OK_LOG]

    for i in range(30):
        svc.add(_payload(title=f"t{i}"))
    for i in range(0, 30, 3):
        assert svc.delete(i).is_ok
    resp = svc.list()
    ids = [r.id for r in resp.data]
    assert len(ids) == 20
    assert ids == sorted(ids) and len(set(ids)) == len(ids)
    assert resp.logs == [LIST_OK_LOG]


def test_deleted_ids_are_never_reused(svc):
    for _ in range(3):
        svc.add(_payload())
    svc.delete(2)
    assert svc.add(_payload()).unwrap().id == 3
    assert svc.ctx.ids.current() == 4


def test_oversized_payload_returns_error_and_burns_the_id(svc):
    res = svc.add(_payload(body="x" * 2000))
    assert res.error.kind == "CapacityExceeded"
    assert len(svc.ctx.records) == 0
    assert svc.add(_payload()).unwrap().id == 1

    res = svc.update(1, _payload(body="y" * 2000))
    assert res.error.kind == "CapacityExceeded"
    assert svc.get(1).unwrap().body == "B"


def test_corrupt_record_bytes_are_reported_not_raised(svc):
    svc.add(_payload())
    svc.ctx.records.tree.insert(7, b"garbage")
    svc.ctx.manager.commit()
    assert svc.get(7).error.kind == "SerializationError"
    resp = svc.list()
    assert resp.data is None
    assert resp.error.kind == "SerializationError"


def test_allocator_failure_propagates(svc, monkeypatch):
    def boom():
        raise AllocatorFailure("cannot persist id counter")

    monkeypatch.setattr(svc.ctx.ids, "allocate_next", boom)
    with pytest.raises(AllocatorFailure):
        svc.add(_payload())


def test_state_survives_restart(store_path):
    ctx, s = _open(store_path)
    a = s.add(_payload(title="first")).unwrap()
    b = s.add(_payload(title="second")).unwrap()
    s.update(a.id, _payload(title="first!"))
    s.delete(b.id)
    ctx.close()

    ctx, s = _open(store_path)
    try:
        assert [r.title for r in s.list().data] == ["first!"]
        assert s.get(a.id).unwrap().updated_at is not None
        assert s.add(_payload()).unwrap().id == 2
    finally:
        ctx.close()


def test_concurrent_adds_are_serialized(svc):
    def worker():
        for _ in range(10):
            assert svc.add(_payload()).is_ok

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    ids = [r.id for r in svc.list().data]
    assert ids == list(range(40))


def test_entry_points(svc):
    rec = api.add_message(svc, _payload())
    assert rec is not None and rec.id == 0
    assert api.add_message(svc, _payload(body="z" * 5000)) is None
    assert api.get_message(svc, 0).unwrap() == rec
    assert api.get_all_messages(svc).data == [rec]
    assert api.update_message(svc, 0, _payload(title="T")).unwrap().title == "T"
    assert api.delete_message(svc, 0).is_ok
    assert api.get_message(svc, 0).error.kind == "NotFound"


def test_full_backing_store_returns_capacity_error(tmp_path):
    """后备文件写满：add 返回 CapacityExceeded，已有数据不受影响，原地更新照常可用"""
    ctx = StoreContext.open(StoreConfig(path=str(tmp_path / "small.msm"), page_size=512, bucket_pages=1))
    try:
        svc = CrudService(ctx)
        stored = []
        failed = None
        for _ in range(1000):
            res = svc.add(_payload())
            if not res.is_ok:
                failed = res
                break
            stored.append(res.value.id)
        assert failed is not None
        assert failed.error.kind == "CapacityExceeded"
        assert "backing store is full" in failed.error.message

        assert [r.id for r in svc.list().data] == stored
        ctx.records.tree.check()
        assert ctx.ids.current() == len(stored) + 1
        assert svc.update(stored[0], _payload(title="still writable")).is_ok
        assert svc.get(stored[0]).unwrap().title == "still writable"
    finally:
        ctx.close()


def test_failed_mutation_rolls_back_tree(svc, monkeypatch):
    """树已在缓冲池中改了一半时出错：回滚后快照不变，树结构仍然合法，下一个 id 继续可用"""
    for i in range(20):
        svc.add(_payload(title=f"t{i}"))
    tree = svc.ctx.records.tree
    before = svc.ctx.records.scan()
    real_insert = tree.insert

    def insert_then_fail(key, value):
        real_insert(key, value)
        raise OSError("disk write error")

    monkeypatch.setattr(tree, "insert", insert_then_fail)
    with pytest.raises(OSError):
        svc.add(_payload(title="lost"))
    monkeypatch.undo()

    assert svc.ctx.records.scan() == before
    assert len(tree) == 20
    tree.check()
    assert svc.add(_payload(title="next")).unwrap().id == 21
