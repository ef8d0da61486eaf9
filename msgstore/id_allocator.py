# msgstore/id_allocator.py
# -*- coding: utf-8 -*-
from __future__ import annotations
import logging
import struct
from typing import Optional

from stablemem.memory_manager import RegionManager
from stablemem.pager import CorruptState
from .errors import AllocatorFailure, CapacityExceeded

logger = logging.getLogger("msgstore.id_allocator")

# 区域 0 的布局：tag(3s)='IDC' | version(uint8) | counter(uint64)
_CELL_FMT = "<3sBQ"
_CELL_SIZE = struct.calcsize(_CELL_FMT)
_TAG = b"IDC"
_VERSION = 1
_U64_MAX = 2 ** 64 - 1

COUNTER_REGION = 0


class IdAllocator:
    """
    单调 id 分配器：区域中只保存一个 64 位计数器。
      - current(): 只读当前值
      - allocate_next(): 读当前值 cur，持久化 cur+1（带 fsync 的原子提交），返回 cur
    因此第一个发出的 id 是 0。
    计数器落盘失败后分配器进入“失效”状态，之后每次调用都抛 AllocatorFailure，
    宁可停止服务也不冒险发出重复 id。
    """

    def __init__(self, manager: RegionManager, region_id: int = COUNTER_REGION):
        self.manager = manager
        self.region = manager.open_region(region_id)
        self._failure: Optional[BaseException] = None
        if self.region.size_bytes() == 0:
            self.region.ensure(_CELL_SIZE)
            self.region.write(0, struct.pack(_CELL_FMT, _TAG, _VERSION, 0))
            self.manager.commit()
            logger.info("initialized id counter in region %d", region_id)
        else:
            self._unpack()

    def _unpack(self) -> int:
        tag, version, value = struct.unpack(_CELL_FMT, self.region.read(0, _CELL_SIZE))
        if tag != _TAG or version != _VERSION:
            raise CorruptState(f"region {self.region.id} does not hold an id counter")
        return value

    @property
    def failed(self) -> bool:
        return self._failure is not None

    def current(self) -> int:
        return self._unpack()

    def allocate_next(self) -> int:
        if self._failure is not None:
            raise AllocatorFailure("id allocator is disabled after a persistence failure") from self._failure
        cur = self._unpack()
        if cur == _U64_MAX:
            raise CapacityExceeded("id space exhausted")
        try:
            self.region.write(0, struct.pack(_CELL_FMT, _TAG, _VERSION, cur + 1))
            self.manager.commit()
        except Exception as e:
            self._failure = e
            logger.critical("cannot persist id counter (%s); refusing further allocations", e)
            try:
                self.manager.rollback()
            except Exception:
                logger.exception("rollback after counter persistence failure also failed")
            raise AllocatorFailure(f"cannot persist id counter: {e}") from e
        logger.debug("allocated id %d", cur)
        return cur
