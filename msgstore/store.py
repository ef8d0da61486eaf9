# msgstore/store.py
# -*- coding: utf-8 -*-
from __future__ import annotations
import logging
from typing import Callable, List, Optional, Tuple, TypeVar

from stablemem.memory_manager import RegionFull, RegionManager
from . import record as codec
from .btree_map import BTreeMap
from .errors import CapacityExceeded
from .record import Record

logger = logging.getLogger("msgstore.store")

RECORD_REGION = 1

T = TypeVar("T")


class RecordStore:
    """
    有序映射 id -> Record，持久化在区域 1 的 B+ 树中：
      - get(id)      读出字节后解码
      - put(id, r)   先编码再写入；创建与更新共用，后写覆盖先写
      - remove(id)   先解码出旧记录，再物理删除
      - scan()       按 id 升序的完整快照
    每个修改操作都是一次原子提交；中途出错则回滚缓冲池中的未提交页并重新加载树头，
    异常继续向上抛出。后备文件写满（RegionFull）转成 CapacityExceeded，作为结果值返回给调用方。
    """

    def __init__(self, manager: RegionManager, region_id: int = RECORD_REGION,
                 leaf_capacity: int = 8, order: int = 64):
        self.manager = manager
        region = manager.open_region(region_id)
        fresh = region.size_bytes() == 0
        self.tree = BTreeMap(region, leaf_capacity=leaf_capacity, order=order,
                             max_value_size=codec.MAX_SIZE)
        if fresh:
            self.manager.commit()
            logger.info("initialized record map in region %d", region_id)

    # ---------- 读取 ----------
    def get(self, rid: int) -> Optional[Record]:
        raw = self.tree.get(rid)
        if raw is None:
            return None
        return codec.decode(raw)

    def scan(self) -> List[Tuple[int, Record]]:
        return [(k, codec.decode(v)) for k, v in self.tree.items()]

    def __len__(self) -> int:
        return len(self.tree)

    def __contains__(self, rid: int) -> bool:
        return rid in self.tree

    # ---------- 修改 ----------
    def put(self, rid: int, rec: Record) -> None:
        payload = codec.encode(rec)   # 超长/非法字段在写入前就失败，不触碰存储
        self._mutate(lambda: self.tree.insert(rid, payload))
        logger.debug("put id=%d (%d bytes)", rid, len(payload))

    def remove(self, rid: int) -> Optional[Record]:
        raw = self.tree.get(rid)
        if raw is None:
            return None
        old = codec.decode(raw)
        self._mutate(lambda: self.tree.remove(rid))
        logger.debug("removed id=%d", rid)
        return old

    def _mutate(self, fn: Callable[[], T]) -> T:
        try:
            result = fn()
            self.manager.commit()
        except RegionFull as e:
            self._undo()
            raise CapacityExceeded(str(e)) from e
        except BaseException:
            self._undo()
            raise
        return result

    def _undo(self) -> None:
        self.manager.rollback()
        self.tree.reload()
