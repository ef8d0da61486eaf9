# msgstore/context.py
# -*- coding: utf-8 -*-
from __future__ import annotations
import os
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from stablemem.memory_manager import RegionManager
from .id_allocator import IdAllocator, COUNTER_REGION
from .store import RecordStore, RECORD_REGION

logger = logging.getLogger("msgstore.context")

DEFAULT_PATH = os.path.join("data", "messages.msm")


@dataclass
class StoreConfig:
    """
    存储配置：
      - path: 数据文件路径（日志文件为 <path>-journal）
      - page_size: 页大小；必须与已有文件一致
      - bucket_pages: 区域增长粒度（页数），只在新建文件时生效
      - bp_capacity: 缓冲池容量（帧数）
      - policy: 缓冲池替换策略 "LRU" / "FIFO"
    """
    path: str = DEFAULT_PATH
    page_size: int = 4096
    bucket_pages: int = 16
    bp_capacity: int = 256
    policy: str = "LRU"

    @classmethod
    def from_env(cls, path: Optional[str] = None) -> "StoreConfig":
        """从环境变量 MSGSTORE_PATH / MSGSTORE_PAGE_SIZE / MSGSTORE_BUCKET_PAGES / MSGSTORE_BP_CAPACITY / MSGSTORE_POLICY 读取。"""
        env = os.environ
        return cls(
            path=path or env.get("MSGSTORE_PATH", DEFAULT_PATH),
            page_size=int(env.get("MSGSTORE_PAGE_SIZE", 4096)),
            bucket_pages=int(env.get("MSGSTORE_BUCKET_PAGES", 16)),
            bp_capacity=int(env.get("MSGSTORE_BP_CAPACITY", 256)),
            policy=env.get("MSGSTORE_POLICY", "LRU").upper(),
        )


class StoreContext:
    """
    启动时构造一次的存储上下文，替代进程级全局变量：
      - manager: 区域管理器（单文件后备存储）
      - ids: 区域 0 上的 id 分配器
      - records: 区域 1 上的记录映射
      - lock: 串行化边界；所有入口在持有它时执行，保证“一次一个调用”
    区域编号 0/1 是磁盘格式的一部分，改动会破坏重启兼容性。
    """

    def __init__(self, manager: RegionManager):
        self.manager = manager
        self.lock = threading.RLock()
        self.ids = IdAllocator(manager, COUNTER_REGION)
        self.records = RecordStore(manager, RECORD_REGION)

    @classmethod
    def open(cls, config: Optional[StoreConfig] = None) -> "StoreContext":
        """打开（或新建）存储。头页损坏时抛出 CorruptState，调用方不应继续启动。"""
        config = config or StoreConfig()
        d = os.path.dirname(os.path.abspath(config.path))
        os.makedirs(d, exist_ok=True)
        manager = RegionManager(config.path,
                                page_size=config.page_size,
                                bucket_pages=config.bucket_pages,
                                bp_capacity=config.bp_capacity,
                                policy=config.policy)  # type: ignore[arg-type]
        try:
            ctx = cls(manager)
        except BaseException:
            manager.close()
            raise
        logger.info("opened store %s: %d record(s), next id %d, %d/%d bucket(s) used",
                    config.path, len(ctx.records), ctx.ids.current(),
                    manager.bucket_count(), manager.max_buckets)
        return ctx

    def close(self) -> None:
        with self.lock:
            self.manager.close()

    def __enter__(self) -> "StoreContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
