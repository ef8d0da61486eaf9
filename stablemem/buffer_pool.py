# buffer_pool.py
from __future__ import annotations

import os
import time
import logging
import threading
from dataclasses import dataclass, asdict
from collections import OrderedDict, deque
from typing import Optional, Dict, Deque, Literal

from .pager import Pager

logger = logging.getLogger("msgstore.buffer_pool")
# 库默认静默；需要落盘时调用 BufferPool.enable_global_log
logging.getLogger("msgstore").addHandler(logging.NullHandler())

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# --------------------------- 数据结构与统计 ---------------------------

@dataclass
class Frame:
    """
    缓冲池槽位（一个 frame 对应磁盘上的一页）：
    - page_id: 逻辑页号（与 Pager 的页号一致）
    - data: 该页的内存副本（可写）
    - pin_count: 引用计数；>0 表示“被固定”，不可被淘汰
    - dirty: 是否为脏页；脏页在提交前不允许被淘汰（no-steal）
    """
    page_id: int
    data: bytearray
    pin_count: int = 0
    dirty: bool = False


@dataclass
class BPStats:
    """
    实例级详细统计（一个 BufferPool 对应一份）：
    - hits / misses: get_page 命中/未命中次数
    - reads: 磁盘读次数（通过 Pager）
    - commits: 提交（脏页交给日志写回）的次数
    - evictions: 淘汰的干净页数量
    - overflows: 因全部候选页都是脏页而临时超出容量的次数
    - current_resident / max_resident: 当前/峰值驻留页数
    - capacity: 容量（帧数）
    - start_ts: 统计起始时间
    """
    hits: int = 0
    misses: int = 0
    reads: int = 0
    commits: int = 0
    evictions: int = 0
    overflows: int = 0
    current_resident: int = 0
    max_resident: int = 0
    capacity: int = 0
    start_ts: float = 0.0


class _BPDiag:
    """
    全局诊断器（跨实例聚合统计 + 可选写文件日志）：
    - 通过类变量维护一个全局 BPStats，并加锁保证线程安全
    - 文件日志挂在 "msgstore" 根 logger 上，整个包的日志都会落盘
    """
    _global_lock = threading.Lock()
    _global = BPStats(start_ts=time.time())
    _log_handler: logging.Handler | None = None

    @classmethod
    def add(cls, **delta) -> None:
        """对全局统计做增量加和（需持有锁）"""
        with cls._global_lock:
            g = cls._global
            for k, v in delta.items():
                if hasattr(g, k):
                    setattr(g, k, getattr(g, k) + int(v))

    @classmethod
    def snapshot(cls) -> dict:
        with cls._global_lock:
            return asdict(cls._global)

    @classmethod
    def reset(cls) -> None:
        """重置全局统计（保留历史最大容量）"""
        with cls._global_lock:
            cap = cls._global.capacity
            cls._global = BPStats(capacity=cap, start_ts=time.time())

    @classmethod
    def enable_log(cls, path: str | None = None, level: int = logging.INFO) -> str:
        """
        开启文件日志（仅初始化一次）：
        - 默认写入 __logs__/msgstore.log
        - 返回实际使用的日志路径
        """
        root = logging.getLogger("msgstore")
        if cls._log_handler is not None:
            root.setLevel(level)
            return getattr(cls._log_handler, "baseFilename", path or "")
        if path is None:
            os.makedirs("__logs__", exist_ok=True)
            path = os.path.join("__logs__", "msgstore.log")
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(level)
        cls._log_handler = handler
        return path

    @classmethod
    def disable_log(cls) -> None:
        """关闭文件日志（移除 handler）"""
        if cls._log_handler is not None:
            root = logging.getLogger("msgstore")
            root.removeHandler(cls._log_handler)
            cls._log_handler.close()
        cls._log_handler = None


# --------------------------- 替换策略（LRU / FIFO） ---------------------------

class _LRUPolicy:
    """
    LRU 候选集合（仅跟踪 pin==0 的可替换页）：
    - touch(pid): 把 pid 放到队尾（最近使用）
    - victim(): 弹出队首（最久未使用）
    """
    def __init__(self) -> None:
        self._lru: "OrderedDict[int, None]" = OrderedDict()

    def touch(self, pid: int) -> None:
        self._lru.pop(pid, None)
        self._lru[pid] = None

    def remove(self, pid: int) -> None:
        self._lru.pop(pid, None)

    def victim(self) -> Optional[int]:
        if not self._lru:
            return None
        pid, _ = self._lru.popitem(last=False)
        return pid


class _FIFOPolicy:
    """
    FIFO 候选集合（仅跟踪 pin==0 的可替换页）：
    - touch(pid): 可替换时入队
    - victim(): 按进入顺序淘汰
    """
    def __init__(self) -> None:
        self._q: Deque[int] = deque()
        self._in_q: set[int] = set()

    def touch(self, pid: int) -> None:
        if pid not in self._in_q:
            self._q.append(pid)
            self._in_q.add(pid)

    def remove(self, pid: int) -> None:
        self._in_q.discard(pid)

    def victim(self) -> Optional[int]:
        while self._q:
            pid = self._q.popleft()
            if pid in self._in_q:
                self._in_q.remove(pid)
                return pid
            # 僵尸元素（之前 remove 过）：丢弃并继续
        return None


# --------------------------- 缓冲池主体 ---------------------------

class BufferPool:
    """
    页缓冲池：
    - 容量固定（capacity 表示最多缓存多少页）
    - get_page: 先查缓存，未命中时读盘；满了则按策略淘汰干净页
    - new_page: 为新增长出来的页直接放入一个全 0 的脏帧（不读盘）
    - unpin(dirty): 释放引用，可选标脏
    - dirty_pages / mark_clean / discard_dirty: 与 Journal 配合的提交/回滚接口
    脏页只在提交时经由 Journal 写回，提交前绝不淘汰（no-steal），
    这样崩溃时磁盘上只会出现“完整提交”的页。
    """
    def __init__(self,
                 pager: Pager,
                 capacity: int = 256,
                 policy: Literal["LRU", "FIFO"] = "LRU") -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.pager = pager
        self.capacity = capacity
        self.frames: Dict[int, Frame] = {}    # page_id -> Frame

        if policy.upper() == "LRU":
            self._policy = _LRUPolicy()
        elif policy.upper() == "FIFO":
            self._policy = _FIFOPolicy()
        else:
            raise ValueError("policy must be 'LRU' or 'FIFO'")

        self._stats = BPStats(capacity=capacity, start_ts=time.time())
        with _BPDiag._global_lock:
            _BPDiag._global.capacity = max(_BPDiag._global.capacity, capacity)

    # -------------------- 对外 API --------------------

    def get_page(self, page_id: int) -> memoryview:
        """
        取得指定页的可写 memoryview：
        - 命中：直接返回
        - 未命中：若满则淘汰；然后读盘；把新页放入缓存并 pin
        - 返回值必须配对调用 unpin(page_id, dirty=...)
        """
        fr = self.frames.get(page_id)
        if fr is not None:
            self._stats.hits += 1
            _BPDiag.add(hits=1)
            self._pin(fr)
            return memoryview(fr.data)

        self._stats.misses += 1
        _BPDiag.add(misses=1)
        raw = self.pager.read_page(page_id)
        self._stats.reads += 1
        _BPDiag.add(reads=1)
        fr = self._install(page_id, bytearray(raw), dirty=False)
        return memoryview(fr.data)

    def new_page(self, page_id: int) -> memoryview:
        """
        为尚未落盘的新页建立一个全 0 的脏帧并 pin 住。
        已在缓存中的页会被清零（区域增长时旧内容不可见）。
        """
        fr = self.frames.get(page_id)
        if fr is not None:
            fr.data[:] = bytes(len(fr.data))
            fr.dirty = True
            self._pin(fr)
            return memoryview(fr.data)
        fr = self._install(page_id, bytearray(self.pager.page_size()), dirty=True)
        return memoryview(fr.data)

    def unpin(self, page_id: int, dirty: bool = False) -> None:
        """
        用完页后必须调用：
        - pin_count 减 1
        - 若 dirty=True，标记该页为脏
        - 当 pin_count==0 且页是干净的，加入替换候选集合
        """
        fr = self._require_frame(page_id)
        if fr.pin_count == 0:
            # 容错：重复 unpin 时不降为负数
            return
        fr.pin_count -= 1
        if dirty:
            fr.dirty = True
            self._policy.remove(page_id)
        if fr.pin_count == 0 and not fr.dirty:
            self._policy.touch(page_id)

    def dirty_pages(self) -> Dict[int, bytes]:
        """返回所有待提交脏页的快照（page_id -> 整页字节），按页号排序。"""
        return {pid: bytes(fr.data) for pid, fr in sorted(self.frames.items()) if fr.dirty}

    def mark_clean(self) -> None:
        """提交完成后调用：所有脏页转为干净页并重新成为淘汰候选。"""
        for pid, fr in self.frames.items():
            if fr.dirty:
                fr.dirty = False
                if fr.pin_count == 0:
                    self._policy.touch(pid)
        self._stats.commits += 1
        _BPDiag.add(commits=1)
        self._shrink()

    def discard_dirty(self) -> int:
        """回滚：丢弃所有未提交的脏帧，下次访问会从磁盘重新读入。返回丢弃数量。"""
        victims = [pid for pid, fr in self.frames.items() if fr.dirty]
        for pid in victims:
            self._drop(pid)
        if victims:
            logger.info("rollback discarded %d dirty page(s)", len(victims))
        return len(victims)

    @property
    def stats(self) -> dict:
        """简表：容量、驻留页数、命中/未命中及命中率"""
        total = self._stats.hits + self._stats.misses
        return {
            "capacity": self.capacity,
            "cached": len(self.frames),
            "hit": self._stats.hits,
            "miss": self._stats.misses,
            "evict": self._stats.evictions,
            "hit_rate": (self._stats.hits / total) if total else 0.0,
        }

    def stats_snapshot(self) -> dict:
        """返回实例级详细统计（BPStats -> dict）"""
        return asdict(self._stats)

    @staticmethod
    def global_stats() -> dict:
        """返回跨实例聚合统计"""
        return _BPDiag.snapshot()

    @staticmethod
    def reset_global_stats() -> None:
        _BPDiag.reset()

    @staticmethod
    def enable_global_log(path: str | None = None, level: int = logging.INFO) -> str:
        """开启日志落盘（默认 __logs__/msgstore.log）"""
        return _BPDiag.enable_log(path, level)

    @staticmethod
    def disable_global_log() -> None:
        _BPDiag.disable_log()

    def report_stats(self) -> None:
        """
        以固定格式打印简要统计（直接 print，便于 CLI 查看）：
        - 和 logging 版互补：不依赖 logging 配置
        """
        s = self.stats
        print(f"[STATS] cap={s['capacity']} cached={s['cached']} "
              f"hit={s['hit']} miss={s['miss']} evict={s['evict']} "
              f"hit_rate={s['hit_rate']:.2%}")

    # -------------------- 内部方法 --------------------

    def _pin(self, fr: Frame) -> None:
        fr.pin_count += 1
        self._policy.remove(fr.page_id)

    def _install(self, page_id: int, data: bytearray, dirty: bool) -> Frame:
        """放入缓存前先腾位置；新帧处于 pinned 状态。"""
        if len(self.frames) >= self.capacity:
            self._evict_one(page_id)
        fr = Frame(page_id=page_id, data=data, pin_count=1, dirty=dirty)
        self.frames[page_id] = fr
        self._stats.current_resident = len(self.frames)
        if self._stats.current_resident > self._stats.max_resident:
            self._stats.max_resident = self._stats.current_resident
        return fr

    def _evict_one(self, incoming_pid: int, quiet: bool = False) -> bool:
        """
        为 incoming_pid 腾出一个槽位：
        - 候选集合只含 pin==0 的干净页，直接丢弃即可（无需写回）
        - 候选为空说明缓存里全是 pinned 或脏页：允许暂时超出容量，提交后再收缩
        """
        while True:
            victim_pid = self._policy.victim()
            if victim_pid is None:
                if quiet:
                    return False
                self._stats.overflows += 1
                _BPDiag.add(overflows=1)
                logger.warning("buffer pool over capacity (%d frames) while loading page %d; "
                               "all resident pages are pinned or dirty", len(self.frames), incoming_pid)
                return False
            fr = self.frames.get(victim_pid)
            if fr is None or fr.pin_count > 0 or fr.dirty:
                continue
            logger.debug("EVICT pid=%d replace with pid=%d", victim_pid, incoming_pid)
            self._drop(victim_pid)
            self._stats.evictions += 1
            _BPDiag.add(evictions=1)
            return True

    def _shrink(self) -> None:
        """提交后若仍超出容量，淘汰干净页直到回到容量以内。"""
        while len(self.frames) > self.capacity:
            if not self._evict_one(-1, quiet=True):
                break

    def _drop(self, pid: int) -> None:
        self.frames.pop(pid, None)
        self._policy.remove(pid)
        self._stats.current_resident = len(self.frames)

    def _require_frame(self, page_id: int) -> Frame:
        """确保页在缓存中；否则抛错提示使用者忘记 get_page"""
        fr = self.frames.get(page_id)
        if fr is None:
            raise KeyError(f"page {page_id} not in buffer pool (did you forget get_page?)")
        return fr
