# pager.py
from __future__ import annotations
import io
import os


class CorruptState(IOError):
    """底层文件损坏或无法识别（头页不可读、魔数/校验和不符、短读等）。启动时遇到即致命。"""


class Pager:
    """
    单文件页式存储：
      - 负责打开/新建数据文件
      - 负责按“页”为单位的读写，以及在文件末尾追加新页
      - 第 0 页是头页，内容由 RegionManager 解释；Pager 只负责搬运字节
    这里不维护空闲页链表：区域只增长、不回收。
    """

    def __init__(self, file_path: str, page_size: int = 4096):
        """
        打开或创建数据文件：
          - 已存在：按文件大小推算页数（是否整页倍数由 check_size 在日志恢复后检查）
          - 不存在：创建空文件（0 页），由上层写入头页
        """
        if page_size < 512 or page_size & (page_size - 1):
            raise ValueError(f"page_size must be a power of two >= 512, got {page_size}")
        self.path = file_path
        self._page_size = page_size
        self._f: io.BufferedRandom
        if not os.path.exists(self.path):
            self._f = open(self.path, "w+b", buffering=0)
            self._page_count = 0
        else:
            # 以读写方式打开已有文件（buffering=0 关闭 Python 级缓冲，便于直接控制）
            self._f = open(self.path, "r+b", buffering=0)
            # 末尾不足一页的残片只可能来自提交中途崩溃，交由日志重放覆盖后再 check_size
            size = os.fstat(self._f.fileno()).st_size
            self._page_count = size // page_size

    # ------------------------- 公共 API -------------------------

    def page_size(self) -> int:
        """返回固定的页大小（字节）。"""
        return self._page_size

    def page_count(self) -> int:
        """返回当前文件中总页数（包含第 0 页）。"""
        return self._page_count

    def read_page(self, page_id: int) -> bytes:
        """
        读取整页数据：
          - 检查页号范围
          - 定位到 page_id * page_size 处，读取一整页
          - 若读取长度不足视为损坏
        """
        self._check_pid(page_id)
        self._f.seek(page_id * self._page_size)
        data = self._f.read(self._page_size)
        if len(data) != self._page_size:
            raise CorruptState(f"short read on page {page_id} (corrupted file?)")
        return data

    def write_page(self, page_id: int, data: bytes) -> None:
        """
        将一整页写回磁盘：
          - 长度必须等于 page_size
          - page_id 可以等于 page_count（即在末尾追加一页）；更远的页先补零
        """
        if page_id < 0:
            raise IndexError(f"page_id out of range: {page_id}")
        if len(data) != self._page_size:
            raise ValueError(f"write_page: bad data size {len(data)} != {self._page_size}")
        if page_id > self._page_count:
            self.extend(page_id - self._page_count)
        self._f.seek(page_id * self._page_size)
        self._f.write(data)
        if page_id == self._page_count:
            self._page_count += 1

    def extend(self, n: int) -> int:
        """在文件末尾追加 n 个全 0 页，返回第一个新页的页号。"""
        first = self._page_count
        if n <= 0:
            return first
        self._f.seek(first * self._page_size)
        self._f.write(bytes(self._page_size * n))
        self._page_count += n
        return first

    def check_size(self) -> None:
        """文件大小必须是整页的倍数，否则视为损坏。"""
        size = os.fstat(self._f.fileno()).st_size
        if size % self._page_size:
            raise CorruptState(f"file size {size} is not a multiple of page size {self._page_size}")

    def sync(self) -> None:
        """强制将文件缓冲区刷入磁盘（fsync）。"""
        self._f.flush()
        os.fsync(self._f.fileno())

    @property
    def closed(self) -> bool:
        return self._f.closed

    def close(self) -> None:
        """关闭前先 sync，确保落盘安全。"""
        if self.closed:
            return
        try:
            self.sync()
        finally:
            self._f.close()

    # ------------------------- 内部方法 -------------------------

    def _check_pid(self, pid: int) -> None:
        """检查页号是否在 [0, page_count) 范围内。"""
        if pid < 0 or pid >= self._page_count:
            raise IndexError(f"page_id out of range: {pid} (page_count={self._page_count})")
