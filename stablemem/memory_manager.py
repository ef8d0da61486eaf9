# memory_manager.py
from __future__ import annotations
import logging
import struct
import zlib
from typing import Dict, List, Literal, Optional

from .pager import Pager, CorruptState
from .buffer_pool import BufferPool
from .journal import Journal

logger = logging.getLogger("msgstore.regions")

# ---------------- 头页（第 0 页）的二进制布局 ----------------
# 整个文件 = 第 0 页（头页） + 若干个 bucket，每个 bucket 由 bucket_pages 个连续页组成。
# 每个 bucket 只属于一个区域；区域按 bucket 粒度增长，新 bucket 总是追加在文件末尾，
# 因此一个区域增长永远不会触碰另一个区域已经拥有的字节。
#
# 头页格式：
#   magic(4s) | version(uint16) | reserved(uint16) | page_size(uint32)
#   | bucket_pages(uint16) | max_regions(uint16) | bucket_count(uint32)
#   region_pages[max_regions](uint64)   每个区域当前的大小（页数）
#   bucket_owner[...](uint8)            bucket i 属于哪个区域；0xFF 表示未分配
#   crc32(uint32)                       位于页尾，覆盖前面的全部字节
_HDR_FMT = "<4sHHIHHI"
_HDR_SIZE = struct.calcsize(_HDR_FMT)
_MAGIC = b"MSM1"
_VERSION = 1
_CRC_FMT = "<I"
_CRC_SIZE = struct.calcsize(_CRC_FMT)
_UNASSIGNED = 0xFF

MAX_REGIONS = 32


class RegionFull(Exception):
    """头页的 bucket 表已用尽，区域无法继续增长。不改动任何状态，可以安全地继续使用。"""


class Region:
    """
    区域句柄：把若干个不连续的 bucket 拼成一个从 0 开始编址的、可增长的字节数组。
    句柄本身不保存数据，所有读写都经由 RegionManager 的缓冲池。
    """

    def __init__(self, manager: "RegionManager", region_id: int):
        self.manager = manager
        self.id = region_id

    def size(self) -> int:
        """区域当前大小（页数）。"""
        return self.manager._region_pages[self.id]

    def size_bytes(self) -> int:
        return self.size() * self.manager.page_size

    def grow(self, pages: int) -> int:
        """增长 pages 页，返回增长前的大小（页数）；新增的字节全为 0。"""
        return self.manager._grow(self.id, pages)

    def ensure(self, nbytes: int) -> None:
        """保证区域至少有 nbytes 字节，不足则按页增长。"""
        ps = self.manager.page_size
        need = -(-nbytes // ps) - self.size()
        if need > 0:
            self.grow(need)

    def read(self, offset: int, n: int) -> bytes:
        self._check_range(offset, n)
        out = bytearray()
        bp = self.manager.bp
        for pid, start, length in self.manager._spans(self.id, offset, n):
            mv = bp.get_page(pid)
            try:
                out += mv[start : start + length]
            finally:
                bp.unpin(pid, dirty=False)
        return bytes(out)

    def write(self, offset: int, data: bytes) -> None:
        self._check_range(offset, len(data))
        bp = self.manager.bp
        pos = 0
        for pid, start, length in self.manager._spans(self.id, offset, len(data)):
            mv = bp.get_page(pid)
            try:
                mv[start : start + length] = data[pos : pos + length]
            finally:
                bp.unpin(pid, dirty=True)
            pos += length

    def _check_range(self, offset: int, n: int) -> None:
        if offset < 0 or n < 0 or offset + n > self.size_bytes():
            raise IndexError(
                f"region {self.id}: access [{offset}, {offset + n}) out of bounds (size={self.size_bytes()})")

    def __repr__(self) -> str:
        return f"Region(id={self.id}, pages={self.size()})"


class RegionManager:
    """
    区域管理器：
      - 把一个单文件后备存储切分为最多 MAX_REGIONS 个逻辑上独立的区域
      - open_region(id) 幂等：同一个 id 永远映射到同一组字节，跨进程重启稳定
      - commit(): 把本次操作产生的全部脏页（含头页）经 Journal 原子落盘
      - rollback(): 丢弃未提交的修改，头页状态回到上一次提交
    头页不可读（魔数/版本/页大小/校验和不符）时抛出 CorruptState，启动即失败。
    """

    def __init__(self,
                 file_path: str,
                 page_size: int = 4096,
                 bucket_pages: int = 16,
                 bp_capacity: int = 256,
                 policy: Literal["LRU", "FIFO"] = "LRU"):
        if not 1 <= bucket_pages <= 0xFFFF:
            raise ValueError(f"bucket_pages out of range: {bucket_pages}")
        self.pager = Pager(file_path, page_size=page_size)
        self.path = file_path
        self.page_size = page_size
        self.max_buckets = page_size - _HDR_SIZE - MAX_REGIONS * 8 - _CRC_SIZE
        self._regions: Dict[int, Region] = {}
        self._commit_failure: Optional[BaseException] = None
        try:
            self.journal = Journal(self.pager)
            replayed = self.journal.recover()
            if replayed:
                logger.info("recovered %d page(s) from journal", replayed)
            self.pager.check_size()
            self.bp = BufferPool(self.pager, capacity=bp_capacity, policy=policy)
            if self.pager.page_count() == 0:
                self._format(bucket_pages)
                self.commit()
                logger.info("formatted new store %s (page_size=%d, bucket_pages=%d)",
                            file_path, page_size, bucket_pages)
            else:
                self._load_header()
        except BaseException:
            self.pager.close()
            raise

    # ------------------------- 公共 API -------------------------

    def open_region(self, region_id: int) -> Region:
        if not 0 <= region_id < MAX_REGIONS:
            raise ValueError(f"region id must be in [0, {MAX_REGIONS}), got {region_id}")
        r = self._regions.get(region_id)
        if r is None:
            r = Region(self, region_id)
            self._regions[region_id] = r
        return r

    def commit(self) -> int:
        """原子提交所有脏页；返回写入的页数。"""
        if self._commit_failure is not None:
            raise CorruptState("an earlier commit failed midway; reopen the store to recover from the journal")
        if self._header_dirty:
            self._write_header()
        pages = self.bp.dirty_pages()
        try:
            written = self.journal.commit(pages)
        except BaseException as e:
            # 数据文件可能已写了一半，只有重启时重放日志才能恢复一致
            self._commit_failure = e
            raise
        self.bp.mark_clean()
        self._header_dirty = False
        return written

    def rollback(self) -> None:
        """丢弃未提交的修改，并从磁盘重新加载头页。"""
        self.bp.discard_dirty()
        if self.pager.page_count() > 0:
            self._load_header()

    def bucket_count(self) -> int:
        return self._bucket_count

    def buckets_of(self, region_id: int) -> List[int]:
        return list(self._region_buckets[region_id])

    def close(self) -> None:
        if self.pager.closed:
            return
        try:
            pending = self.bp.dirty_pages()
            if pending:
                logger.warning("closing with %d uncommitted page(s); discarding", len(pending))
                self.bp.discard_dirty()
        finally:
            self.pager.close()

    def __enter__(self) -> "RegionManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------- 头页 -------------------------

    def _format(self, bucket_pages: int) -> None:
        self.bucket_pages = bucket_pages
        self._bucket_count = 0
        self._region_pages = [0] * MAX_REGIONS
        self._region_buckets: List[List[int]] = [[] for _ in range(MAX_REGIONS)]
        self._header_dirty = True

    def _load_header(self) -> None:
        """读取并校验第 0 页；任何不一致都是致命的 CorruptState。"""
        try:
            page = self.pager.read_page(0)
        except (IndexError, OSError) as e:
            raise CorruptState(f"cannot read region header: {e}") from e
        (crc,) = struct.unpack_from(_CRC_FMT, page, self.page_size - _CRC_SIZE)
        if zlib.crc32(page[: self.page_size - _CRC_SIZE]) & 0xFFFFFFFF != crc:
            raise CorruptState("region header checksum mismatch")
        magic, version, _, page_size, bucket_pages, max_regions, bucket_count = \
            struct.unpack_from(_HDR_FMT, page, 0)
        if magic != _MAGIC:
            raise CorruptState("bad magic; not a msgstore file")
        if version != _VERSION:
            raise CorruptState(f"unsupported format version {version}")
        if page_size != self.page_size:
            raise CorruptState(f"page size mismatch: file={page_size}, expected={self.page_size}")
        if max_regions != MAX_REGIONS or bucket_count > self.max_buckets or bucket_pages == 0:
            raise CorruptState("region header fields out of range")

        sizes = list(struct.unpack_from(f"<{MAX_REGIONS}Q", page, _HDR_SIZE))
        owners = page[_HDR_SIZE + MAX_REGIONS * 8 : _HDR_SIZE + MAX_REGIONS * 8 + bucket_count]
        buckets: List[List[int]] = [[] for _ in range(MAX_REGIONS)]
        for b, owner in enumerate(owners):
            if owner == _UNASSIGNED:
                continue
            if owner >= MAX_REGIONS:
                raise CorruptState(f"bucket {b} owned by invalid region {owner}")
            buckets[owner].append(b)
        for rid, pages in enumerate(sizes):
            if pages > len(buckets[rid]) * bucket_pages:
                raise CorruptState(f"region {rid} claims {pages} pages but owns {len(buckets[rid])} bucket(s)")
        if self.pager.page_count() < 1 + bucket_count * bucket_pages:
            raise CorruptState("file shorter than its allocated buckets")

        self.bucket_pages = bucket_pages
        self._bucket_count = bucket_count
        self._region_pages = sizes
        self._region_buckets = buckets
        self._header_dirty = False

    def _pack_header(self) -> bytes:
        page = bytearray(self.page_size)
        struct.pack_into(_HDR_FMT, page, 0, _MAGIC, _VERSION, 0, self.page_size,
                         self.bucket_pages, MAX_REGIONS, self._bucket_count)
        struct.pack_into(f"<{MAX_REGIONS}Q", page, _HDR_SIZE, *self._region_pages)
        table = _HDR_SIZE + MAX_REGIONS * 8
        page[table : table + self.max_buckets] = bytes([_UNASSIGNED]) * self.max_buckets
        for rid, owned in enumerate(self._region_buckets):
            for b in owned:
                page[table + b] = rid
        crc = zlib.crc32(page[: self.page_size - _CRC_SIZE]) & 0xFFFFFFFF
        struct.pack_into(_CRC_FMT, page, self.page_size - _CRC_SIZE, crc)
        return bytes(page)

    def _write_header(self) -> None:
        packed = self._pack_header()
        if self.pager.page_count() == 0 and 0 not in self.bp.frames:
            mv = self.bp.new_page(0)
        else:
            mv = self.bp.get_page(0)
        try:
            mv[:] = packed
        finally:
            self.bp.unpin(0, dirty=True)

    # ------------------------- 地址转换 / 增长 -------------------------

    def _page_of(self, bucket: int, page_in_bucket: int) -> int:
        return 1 + bucket * self.bucket_pages + page_in_bucket

    def _spans(self, region_id: int, offset: int, n: int):
        """把区域内的 [offset, offset+n) 切成若干 (page_id, 页内起点, 长度)。"""
        ps = self.page_size
        owned = self._region_buckets[region_id]
        while n > 0:
            page_index, start = divmod(offset, ps)
            bucket_index, in_bucket = divmod(page_index, self.bucket_pages)
            length = min(n, ps - start)
            yield self._page_of(owned[bucket_index], in_bucket), start, length
            offset += length
            n -= length

    def _grow(self, region_id: int, pages: int) -> int:
        if pages < 0:
            raise ValueError("cannot shrink a region")
        old = self._region_pages[region_id]
        if pages == 0:
            return old
        new = old + pages
        owned = self._region_buckets[region_id]
        need = -(-new // self.bucket_pages) - len(owned)
        if self._bucket_count + need > self.max_buckets:
            raise RegionFull(
                f"backing store is full: region {region_id} needs {need} bucket(s), "
                f"{self.max_buckets - self._bucket_count} left")
        for _ in range(need):
            b = self._bucket_count
            self._bucket_count += 1
            owned.append(b)
            for i in range(self.bucket_pages):
                pid = self._page_of(b, i)
                self.bp.new_page(pid)
                self.bp.unpin(pid, dirty=True)
        self._region_pages[region_id] = new
        self._header_dirty = True
        logger.debug("region %d grew %d -> %d page(s) (%d new bucket(s))", region_id, old, new, need)
        return old
