# journal.py
from __future__ import annotations
import os
import struct
import logging
import zlib
from typing import Dict, Optional

from .pager import Pager

logger = logging.getLogger("msgstore.journal")

# ---------------- 提交日志（redo journal）的二进制布局 ----------------
# 每次提交把全部脏页的“完整页镜像”先写入 <db>-journal，fsync 后再原地写回数据文件。
#
# 日志文件格式：
#   magic(4s) | page_size(uint32) | count(uint32)
#   count 个条目：page_id(uint32) | 整页字节(page_size)
#   crc32(uint32)  覆盖前面的全部字节
# 含义：
#   - 日志完整（crc 正确）：说明原地写回可能进行到一半，重启时按日志重放即可
#   - 日志残缺（长度或 crc 不对）：说明崩溃发生在写日志阶段，数据文件尚未被改动，直接丢弃
_HDR_FMT = "<4sII"
_HDR_SIZE = struct.calcsize(_HDR_FMT)
_ENTRY_FMT = "<I"
_ENTRY_SIZE = struct.calcsize(_ENTRY_FMT)
_CRC_FMT = "<I"
_CRC_SIZE = struct.calcsize(_CRC_FMT)
_MAGIC = b"MSJ1"


def journal_path(db_path: str) -> str:
    return db_path + "-journal"


class Journal:
    """
    单文件重做日志：
      - commit(pages): 日志 -> fsync -> 原地写回 -> fsync -> 删除日志
      - recover(): 启动时调用，重放完整日志或丢弃残缺日志
    同一时刻至多存在一个日志文件（一次提交一个）。
    """

    def __init__(self, pager: Pager):
        self.pager = pager
        self.path = journal_path(pager.path)

    def commit(self, pages: Dict[int, bytes]) -> int:
        """原子地把 pages 写入数据文件；返回写入的页数。空提交什么也不做。"""
        if not pages:
            return 0
        ps = self.pager.page_size()
        body = bytearray(struct.pack(_HDR_FMT, _MAGIC, ps, len(pages)))
        for pid in sorted(pages):
            data = pages[pid]
            if len(data) != ps:
                raise ValueError(f"journal: page {pid} has size {len(data)} != {ps}")
            body += struct.pack(_ENTRY_FMT, pid)
            body += data
        body += struct.pack(_CRC_FMT, zlib.crc32(body) & 0xFFFFFFFF)

        with open(self.path, "wb") as f:
            f.write(body)
            f.flush()
            os.fsync(f.fileno())
        self._sync_dir()

        self._apply(pages)
        self._remove()
        logger.debug("committed %d page(s)", len(pages))
        return len(pages)

    def recover(self) -> Optional[int]:
        """
        启动恢复：
          - 无日志：返回 None
          - 日志完整：重放并返回重放页数
          - 日志残缺：删除日志，返回 0
        """
        if not os.path.exists(self.path):
            return None
        with open(self.path, "rb") as f:
            raw = f.read()
        pages = self._parse(raw)
        if pages is None:
            logger.warning("discarding torn journal %s (%d bytes)", self.path, len(raw))
            self._remove()
            return 0
        logger.warning("replaying journal %s (%d page(s))", self.path, len(pages))
        self._apply(pages)
        self._remove()
        return len(pages)

    # ------------------------- 内部方法 -------------------------

    def _parse(self, raw: bytes) -> Optional[Dict[int, bytes]]:
        """解析日志；任何长度/魔数/页大小/校验和不符都视为残缺，返回 None。"""
        if len(raw) < _HDR_SIZE + _CRC_SIZE:
            return None
        magic, ps, count = struct.unpack_from(_HDR_FMT, raw, 0)
        if magic != _MAGIC or ps != self.pager.page_size():
            return None
        expected = _HDR_SIZE + count * (_ENTRY_SIZE + ps) + _CRC_SIZE
        if len(raw) != expected:
            return None
        (crc,) = struct.unpack_from(_CRC_FMT, raw, len(raw) - _CRC_SIZE)
        if zlib.crc32(raw[: len(raw) - _CRC_SIZE]) & 0xFFFFFFFF != crc:
            return None
        pages: Dict[int, bytes] = {}
        off = _HDR_SIZE
        for _ in range(count):
            (pid,) = struct.unpack_from(_ENTRY_FMT, raw, off)
            off += _ENTRY_SIZE
            pages[pid] = bytes(raw[off : off + ps])
            off += ps
        return pages

    def _apply(self, pages: Dict[int, bytes]) -> None:
        for pid in sorted(pages):
            self.pager.write_page(pid, pages[pid])
        self.pager.sync()

    def _remove(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        self._sync_dir()

    def _sync_dir(self) -> None:
        """目录项也要落盘，否则日志的创建/删除本身可能在崩溃后丢失。"""
        if not hasattr(os, "O_DIRECTORY"):
            return
        d = os.path.dirname(os.path.abspath(self.path))
        fd = os.open(d, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
