"""Record encode/decode: fixed field order, u32 length-prefixed UTF-8 strings, bounded size."""
from __future__ import annotations
import struct
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

from .errors import SerializationError, CapacityExceeded

MAX_SIZE = 1024

# ---------------- 记录的二进制布局 ----------------
#   tag(1s)='M' | version(uint8)
#   id(uint64)
#   title_len(uint32) | title(utf-8)
#   body_len(uint32)  | body(utf-8)
#   url_len(uint32)   | attachment_url(utf-8)
#   created_at(uint64)
#   has_updated(uint8) [| updated_at(uint64)]   0 = None, 1 = 有值
_TAG = b"M"
_VERSION = 1
_HEAD_FMT = "<cBQ"
_HEAD_SIZE = struct.calcsize(_HEAD_FMT)
_LEN_FMT = "<I"
_LEN_SIZE = struct.calcsize(_LEN_FMT)
_U64_FMT = "<Q"
_U64_SIZE = struct.calcsize(_U64_FMT)
_U64_MAX = 2 ** 64 - 1


@dataclass
class RecordPayload:
    """创建/更新时的输入，不带 id 与时间戳。"""
    title: str
    body: str
    attachment_url: str


@dataclass
class Record:
    id: int
    title: str
    body: str
    attachment_url: str
    created_at: int                  # Unix 纳秒
    updated_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _check_u64(name: str, v: Any) -> int:
    if not isinstance(v, int) or isinstance(v, bool) or not 0 <= v <= _U64_MAX:
        raise SerializationError(f"{name} must be an unsigned 64-bit integer, got {v!r}")
    return v


def _encode_str(name: str, v: Any) -> bytes:
    if not isinstance(v, str):
        raise SerializationError(f"{name} must be a string, got {type(v).__name__}")
    try:
        b = v.encode("utf-8")
    except UnicodeEncodeError as e:
        raise SerializationError(f"{name} is not encodable as utf-8: {e}") from e
    return struct.pack(_LEN_FMT, len(b)) + b


def encode(rec: Record) -> bytes:
    """
    把 Record 编码为紧凑的二进制串。
    字段非法 -> SerializationError；编码结果超过 MAX_SIZE -> CapacityExceeded。
    """
    out = bytearray(struct.pack(_HEAD_FMT, _TAG, _VERSION, _check_u64("id", rec.id)))
    out += _encode_str("title", rec.title)
    out += _encode_str("body", rec.body)
    out += _encode_str("attachment_url", rec.attachment_url)
    out += struct.pack(_U64_FMT, _check_u64("created_at", rec.created_at))
    if rec.updated_at is None:
        out += b"\x00"
    else:
        out += b"\x01" + struct.pack(_U64_FMT, _check_u64("updated_at", rec.updated_at))
    if len(out) > MAX_SIZE:
        raise CapacityExceeded(
            f"encoded record id={rec.id} is {len(out)} bytes, exceeds the {MAX_SIZE}-byte limit")
    return bytes(out)


class _Reader:
    """带边界检查的顺序读取器；越界一律转成 SerializationError。"""
    __slots__ = ("buf", "off")

    def __init__(self, buf: bytes):
        self.buf = buf
        self.off = 0

    def take(self, n: int) -> bytes:
        end = self.off + n
        if end > len(self.buf):
            raise SerializationError(
                f"truncated record: need {n} byte(s) at offset {self.off}, have {len(self.buf) - self.off}")
        chunk = self.buf[self.off : end]
        self.off = end
        return chunk

    def u64(self) -> int:
        (v,) = struct.unpack(_U64_FMT, self.take(_U64_SIZE))
        return v

    def string(self, name: str) -> str:
        (n,) = struct.unpack(_LEN_FMT, self.take(_LEN_SIZE))
        raw = self.take(n)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SerializationError(f"{name} is not valid utf-8: {e}") from e


def decode(data: bytes) -> Record:
    """
    从二进制串还原 Record。
    超长、残缺、标签/版本不符、存在性标记非法、多余尾部字节 -> SerializationError。
    """
    data = bytes(data)
    if len(data) > MAX_SIZE:
        raise SerializationError(f"record is {len(data)} bytes, exceeds the {MAX_SIZE}-byte limit")
    r = _Reader(data)
    tag, version, rid = struct.unpack(_HEAD_FMT, r.take(_HEAD_SIZE))
    if tag != _TAG:
        raise SerializationError(f"bad record tag {tag!r}")
    if version != _VERSION:
        raise SerializationError(f"unsupported record version {version}")
    title = r.string("title")
    body = r.string("body")
    url = r.string("attachment_url")
    created_at = r.u64()
    flag = r.take(1)[0]
    if flag == 0:
        updated_at = None
    elif flag == 1:
        updated_at = r.u64()
    else:
        raise SerializationError(f"bad updated_at presence tag {flag}")
    if r.off != len(data):
        raise SerializationError(f"{len(data) - r.off} trailing byte(s) after record")
    return Record(rid, title, body, url, created_at, updated_at)
