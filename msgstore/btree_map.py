# msgstore/btree_map.py
# -*- coding: utf-8 -*-
from __future__ import annotations
import struct
from bisect import bisect_left, bisect_right
from typing import Iterator, List, Optional, Tuple, Union

from stablemem.memory_manager import Region
from stablemem.pager import CorruptState

# ---------------- 区域内 B+ 树的二进制布局 ----------------
# 区域偏移 0 处是树头（HEADER_SIZE 字节），其后是固定大小（node_size）的节点块。
# 地址 = 区域内偏移；0 表示“空指针”（树头占着 0，不会有节点落在那里）。
#
# 树头：
#   magic(4s) | version(uint8) | reserved(uint8) | leaf_capacity(uint16) | order(uint16)
#   | max_value(uint32) | root(uint64) | length(uint64) | free_head(uint64) | next_addr(uint64)
# 节点头：
#   kind(uint8: 1=叶子 2=内部 0=空闲) | count(uint16) | next(uint64)
#   叶子的 next 指向右兄弟；空闲节点的 next 指向下一个空闲节点
# 叶子体：count 个 key(uint64) | vlen(uint16) | value(vlen)
# 内部体：count 个 key(uint64)，随后 count+1 个 child(uint64)
_HDR_FMT = "<4sBBHHIQQQQ"
_MAGIC = b"BTM1"
_VERSION = 1
HEADER_SIZE = 64
_NODE_FMT = "<BHQ"
_NODE_HDR = struct.calcsize(_NODE_FMT)
_ENTRY_FMT = "<QH"
_ENTRY_SIZE = struct.calcsize(_ENTRY_FMT)
_FREE, _LEAF, _INNER = 0, 1, 2
_U64_MAX = 2 ** 64 - 1


class _Leaf:
    """
    叶子节点：
      - keys：有序键列表
      - vals：与 keys 一一对应的值（bytes）
      - next：右兄弟叶子的地址，用于顺序扫描；0 表示最右
    """
    __slots__ = ("addr", "keys", "vals", "next")

    def __init__(self, addr: int):
        self.addr = addr
        self.keys: List[int] = []
        self.vals: List[bytes] = []
        self.next = 0


class _Inner:
    """
    内部节点：
      - keys：分隔键
      - children：孩子地址列表（长度比 keys 多 1）
    children[i] 中的键 k 满足 keys[i-1] <= k < keys[i]。
    """
    __slots__ = ("addr", "keys", "children")

    def __init__(self, addr: int):
        self.addr = addr
        self.keys: List[int] = []
        self.children: List[int] = []


_Node = Union[_Leaf, _Inner]
# 下降路径：(内部节点, 走向的孩子下标)
_Path = List[Tuple[_Inner, int]]


class BTreeMap:
    """
    持久化在单个区域里的 B+ 树：u64 -> bytes。
      - 叶子最多 leaf_capacity 个键；内部节点最多 order 个孩子（order-1 个键）
      - 插入溢出时自底向上分裂；删除下溢时向兄弟借键或与兄弟合并，根只剩一个孩子时降高
      - 点查/插入/删除 O(log n)，沿叶子链顺扫 O(n)
      - 释放的节点进入空闲链表，分配时优先复用
    本类只改缓冲池中的页，不负责提交；提交/回滚由上层（RecordStore）决定。
    """

    def __init__(self, region: Region, leaf_capacity: int = 8, order: int = 64, max_value_size: int = 1024):
        self.region = region
        if region.size_bytes() == 0:
            if leaf_capacity < 2 or order < 4:
                raise ValueError("leaf_capacity must be >= 2 and order >= 4")
            if not 0 < max_value_size <= 0xFFFF:
                raise ValueError(f"max_value_size out of range: {max_value_size}")
            self.leaf_capacity = leaf_capacity
            self.order = order
            self.max_value_size = max_value_size
            self._compute_sizes()
            self.length = 0
            self.free_head = 0
            self.next_addr = HEADER_SIZE
            self.region.ensure(HEADER_SIZE)
            self.root = self._alloc()
            self._store(_Leaf(self.root))
            self._save_header()
        else:
            self._load_header()

    # =========================
    # 树头
    # =========================
    def _compute_sizes(self) -> None:
        self._min_leaf = self.leaf_capacity // 2
        self._min_inner = (self.order - 1) // 2
        self.node_size = max(
            _NODE_HDR + self.leaf_capacity * (_ENTRY_SIZE + self.max_value_size),
            _NODE_HDR + (self.order - 1) * 8 + self.order * 8,
        )

    def _load_header(self) -> None:
        if self.region.size_bytes() < HEADER_SIZE:
            raise CorruptState(f"region {self.region.id} is too small for a tree header")
        (magic, version, _, leaf_cap, order, max_value,
         root, length, free_head, next_addr) = struct.unpack_from(_HDR_FMT, self.region.read(0, HEADER_SIZE))
        if magic != _MAGIC:
            raise CorruptState(f"region {self.region.id} does not hold a record map")
        if version != _VERSION:
            raise CorruptState(f"unsupported record map version {version}")
        if leaf_cap < 2 or order < 4 or max_value == 0:
            raise CorruptState("record map header fields out of range")
        self.leaf_capacity = leaf_cap
        self.order = order
        self.max_value_size = max_value
        self._compute_sizes()
        if next_addr > self.region.size_bytes() or not HEADER_SIZE <= root < next_addr:
            raise CorruptState("record map header points outside its region")
        self.root = root
        self.length = length
        self.free_head = free_head
        self.next_addr = next_addr

    def _save_header(self) -> None:
        hdr = struct.pack(_HDR_FMT, _MAGIC, _VERSION, 0, self.leaf_capacity, self.order,
                          self.max_value_size, self.root, self.length, self.free_head, self.next_addr)
        self.region.write(0, hdr)

    def reload(self) -> None:
        """回滚之后重新从区域读取树头。"""
        self._load_header()

    # =========================
    # 节点存取
    # =========================
    def _alloc(self) -> int:
        if self.free_head:
            addr = self.free_head
            kind, _, nxt = struct.unpack(_NODE_FMT, self.region.read(addr, _NODE_HDR))
            if kind != _FREE:
                raise CorruptState(f"free list points at a live node {addr}")
            self.free_head = nxt
            return addr
        addr = self.next_addr
        self.next_addr += self.node_size
        self.region.ensure(self.next_addr)
        return addr

    def _free(self, addr: int) -> None:
        self.region.write(addr, struct.pack(_NODE_FMT, _FREE, 0, self.free_head))
        self.free_head = addr

    def _load(self, addr: int) -> _Node:
        if not HEADER_SIZE <= addr < self.next_addr:
            raise CorruptState(f"node address {addr} out of range")
        raw = self.region.read(addr, self.node_size)
        kind, count, nxt = struct.unpack_from(_NODE_FMT, raw, 0)
        off = _NODE_HDR
        if kind == _LEAF:
            leaf = _Leaf(addr)
            leaf.next = nxt
            for _ in range(count):
                if off + _ENTRY_SIZE > len(raw):
                    raise CorruptState(f"leaf {addr} overruns its block")
                k, vlen = struct.unpack_from(_ENTRY_FMT, raw, off)
                off += _ENTRY_SIZE
                if off + vlen > len(raw):
                    raise CorruptState(f"leaf {addr} overruns its block")
                leaf.keys.append(k)
                leaf.vals.append(bytes(raw[off : off + vlen]))
                off += vlen
            return leaf
        if kind == _INNER:
            if _NODE_HDR + (2 * count + 1) * 8 > len(raw):
                raise CorruptState(f"inner node {addr} overruns its block")
            inner = _Inner(addr)
            inner.keys = list(struct.unpack_from(f"<{count}Q", raw, off))
            inner.children = list(struct.unpack_from(f"<{count + 1}Q", raw, off + count * 8))
            return inner
        raise CorruptState(f"bad node kind {kind} at {addr}")

    def _store(self, node: _Node) -> None:
        if isinstance(node, _Leaf):
            parts = [struct.pack(_NODE_FMT, _LEAF, len(node.keys), node.next)]
            for k, v in zip(node.keys, node.vals):
                parts.append(struct.pack(_ENTRY_FMT, k, len(v)))
                parts.append(v)
            buf = b"".join(parts)
        else:
            n = len(node.keys)
            buf = (struct.pack(_NODE_FMT, _INNER, n, 0)
                   + struct.pack(f"<{n}Q", *node.keys)
                   + struct.pack(f"<{n + 1}Q", *node.children))
        if len(buf) > self.node_size:
            raise ValueError(f"node {node.addr} does not fit its block ({len(buf)} > {self.node_size})")
        self.region.write(node.addr, buf)

    # =========================
    # 查找
    # =========================
    def _descend(self, key: int) -> Tuple[_Leaf, _Path]:
        """从根出发按键值下降，返回目标叶子和沿途的 (内部节点, 孩子下标)。"""
        path: _Path = []
        node = self._load(self.root)
        while isinstance(node, _Inner):
            i = bisect_right(node.keys, key)
            path.append((node, i))
            node = self._load(node.children[i])
        return node, path

    def get(self, key: int) -> Optional[bytes]:
        leaf, _ = self._descend(key)
        i = bisect_left(leaf.keys, key)
        if i < len(leaf.keys) and leaf.keys[i] == key:
            return leaf.vals[i]
        return None

    def __contains__(self, key: int) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return self.length

    def items(self) -> Iterator[Tuple[int, bytes]]:
        """沿叶子链按键升序产出 (key, value)。"""
        node = self._load(self.root)
        while isinstance(node, _Inner):
            node = self._load(node.children[0])
        leaf: Optional[_Leaf] = node
        while leaf is not None:
            yield from zip(leaf.keys, leaf.vals)
            leaf = self._load(leaf.next) if leaf.next else None  # type: ignore[assignment]

    # =========================
    # 插入
    # =========================
    def insert(self, key: int, value: bytes) -> Optional[bytes]:
        """
        插入或覆盖一条记录，返回旧值（不存在时为 None）：
          - 键已存在：原地替换值
          - 键不存在：插入有序位置，叶子溢出时自底向上分裂，可能提升新根
        """
        if not isinstance(key, int) or not 0 <= key <= _U64_MAX:
            raise ValueError(f"key must be an unsigned 64-bit integer, got {key!r}")
        if len(value) > self.max_value_size:
            raise ValueError(f"value of {len(value)} bytes exceeds max_value_size={self.max_value_size}")
        value = bytes(value)
        leaf, path = self._descend(key)
        i = bisect_left(leaf.keys, key)
        if i < len(leaf.keys) and leaf.keys[i] == key:
            old = leaf.vals[i]
            leaf.vals[i] = value
            self._store(leaf)
            return old

        leaf.keys.insert(i, key)
        leaf.vals.insert(i, value)
        self.length += 1
        if len(leaf.keys) > self.leaf_capacity:
            self._split_leaf(leaf, path)
        else:
            self._store(leaf)
        self._save_header()
        return None

    def _split_leaf(self, leaf: _Leaf, path: _Path) -> None:
        """叶子溢出：二分叶子，建立右兄弟并把右侧第一个键提升给父节点。"""
        mid = len(leaf.keys) // 2
        right = _Leaf(self._alloc())
        right.keys = leaf.keys[mid:]
        right.vals = leaf.vals[mid:]
        leaf.keys = leaf.keys[:mid]
        leaf.vals = leaf.vals[:mid]
        right.next = leaf.next
        leaf.next = right.addr
        self._store(leaf)
        self._store(right)
        self._insert_to_parent(leaf, right.keys[0], right, path)

    def _insert_to_parent(self, left: _Node, sep: int, right: _Node, path: _Path) -> None:
        """把分裂产生的 (sep, right) 插入父节点；分裂发生在根时创建新根。"""
        if not path:
            root = _Inner(self._alloc())
            root.keys = [sep]
            root.children = [left.addr, right.addr]
            self._store(root)
            self.root = root.addr
            return

        parent, i = path.pop()
        parent.keys.insert(i, sep)
        parent.children.insert(i + 1, right.addr)
        if len(parent.keys) > self.order - 1:
            self._split_inner(parent, path)
        else:
            self._store(parent)

    def _split_inner(self, node: _Inner, path: _Path) -> None:
        """内部节点溢出：按中位键分裂，中位键上推至父节点；左半部分沿用原地址。"""
        mid = len(node.keys) // 2
        sep = node.keys[mid]
        right = _Inner(self._alloc())
        right.keys = node.keys[mid + 1 :]
        right.children = node.children[mid + 1 :]
        node.keys = node.keys[:mid]
        node.children = node.children[: mid + 1]
        self._store(node)
        self._store(right)
        self._insert_to_parent(node, sep, right, path)

    # =========================
    # 删除
    # =========================
    def remove(self, key: int) -> Optional[bytes]:
        """删除 key 并返回其旧值；不存在时返回 None 且不做任何修改。"""
        leaf, path = self._descend(key)
        i = bisect_left(leaf.keys, key)
        if i >= len(leaf.keys) or leaf.keys[i] != key:
            return None
        old = leaf.vals.pop(i)
        leaf.keys.pop(i)
        self.length -= 1
        self._rebalance(leaf, path)
        self._save_header()
        return old

    def _rebalance(self, node: _Node, path: _Path) -> None:
        """
        删除后的下溢修复（自底向上）：
          1) 左兄弟富余 -> 借一个
          2) 右兄弟富余 -> 借一个
          3) 否则与左（或右）兄弟合并，父节点少一个分隔键，继续向上修复
        根是内部节点且只剩一个孩子时，孩子成为新根。
        """
        if not path:
            if isinstance(node, _Inner) and not node.keys:
                self.root = node.children[0]
                self._free(node.addr)
            else:
                self._store(node)
            return

        is_leaf = isinstance(node, _Leaf)
        min_keys = self._min_leaf if is_leaf else self._min_inner
        if len(node.keys) >= min_keys:
            self._store(node)
            return

        parent, i = path[-1]
        left = self._load(parent.children[i - 1]) if i > 0 else None
        right = self._load(parent.children[i + 1]) if i + 1 < len(parent.children) else None

        if left is not None and len(left.keys) > min_keys:
            if is_leaf:
                node.keys.insert(0, left.keys.pop())
                node.vals.insert(0, left.vals.pop())
                parent.keys[i - 1] = node.keys[0]
            else:
                node.keys.insert(0, parent.keys[i - 1])
                node.children.insert(0, left.children.pop())
                parent.keys[i - 1] = left.keys.pop()
            self._store(left)
            self._store(node)
            self._store(parent)
            return

        if right is not None and len(right.keys) > min_keys:
            if is_leaf:
                node.keys.append(right.keys.pop(0))
                node.vals.append(right.vals.pop(0))
                parent.keys[i] = right.keys[0]
            else:
                node.keys.append(parent.keys[i])
                node.children.append(right.children.pop(0))
                parent.keys[i] = right.keys.pop(0)
            self._store(right)
            self._store(node)
            self._store(parent)
            return

        if left is not None:
            self._merge(left, node, parent, i - 1)
        elif right is not None:
            self._merge(node, right, parent, i)
        else:
            raise CorruptState(f"node {node.addr} has no siblings under a non-root parent")
        path.pop()
        self._rebalance(parent, path)

    def _merge(self, left: _Node, right: _Node, parent: _Inner, sep_idx: int) -> None:
        """把 right 并入 left，释放 right，并从父节点删去它们之间的分隔键。"""
        if isinstance(left, _Leaf):
            left.keys += right.keys
            left.vals += right.vals  # type: ignore[union-attr]
            left.next = right.next  # type: ignore[union-attr]
        else:
            left.keys += [parent.keys[sep_idx]] + right.keys
            left.children += right.children  # type: ignore[union-attr]
        self._store(left)
        self._free(right.addr)
        del parent.keys[sep_idx]
        del parent.children[sep_idx + 1]

    # =========================
    # 自检
    # =========================
    def check(self) -> int:
        """
        校验树的结构不变量（测试与排障用）：键有序、分隔键区间、节点占用下限、
        叶子链与中序一致、length 与实际条目数一致。返回树高。
        """
        leaves: List[int] = []

        def walk(addr: int, lo: Optional[int], hi: Optional[int], is_root: bool) -> int:
            node = self._load(addr)
            if node.keys != sorted(set(node.keys)):
                raise AssertionError(f"node {addr}: keys not strictly ascending")
            for k in node.keys:
                if (lo is not None and k < lo) or (hi is not None and k >= hi):
                    raise AssertionError(f"node {addr}: key {k} outside [{lo}, {hi})")
            if isinstance(node, _Leaf):
                if not is_root and len(node.keys) < self._min_leaf:
                    raise AssertionError(f"leaf {addr} underflow")
                if len(node.keys) > self.leaf_capacity:
                    raise AssertionError(f"leaf {addr} overflow")
                leaves.append(addr)
                return 1
            if len(node.children) != len(node.keys) + 1:
                raise AssertionError(f"inner {addr}: child count mismatch")
            if (not is_root and len(node.keys) < self._min_inner) or (is_root and not node.keys):
                raise AssertionError(f"inner {addr} underflow")
            if len(node.keys) > self.order - 1:
                raise AssertionError(f"inner {addr} overflow")
            bounds = [lo] + node.keys + [hi]
            heights = {walk(c, bounds[j], bounds[j + 1], False) for j, c in enumerate(node.children)}
            if len(heights) != 1:
                raise AssertionError(f"inner {addr}: unbalanced subtrees")
            return heights.pop() + 1

        height = walk(self.root, None, None, True)
        chain: List[int] = []
        node = self._load(leaves[0])
        while True:
            chain.append(node.addr)
            if not node.next:  # type: ignore[union-attr]
                break
            node = self._load(node.next)  # type: ignore[union-attr]
        if chain != leaves:
            raise AssertionError("leaf chain does not match in-order leaves")
        if sum(1 for _ in self.items()) != self.length:
            raise AssertionError("length does not match entry count")
        return height
