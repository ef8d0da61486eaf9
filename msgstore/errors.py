# msgstore/errors.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from dataclasses import dataclass

from stablemem.pager import CorruptState


@dataclass
class Error:
    """
    对外返回的错误值（标签联合）：
      kind: "NotFound" | "SerializationError" | "CapacityExceeded" | "CorruptState"
      message: 人类可读的描述
    """
    kind: str
    message: str

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        return {self.kind: {"message": self.message}}

    @classmethod
    def from_exception(cls, exc: BaseException) -> "Error":
        if isinstance(exc, StoreError):
            return cls(exc.kind, exc.message)
        if isinstance(exc, CorruptState):
            return cls("CorruptState", str(exc))
        return cls(type(exc).__name__, str(exc))


class StoreError(Exception):
    """msgstore 所有可作为结果值返回的错误的基类。"""
    kind = "StoreError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_error(self) -> Error:
        return Error(self.kind, self.message)


class NotFound(StoreError):
    kind = "NotFound"


class SerializationError(StoreError):
    """记录字节残缺、格式错误或超长。"""
    kind = "SerializationError"


class CapacityExceeded(SerializationError):
    """编码结果超出单条记录的字节上限，或 id 计数器耗尽。"""
    kind = "CapacityExceeded"


class AllocatorFailure(StoreError):
    """id 计数器无法持久化。致命：分配器从此拒绝继续发号，避免重复 id。"""
    kind = "AllocatorFailure"


__all__ = [
    "Error", "StoreError", "NotFound", "SerializationError",
    "CapacityExceeded", "AllocatorFailure", "CorruptState",
]
