# msgstore/service.py
# -*- coding: utf-8 -*-
from __future__ import annotations
import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, TypeVar

from .context import StoreContext
from .errors import Error, NotFound, SerializationError
from .record import Record, RecordPayload

logger = logging.getLogger("msgstore.service")

T = TypeVar("T")

LIST_OK_LOG = "Successfully retrieved all messages"


@dataclass
class Result(Generic[T]):
    """单条操作的结果：value 与 error 恰有一个非空。"""
    value: Optional[T] = None
    error: Optional[Error] = None

    @property
    def is_ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise ValueError(f"called unwrap on an error result: {self.error.kind}: {self.error.message}")
        return self.value  # type: ignore[return-value]

    @classmethod
    def ok(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def err(cls, exc: BaseException) -> "Result[T]":
        return cls(error=Error.from_exception(exc))


@dataclass
class ApiResponse(Generic[T]):
    """批量读取的信封；即使结果为空也总能构造出来。"""
    data: Optional[T] = None
    logs: List[str] = field(default_factory=list)
    error: Optional[Error] = None


class CrudService:
    """
    记录的增删改查：
      get / list / add / update / delete
    每个操作在上下文锁内完整执行；NotFound 与 SerializationError（含 CapacityExceeded）
    作为结果值返回，存储损坏（CorruptState）与分配器失效（AllocatorFailure）照常向上抛出。
    """

    def __init__(self, ctx: StoreContext, clock: Callable[[], int] = time.time_ns):
        self.ctx = ctx
        self.clock = clock

    def get(self, rid: int) -> Result[Record]:
        with self.ctx.lock:
            logger.debug("get id=%d", rid)
            try:
                rec = self.ctx.records.get(rid)
            except SerializationError as e:
                return Result.err(e)
            if rec is None:
                return Result.err(NotFound(f"a message with id={rid} not found"))
            logger.debug("message: %r", rec)
            return Result.ok(rec)

    def list(self) -> ApiResponse[List[Record]]:
        with self.ctx.lock:
            try:
                rows = self.ctx.records.scan()
            except SerializationError as e:
                logger.error("list failed: %s", e)
                return ApiResponse(data=None, logs=[f"Failed to retrieve messages: {e}"], error=e.to_error())
            logger.debug("listed %d message(s)", len(rows))
            return ApiResponse(data=[rec for _, rec in rows], logs=[LIST_OK_LOG], error=None)

    def add(self, payload: RecordPayload) -> Result[Record]:
        with self.ctx.lock:
            rid = self.ctx.ids.allocate_next()
            rec = Record(
                id=rid,
                title=payload.title,
                body=payload.body,
                attachment_url=payload.attachment_url,
                created_at=self.clock(),
                updated_at=None,
            )
            try:
                self.ctx.records.put(rid, rec)
            except SerializationError as e:
                # id 已经消耗，不会回收
                logger.warning("add id=%d rejected: %s", rid, e)
                return Result.err(e)
            logger.info("added message id=%d", rid)
            return Result.ok(rec)

    def update(self, rid: int, payload: RecordPayload) -> Result[Record]:
        with self.ctx.lock:
            try:
                rec = self.ctx.records.get(rid)
            except SerializationError as e:
                return Result.err(e)
            if rec is None:
                return Result.err(NotFound(f"couldn't update a message with id={rid}. message not found"))
            updated = Record(
                id=rec.id,
                title=payload.title,
                body=payload.body,
                attachment_url=payload.attachment_url,
                created_at=rec.created_at,
                updated_at=self.clock(),
            )
            try:
                self.ctx.records.put(rid, updated)
            except SerializationError as e:
                logger.warning("update id=%d rejected: %s", rid, e)
                return Result.err(e)
            logger.info("updated message id=%d", rid)
            return Result.ok(updated)

    def delete(self, rid: int) -> Result[Record]:
        with self.ctx.lock:
            try:
                rec = self.ctx.records.remove(rid)
            except SerializationError as e:
                return Result.err(e)
            if rec is None:
                return Result.err(NotFound(f"couldn't delete message of id={rid}. message not found"))
            logger.info("deleted message id=%d", rid)
            return Result.ok(rec)
