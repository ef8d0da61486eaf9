"""
Host-facing entry points. Each takes the CrudService explicitly instead of
reaching into process globals; a transport layer (RPC, HTTP, CLI) calls these.
"""
from __future__ import annotations
from typing import List, Optional

from .record import Record, RecordPayload
from .service import ApiResponse, CrudService, Result


def get_message(service: CrudService, message_id: int) -> Result[Record]:
    return service.get(message_id)


def get_all_messages(service: CrudService) -> ApiResponse[List[Record]]:
    return service.list()


def add_message(service: CrudService, payload: RecordPayload) -> Optional[Record]:
    """Returns the created record, or None when it could not be stored (e.g. over the size limit)."""
    return service.add(payload).value


def update_message(service: CrudService, message_id: int, payload: RecordPayload) -> Result[Record]:
    return service.update(message_id, payload)


def delete_message(service: CrudService, message_id: int) -> Result[Record]:
    return service.delete(message_id)
