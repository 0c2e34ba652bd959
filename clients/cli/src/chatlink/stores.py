"""Interfaces the client expects from its collaborators.

``chatstore`` provides in-memory and SQLite implementations and
:mod:`chatlink.remote` speaks to a running store over a websocket.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from chatstore.errors import StoreError
from chatstore.records import Document, LogRecord

# Failures the client treats as "the store did not accept the operation".
STORE_FAILURES = (StoreError, OSError, asyncio.TimeoutError)


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class DocumentStore(Protocol):
    async def get(self, collection: str, doc_id: str) -> Dict[str, Any] | None: ...

    async def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> Document: ...

    async def update(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> Document: ...

    async def delete(self, collection: str, doc_id: str) -> bool: ...

    async def list(self, collection: str) -> List[Document]: ...

    async def query(self, collection: str, field: str, value: Any) -> List[Document]: ...

    def watch(
        self,
        collection: str,
        on_snapshot: Callable[[List[Document]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Cancellable: ...


class MessageLogStore(Protocol):
    async def append(self, partition: str, data: Mapping[str, Any], record_id: str | None = None) -> LogRecord: ...

    async def list(self, partition: str) -> List[LogRecord]: ...

    def watch(
        self,
        partition: str,
        on_snapshot: Callable[[List[LogRecord]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Cancellable: ...
