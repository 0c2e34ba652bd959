"""Store collaborators backed by a running ``chatstore`` server.

One websocket carries every request and live subscription. Replies are
matched to requests by frame id; snapshots are routed by watch id.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

import aiohttp

from chatstore.errors import NotFound, RemoteError, StoreError
from chatstore.records import (
    Document,
    LogRecord,
    document_from_wire,
    record_from_wire,
    to_wire,
)

logger = logging.getLogger(__name__)

Decoder = Callable[[Dict[str, Any]], List[Any]]


class RemoteWatch:
    """A live subscription held open on the server."""

    def __init__(
        self,
        store: "RemoteStore",
        decode: Decoder,
        on_snapshot: Callable[[List[Any]], None],
        on_error: Optional[Callable[[Exception], None]],
    ) -> None:
        self._store = store
        self._decode = decode
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self.watch_id: str | None = None
        self.active = True

    def deliver(self, body: Dict[str, Any]) -> None:
        if self.active:
            self._on_snapshot(self._decode(body))

    def fail(self, error: Exception) -> None:
        if not self.active:
            return
        self.active = False
        if self._on_error is not None:
            self._on_error(error)
        else:
            logger.error("remote subscription %s failed: %s", self.watch_id, error)

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._store._release(self)


class RemoteDocuments:
    def __init__(self, store: "RemoteStore") -> None:
        self._store = store

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any] | None:
        body = await self._store.request("doc.get", {"collection": collection, "doc_id": doc_id})
        return body.get("data")

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        merge: bool = False,
    ) -> Document:
        body = await self._store.request(
            "doc.set",
            {"collection": collection, "doc_id": doc_id, "data": to_wire(data), "merge": merge},
        )
        return document_from_wire(collection, body)

    async def update(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> Document:
        body = await self._store.request(
            "doc.update",
            {"collection": collection, "doc_id": doc_id, "data": to_wire(data)},
        )
        return document_from_wire(collection, body)

    async def delete(self, collection: str, doc_id: str) -> bool:
        body = await self._store.request("doc.delete", {"collection": collection, "doc_id": doc_id})
        return bool(body.get("deleted"))

    async def list(self, collection: str) -> List[Document]:
        body = await self._store.request("doc.query", {"collection": collection})
        return [document_from_wire(collection, doc) for doc in body.get("docs", [])]

    async def query(self, collection: str, field: str, value: Any) -> List[Document]:
        body = await self._store.request("doc.query", {"collection": collection, "field": field, "value": value})
        return [document_from_wire(collection, doc) for doc in body.get("docs", [])]

    def watch(
        self,
        collection: str,
        on_snapshot: Callable[[List[Document]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> RemoteWatch:
        def decode(body: Dict[str, Any]) -> List[Document]:
            return [document_from_wire(collection, doc) for doc in body.get("docs", [])]

        return self._store.open_watch("doc.watch", {"collection": collection}, decode, on_snapshot, on_error)


class RemoteMessageLog:
    def __init__(self, store: "RemoteStore") -> None:
        self._store = store

    async def append(self, partition: str, data: Mapping[str, Any], record_id: str | None = None) -> LogRecord:
        payload: Dict[str, Any] = {"partition": partition, "data": to_wire(data)}
        if record_id is not None:
            payload["record_id"] = record_id
        body = await self._store.request("log.append", payload)
        return record_from_wire(body)

    async def list(self, partition: str) -> List[LogRecord]:
        body = await self._store.request("log.list", {"partition": partition})
        return [record_from_wire(record) for record in body.get("records", [])]

    def watch(
        self,
        partition: str,
        on_snapshot: Callable[[List[LogRecord]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> RemoteWatch:
        def decode(body: Dict[str, Any]) -> List[LogRecord]:
            return [record_from_wire(record) for record in body.get("records", [])]

        return self._store.open_watch("log.watch", {"partition": partition}, decode, on_snapshot, on_error)


class RemoteStore:
    """Websocket client for the store server; use as an async context manager."""

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        request_timeout_s: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = request_timeout_s
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._ids = itertools.count(1)
        self._pending: Dict[str, asyncio.Future] = {}
        self._pending_watches: Dict[str, RemoteWatch] = {}
        self._watches: Dict[str, RemoteWatch] = {}
        self._background: Set[asyncio.Task] = set()
        self._closing = False
        self.documents = RemoteDocuments(self)
        self.log = RemoteMessageLog(self)

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> "RemoteStore":
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(f"{self._base_url}/v1/ws")
        except aiohttp.ClientError as exc:
            await self._close_session()
            raise StoreError(f"cannot connect to {self._base_url}: {exc}") from exc
        self._reader_task = asyncio.create_task(self._reader())
        logger.debug("connected to %s", self._base_url)
        return self

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._close_session()

    async def __aenter__(self) -> "RemoteStore":
        return await self.connect()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def request(self, frame_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
        request_id = self._next_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"v": 1, "t": frame_type, "id": request_id, "body": body})
            reply = await asyncio.wait_for(future, self._timeout)
        except asyncio.TimeoutError as exc:
            raise StoreError(f"{frame_type} timed out after {self._timeout}s") from exc
        finally:
            self._pending.pop(request_id, None)
        return reply

    def open_watch(
        self,
        frame_type: str,
        body: Dict[str, Any],
        decode: Decoder,
        on_snapshot: Callable[[List[Any]], None],
        on_error: Optional[Callable[[Exception], None]],
    ) -> RemoteWatch:
        watch = RemoteWatch(self, decode, on_snapshot, on_error)
        request_id = self._next_id()
        self._pending_watches[request_id] = watch
        self._spawn(self._send_watch(request_id, {"v": 1, "t": frame_type, "id": request_id, "body": body}))
        return watch

    async def _send_watch(self, request_id: str, frame: Dict[str, Any]) -> None:
        try:
            await self._send(frame)
        except StoreError as exc:
            watch = self._pending_watches.pop(request_id, None)
            if watch is not None:
                watch.fail(exc)

    def _release(self, watch: RemoteWatch) -> None:
        if any(pending is watch for pending in self._pending_watches.values()):
            # unwatch is sent once the server acknowledges the watch
            return
        if watch.watch_id is not None and self._watches.pop(watch.watch_id, None) is not None:
            self._spawn(self._unwatch(watch.watch_id))

    async def _unwatch(self, watch_id: str) -> None:
        if not self.connected:
            return
        try:
            await self.request("unwatch", {"watch_id": watch_id})
        except StoreError as exc:
            logger.debug("unwatch %s failed: %s", watch_id, exc)

    async def _send(self, frame: Dict[str, Any]) -> None:
        if not self.connected:
            raise StoreError("not connected")
        try:
            await self._ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise StoreError(f"send failed: {exc}") from exc

    async def _reader(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("ignoring malformed frame from store")
                        continue
                    self._dispatch(frame)
                elif msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                    break
        finally:
            self._connection_lost(StoreError("connection to store closed"))

    def _dispatch(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        request_id = frame.get("id")
        body = frame.get("body") or {}

        if frame_type == "watch.ready" and request_id in self._pending_watches:
            watch = self._pending_watches.pop(request_id)
            watch.watch_id = str(body.get("watch_id"))
            if watch.active:
                self._watches[watch.watch_id] = watch
            else:
                self._spawn(self._unwatch(watch.watch_id))
            return
        if frame_type in {"doc.snapshot", "log.snapshot"}:
            watch = self._watches.get(str(body.get("watch_id")))
            if watch is not None:
                watch.deliver(body)
            return
        if frame_type == "watch.error":
            watch = self._watches.pop(str(body.get("watch_id")), None)
            if watch is not None:
                watch.fail(RemoteError(str(body.get("code")), str(body.get("message"))))
            return
        if frame_type == "error" and request_id in self._pending_watches:
            watch = self._pending_watches.pop(request_id)
            watch.fail(RemoteError(str(body.get("code")), str(body.get("message"))))
            return

        future = self._pending.get(request_id) if request_id is not None else None
        if future is None or future.done():
            if frame_type == "error":
                logger.warning("store error: %s", body)
            return
        if frame_type == "error":
            code = str(body.get("code"))
            message = str(body.get("message"))
            future.set_exception(NotFound(message) if code == "not_found" else RemoteError(code, message))
        else:
            future.set_result(body)

    def _connection_lost(self, error: StoreError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        watches = [*self._pending_watches.values(), *self._watches.values()]
        self._pending_watches.clear()
        self._watches.clear()
        for watch in watches:
            if self._closing:
                watch.active = False
            else:
                watch.fail(error)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _next_id(self) -> str:
        return f"r{next(self._ids)}"

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
