from __future__ import annotations

import asyncio
import logging
import secrets
import weakref
from typing import Any, Callable, Dict

from aiohttp import WSCloseCode, WSMsgType, web

from .documents import InMemoryDocumentStore
from .errors import NotFound, StoreError
from .hub import Subscription, SubscriptionHub
from .log import InMemoryMessageLog
from .records import document_to_wire, from_wire, record_to_wire
from .sqlite_backend import SQLiteBackend
from .sqlite_documents import SQLiteDocumentStore
from .sqlite_log import SQLiteMessageLog

logger = logging.getLogger(__name__)

Frame = Dict[str, Any]


class InvalidFrame(Exception):
    pass


class Runtime:
    def __init__(self, *, documents, log, hub: SubscriptionHub, backend: SQLiteBackend | None = None) -> None:
        self.documents = documents
        self.log = log
        self.hub = hub
        self.backend = backend


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)
SOCKETS_KEY = web.AppKey("sockets", weakref.WeakSet)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def close_sockets(app: web.Application) -> None:
    for ws in set(app[SOCKETS_KEY]):
        await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")


def create_app(
    *,
    ping_interval_s: int = 30,
    max_msg_size: int = 1_048_576,
    db_path: str | None = None,
    documents=None,
    log=None,
) -> web.Application:
    """Build the store application; explicit ``documents``/``log`` override the defaults."""

    hub = SubscriptionHub()
    backend: SQLiteBackend | None = None
    if db_path is not None:
        backend = SQLiteBackend(db_path)
        documents = documents or SQLiteDocumentStore(backend, hub)
        log = log or SQLiteMessageLog(backend, hub)
    else:
        documents = documents or InMemoryDocumentStore(hub)
        log = log or InMemoryMessageLog(hub)

    runtime = Runtime(documents=documents, log=log, hub=hub, backend=backend)
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "max_msg_size": max_msg_size,
    }
    app[SOCKETS_KEY] = weakref.WeakSet()
    app.on_shutdown.append(close_sockets)
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/ws", websocket_handler)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> Frame:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _result_frame(frame_type: str, request_id: str | None, body: Dict[str, Any]) -> Frame:
    return {"v": 1, "t": frame_type, "id": request_id, "body": body}


def _require_str(body: Dict[str, Any], *names: str) -> list[str]:
    values = []
    for name in names:
        value = body.get(name)
        if not isinstance(value, str) or not value:
            raise InvalidFrame(f"{', '.join(names)} required")
        values.append(value)
    return values


def _require_map(body: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = body.get(name)
    if not isinstance(value, dict):
        raise InvalidFrame(f"{name} must be an object")
    return from_wire(value)


async def _handle_request(
    runtime: Runtime,
    frame_type: str,
    request_id: str | None,
    body: Dict[str, Any],
    watches: Dict[str, Subscription],
    enqueue: Callable[[Frame], None],
) -> Frame | None:
    if frame_type == "doc.get":
        collection, doc_id = _require_str(body, "collection", "doc_id")
        data = await runtime.documents.get(collection, doc_id)
        return _result_frame("doc.result", request_id, {"doc_id": doc_id, "data": data})
    if frame_type == "doc.set":
        collection, doc_id = _require_str(body, "collection", "doc_id")
        data = _require_map(body, "data")
        document = await runtime.documents.set(collection, doc_id, data, merge=bool(body.get("merge", False)))
        return _result_frame("doc.result", request_id, document_to_wire(document))
    if frame_type == "doc.update":
        collection, doc_id = _require_str(body, "collection", "doc_id")
        data = _require_map(body, "data")
        document = await runtime.documents.update(collection, doc_id, data)
        return _result_frame("doc.result", request_id, document_to_wire(document))
    if frame_type == "doc.delete":
        collection, doc_id = _require_str(body, "collection", "doc_id")
        removed = await runtime.documents.delete(collection, doc_id)
        return _result_frame("doc.result", request_id, {"doc_id": doc_id, "deleted": removed})
    if frame_type == "doc.query":
        (collection,) = _require_str(body, "collection")
        field = body.get("field")
        if field is None:
            documents = await runtime.documents.list(collection)
        else:
            documents = await runtime.documents.query(collection, str(field), body.get("value"))
        return _result_frame("doc.result", request_id, {"docs": [document_to_wire(doc) for doc in documents]})
    if frame_type == "log.append":
        (partition,) = _require_str(body, "partition")
        data = _require_map(body, "data")
        record_id = body.get("record_id")
        record = await runtime.log.append(partition, data, record_id if isinstance(record_id, str) else None)
        return _result_frame("log.result", request_id, record_to_wire(record))
    if frame_type == "log.list":
        (partition,) = _require_str(body, "partition")
        records = await runtime.log.list(partition)
        return _result_frame("log.result", request_id, {"records": [record_to_wire(r) for r in records]})
    if frame_type == "doc.watch":
        (collection,) = _require_str(body, "collection")
        watch_id = f"w_{secrets.token_hex(8)}"
        enqueue(_result_frame("watch.ready", request_id, {"watch_id": watch_id}))

        def on_docs(docs, watch_id: str = watch_id) -> None:
            enqueue(
                _result_frame(
                    "doc.snapshot",
                    None,
                    {"watch_id": watch_id, "collection": collection, "docs": [document_to_wire(d) for d in docs]},
                )
            )

        watches[watch_id] = runtime.documents.watch(collection, on_docs, _watch_error_handler(watch_id, enqueue))
        return None
    if frame_type == "log.watch":
        (partition,) = _require_str(body, "partition")
        watch_id = f"w_{secrets.token_hex(8)}"
        enqueue(_result_frame("watch.ready", request_id, {"watch_id": watch_id}))

        def on_records(records, watch_id: str = watch_id) -> None:
            enqueue(
                _result_frame(
                    "log.snapshot",
                    None,
                    {"watch_id": watch_id, "partition": partition, "records": [record_to_wire(r) for r in records]},
                )
            )

        watches[watch_id] = runtime.log.watch(partition, on_records, _watch_error_handler(watch_id, enqueue))
        return None
    if frame_type == "unwatch":
        (watch_id,) = _require_str(body, "watch_id")
        subscription = watches.pop(watch_id, None)
        if subscription is not None:
            subscription.cancel()
        return _result_frame("unwatch.result", request_id, {"watch_id": watch_id, "cancelled": subscription is not None})
    raise InvalidFrame("unknown frame type")


def _watch_error_handler(watch_id: str, enqueue: Callable[[Frame], None]) -> Callable[[Exception], None]:
    def on_error(error: Exception) -> None:
        enqueue(
            _result_frame(
                "watch.error",
                None,
                {"watch_id": watch_id, "code": "subscription_failed", "message": str(error)},
            )
        )

    return on_error


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"], heartbeat=ws_config["ping_interval_s"])
    await ws.prepare(request)
    request.app[SOCKETS_KEY].add(ws)

    outbound: asyncio.Queue[Frame | None] = asyncio.Queue(maxsize=1000)
    watches: Dict[str, Subscription] = {}
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def enqueue(frame: Frame) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                if ws.closed:
                    continue
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            logger.debug("client went away while sending")

    writer_task = asyncio.create_task(writer())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(_error_frame("invalid_request", "frame must be an object"))
                    continue

                request_id = frame.get("id")
                if frame.get("v") != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}
                if frame_type == "ping":
                    enqueue({"v": 1, "t": "pong", "id": request_id})
                    continue
                if not isinstance(body, dict):
                    enqueue(_error_frame("invalid_request", "body must be an object", request_id=request_id))
                    continue

                try:
                    reply = await _handle_request(runtime, frame_type, request_id, body, watches, enqueue)
                except InvalidFrame as exc:
                    reply = _error_frame("invalid_request", str(exc), request_id=request_id)
                except NotFound as exc:
                    reply = _error_frame("not_found", str(exc), request_id=request_id)
                except StoreError as exc:
                    logger.warning("store error handling %s: %s", frame_type, exc)
                    reply = _error_frame("store_error", str(exc), request_id=request_id)
                if reply is not None:
                    enqueue(reply)
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        request.app[SOCKETS_KEY].discard(ws)
        for subscription in watches.values():
            subscription.cancel()
        watches.clear()
        if not outbound.empty():
            try:
                outbound.put_nowait(None)
            except asyncio.QueueFull:
                writer_task.cancel()
        else:
            outbound.put_nowait(None)
        await asyncio.gather(writer_task, return_exceptions=True)

    return ws
