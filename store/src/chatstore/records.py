"""Record shapes shared by the document and message-log stores."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

WIRE_SERVER_TIMESTAMP = {"$serverTimestamp": True}


class _ServerTimestamp:
    """Sentinel replaced by the store's clock when a write is applied."""

    _instance: "_ServerTimestamp | None" = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    def __reduce__(self):
        return (_ServerTimestamp, ())


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Document:
    """A keyed record in a document collection."""

    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LogRecord:
    """An append-only message-log entry.

    ``seq`` is the store-assigned document order within the partition,
    starting at 1. ``ts_ms`` is ``None`` while the server timestamp is
    still pending (local echo of a write that has not been applied).
    """

    partition: str
    seq: int
    record_id: str
    data: Dict[str, Any]
    ts_ms: int | None

    @property
    def pending(self) -> bool:
        return self.ts_ms is None


def resolve_server_timestamps(data: Mapping[str, Any], ts_ms: int) -> Dict[str, Any]:
    """Return a copy of ``data`` with every ``SERVER_TIMESTAMP`` replaced by ``ts_ms``."""

    resolved: Dict[str, Any] = {}
    for key, value in data.items():
        if value is SERVER_TIMESTAMP:
            resolved[key] = ts_ms
        elif isinstance(value, Mapping):
            resolved[key] = resolve_server_timestamps(value, ts_ms)
        else:
            resolved[key] = value
    return resolved


def pending_server_timestamps(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``data`` with unresolved server timestamps shown as ``None``."""

    pending: Dict[str, Any] = {}
    for key, value in data.items():
        if value is SERVER_TIMESTAMP:
            pending[key] = None
        elif isinstance(value, Mapping):
            pending[key] = pending_server_timestamps(value)
        else:
            pending[key] = value
    return pending


def merge_data(existing: Mapping[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``update`` into ``existing``; nested maps merge, other values replace."""

    merged = dict(existing)
    for key, value in update.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_data(current, value)
        else:
            merged[key] = value
    return merged


def to_wire(data: Any) -> Any:
    """Encode ``SERVER_TIMESTAMP`` sentinels for JSON transport."""

    if data is SERVER_TIMESTAMP:
        return dict(WIRE_SERVER_TIMESTAMP)
    if isinstance(data, Mapping):
        return {key: to_wire(value) for key, value in data.items()}
    if isinstance(data, (list, tuple)):
        return [to_wire(value) for value in data]
    return data


def from_wire(data: Any) -> Any:
    """Decode JSON transport values back into ``SERVER_TIMESTAMP`` sentinels."""

    if isinstance(data, Mapping):
        if dict(data) == WIRE_SERVER_TIMESTAMP:
            return SERVER_TIMESTAMP
        return {key: from_wire(value) for key, value in data.items()}
    if isinstance(data, list):
        return [from_wire(value) for value in data]
    return data


def document_to_wire(document: Document) -> Dict[str, Any]:
    return {"doc_id": document.doc_id, "data": document.data}


def record_to_wire(record: LogRecord) -> Dict[str, Any]:
    return {
        "partition": record.partition,
        "seq": record.seq,
        "record_id": record.record_id,
        "data": record.data,
        "ts_ms": record.ts_ms,
    }


def record_from_wire(payload: Mapping[str, Any]) -> LogRecord:
    ts_ms = payload.get("ts_ms")
    return LogRecord(
        partition=str(payload["partition"]),
        seq=int(payload["seq"]),
        record_id=str(payload["record_id"]),
        data=dict(payload.get("data") or {}),
        ts_ms=None if ts_ms is None else int(ts_ms),
    )


def document_from_wire(collection: str, payload: Mapping[str, Any]) -> Document:
    return Document(collection=collection, doc_id=str(payload["doc_id"]), data=dict(payload.get("data") or {}))
