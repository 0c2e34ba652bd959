from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional

from .clock import now_ms
from .documents import DocumentsCallback, collection_topic
from .errors import NotFound
from .hub import ErrorCallback, Subscription, SubscriptionHub
from .records import Document, merge_data, resolve_server_timestamps
from .sqlite_backend import SQLiteBackend


class SQLiteDocumentStore:
    """Durable document collections backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, hub: SubscriptionHub | None = None, *, now_func=now_ms) -> None:
        self._backend = backend
        self._hub = hub or SubscriptionHub()
        self._now = now_func

    @property
    def hub(self) -> SubscriptionHub:
        return self._hub

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any] | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT data_json FROM documents WHERE collection=? AND doc_id=?",
                (collection, doc_id),
            ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        merge: bool = False,
    ) -> Document:
        resolved = resolve_server_timestamps(data, self._now())
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                stored = resolved
                if merge:
                    row = cursor.execute(
                        "SELECT data_json FROM documents WHERE collection=? AND doc_id=?",
                        (collection, doc_id),
                    ).fetchone()
                    if row is not None:
                        stored = merge_data(json.loads(row[0]), resolved)
                cursor.execute(
                    "INSERT OR REPLACE INTO documents (collection, doc_id, data_json) VALUES (?, ?, ?)",
                    (collection, doc_id, json.dumps(stored, sort_keys=True)),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        self._publish(collection)
        return Document(collection=collection, doc_id=doc_id, data=stored)

    async def update(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> Document:
        resolved = resolve_server_timestamps(data, self._now())
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute(
                    "SELECT data_json FROM documents WHERE collection=? AND doc_id=?",
                    (collection, doc_id),
                ).fetchone()
                if row is None:
                    conn.rollback()
                    raise NotFound(f"{collection}/{doc_id} does not exist")
                stored = json.loads(row[0])
                stored.update(resolved)
                cursor.execute(
                    "UPDATE documents SET data_json=? WHERE collection=? AND doc_id=?",
                    (json.dumps(stored, sort_keys=True), collection, doc_id),
                )
                conn.commit()
            except NotFound:
                raise
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        self._publish(collection)
        return Document(collection=collection, doc_id=doc_id, data=stored)

    async def delete(self, collection: str, doc_id: str) -> bool:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                "DELETE FROM documents WHERE collection=? AND doc_id=?",
                (collection, doc_id),
            )
            removed = cursor.rowcount > 0
        if removed:
            self._publish(collection)
        return removed

    async def list(self, collection: str) -> List[Document]:
        return self.snapshot(collection)

    async def query(self, collection: str, field: str, value: Any) -> List[Document]:
        return [doc for doc in self.snapshot(collection) if doc.data.get(field) == value]

    def snapshot(self, collection: str) -> List[Document]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT doc_id, data_json FROM documents WHERE collection=? ORDER BY doc_id ASC",
                (collection,),
            ).fetchall()
        return [Document(collection=collection, doc_id=row[0], data=json.loads(row[1])) for row in rows]

    def watch(
        self,
        collection: str,
        on_snapshot: DocumentsCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = self._hub.subscribe(collection_topic(collection), on_snapshot, on_error)
        subscription.deliver(self.snapshot(collection))
        return subscription

    def fail_watchers(self, collection: str, error: Exception) -> None:
        self._hub.fail(collection_topic(collection), error)

    def _publish(self, collection: str) -> None:
        topic = collection_topic(collection)
        if self._hub.has_listeners(topic):
            self._hub.broadcast(topic, self.snapshot(collection))
