from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .clock import now_ms
from .errors import NotFound
from .hub import ErrorCallback, Subscription, SubscriptionHub
from .records import Document, merge_data, resolve_server_timestamps

logger = logging.getLogger(__name__)

DocumentsCallback = Callable[[List[Document]], None]


def collection_topic(collection: str) -> str:
    return f"doc:{collection}"


class InMemoryDocumentStore:
    """In-memory keyed document collections with live collection snapshots.

    Snapshots always carry the whole collection ordered by document id;
    listeners receive the current snapshot as soon as they subscribe and a
    fresh one after every write to the collection.
    """

    def __init__(self, hub: SubscriptionHub | None = None, *, now_func=now_ms) -> None:
        self._hub = hub or SubscriptionHub()
        self._now = now_func
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    @property
    def hub(self) -> SubscriptionHub:
        return self._hub

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any] | None:
        data = self._collections.get(collection, {}).get(doc_id)
        if data is None:
            return None
        return copy.deepcopy(data)

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        merge: bool = False,
    ) -> Document:
        resolved = copy.deepcopy(resolve_server_timestamps(data, self._now()))
        docs = self._collections.setdefault(collection, {})
        if merge and doc_id in docs:
            stored = merge_data(docs[doc_id], resolved)
        else:
            stored = resolved
        docs[doc_id] = stored
        self._publish(collection)
        return Document(collection=collection, doc_id=doc_id, data=copy.deepcopy(stored))

    async def update(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> Document:
        docs = self._collections.get(collection, {})
        if doc_id not in docs:
            raise NotFound(f"{collection}/{doc_id} does not exist")
        stored = dict(docs[doc_id])
        stored.update(copy.deepcopy(resolve_server_timestamps(data, self._now())))
        docs[doc_id] = stored
        self._publish(collection)
        return Document(collection=collection, doc_id=doc_id, data=copy.deepcopy(stored))

    async def delete(self, collection: str, doc_id: str) -> bool:
        docs = self._collections.get(collection, {})
        if docs.pop(doc_id, None) is None:
            return False
        self._publish(collection)
        return True

    async def list(self, collection: str) -> List[Document]:
        return self.snapshot(collection)

    async def query(self, collection: str, field: str, value: Any) -> List[Document]:
        return [doc for doc in self.snapshot(collection) if doc.data.get(field) == value]

    def snapshot(self, collection: str) -> List[Document]:
        docs = self._collections.get(collection, {})
        return [
            Document(collection=collection, doc_id=doc_id, data=copy.deepcopy(docs[doc_id]))
            for doc_id in sorted(docs)
        ]

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
        """Terminate every listener of ``collection`` with ``error``."""

        logger.warning("failing watchers of %s: %s", collection, error)
        self._hub.fail(collection_topic(collection), error)

    def _publish(self, collection: str) -> None:
        topic = collection_topic(collection)
        if self._hub.has_listeners(topic):
            self._hub.broadcast(topic, self.snapshot(collection))
