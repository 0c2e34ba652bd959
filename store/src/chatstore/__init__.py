"""Backing store: document collections, message log and live subscriptions."""

from .documents import InMemoryDocumentStore
from .errors import NotFound, RemoteError, StoreError
from .hub import Subscription, SubscriptionHub
from .log import InMemoryMessageLog
from .records import SERVER_TIMESTAMP, Document, LogRecord
from .sqlite_backend import SQLiteBackend
from .sqlite_documents import SQLiteDocumentStore
from .sqlite_log import SQLiteMessageLog

__all__ = [
    "Document",
    "InMemoryDocumentStore",
    "InMemoryMessageLog",
    "LogRecord",
    "NotFound",
    "RemoteError",
    "SERVER_TIMESTAMP",
    "SQLiteBackend",
    "SQLiteDocumentStore",
    "SQLiteMessageLog",
    "StoreError",
    "Subscription",
    "SubscriptionHub",
]
