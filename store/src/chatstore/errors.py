from __future__ import annotations


class StoreError(Exception):
    """Base class for failures raised by a backing store."""


class NotFound(StoreError):
    """Raised when an update targets a document that does not exist."""


class RemoteError(StoreError):
    """An ``error`` frame returned by a remote store."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")
