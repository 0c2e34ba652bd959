from __future__ import annotations

import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class LiveSubscription:
    """Consumer-side handle for one live store subscription.

    Callbacks are wrapped with :meth:`guard` before the store subscription is
    opened, so nothing reaches the consumer after :meth:`cancel` even when
    the store delivers a snapshot late.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._inner: Any = None
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled

    def attach(self, inner: Any) -> "LiveSubscription":
        self._inner = inner
        if self._cancelled:
            inner.cancel()
        return self

    def guard(self, callback: Callable[..., None]) -> Callable[..., None]:
        def guarded(*args: Any) -> None:
            if self._cancelled:
                logger.debug("dropping update for cancelled subscription %s", self.name)
                return
            callback(*args)

        return guarded

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        inner: Optional[Any] = self._inner
        if inner is not None:
            inner.cancel()
        logger.debug("cancelled subscription %s", self.name)
