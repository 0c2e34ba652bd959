"""Boundary to the identity provider that owns sign-in state."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, List, Optional, Protocol

from .errors import AuthRequired
from .models import Participant

logger = logging.getLogger(__name__)

AuthListener = Callable[[Optional[Participant]], None]


class IdentityProvider(Protocol):
    def current(self) -> Participant | None: ...

    def on_change(self, callback: AuthListener) -> Callable[[], None]: ...


class LocalIdentityProvider:
    """In-process identity provider; listeners are notified synchronously."""

    def __init__(self, principal: Participant | None = None) -> None:
        self._principal = principal
        self._listeners: List[AuthListener] = []

    def current(self) -> Participant | None:
        return self._principal

    def on_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                return

        return unsubscribe

    def sign_in(self, principal: Participant) -> Participant:
        self._principal = principal
        logger.info("signed in as %s", principal.uid)
        self._notify()
        return principal

    def sign_out(self) -> None:
        if self._principal is None:
            return
        logger.info("signed out %s", self._principal.uid)
        self._principal = None
        self._notify()

    def link_phone(self, phone_number: str, provider_id: str = "phone") -> Participant:
        principal = require_principal(self)
        providers = principal.providers
        if provider_id not in providers:
            providers = (*providers, provider_id)
        self._principal = replace(principal, phone_number=phone_number, phone_verified=True, providers=providers)
        self._notify()
        return self._principal

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._principal)


def require_principal(identity: IdentityProvider) -> Participant:
    principal = identity.current()
    if principal is None:
        raise AuthRequired("sign in required")
    return principal
