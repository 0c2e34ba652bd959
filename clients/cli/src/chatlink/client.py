from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .addressing import derive_conversation_key, validate_identifier
from .composer import Composer
from .directory import DirectoryCallback, upsert_profile, watch_directory
from .errors import InvalidIdentifier, SubscriptionError
from .identity import IdentityProvider, require_principal
from .models import Message, Participant
from .stores import DocumentStore, MessageLogStore
from .subscription import LiveSubscription
from .thread import ThreadCallback, send_message, watch_thread
from .threads import ThreadsCallback, watch_threads

logger = logging.getLogger(__name__)

SubscriptionErrorCallback = Callable[[SubscriptionError], None]


class ChatClient:
    """Wires the store collaborators and the identity provider for one app session.

    Every subscription opened through the client is tracked; ``close()`` and
    a sign-out both cancel all of them.
    """

    def __init__(self, documents: DocumentStore, log: MessageLogStore, identity: IdentityProvider) -> None:
        self.documents = documents
        self.log = log
        self.identity = identity
        self._subscriptions: List[LiveSubscription] = []
        self._unsubscribe_auth = identity.on_change(self._on_auth_change)
        self._closed = False

    @property
    def principal(self) -> Participant:
        return require_principal(self.identity)

    @property
    def open_subscriptions(self) -> int:
        return sum(1 for sub in self._subscriptions if sub.active)

    def conversation_key(self, peer_id: str) -> str:
        principal = self.principal
        validate_identifier(peer_id)
        if peer_id == principal.uid:
            raise InvalidIdentifier("cannot start a conversation with yourself")
        return derive_conversation_key(principal.uid, peer_id)

    def open_directory(
        self,
        on_update: DirectoryCallback,
        on_error: Optional[SubscriptionErrorCallback] = None,
    ) -> LiveSubscription:
        principal = self.principal
        return self._track(watch_directory(self.documents, on_update, principal.uid, on_error))

    def open_thread(
        self,
        peer_id: str,
        on_update: ThreadCallback,
        on_error: Optional[SubscriptionErrorCallback] = None,
    ) -> LiveSubscription:
        key = self.conversation_key(peer_id)
        return self._track(watch_thread(self.log, key, on_update, on_error))

    def open_threads(
        self,
        on_update: ThreadsCallback,
        on_error: Optional[SubscriptionErrorCallback] = None,
    ) -> LiveSubscription:
        principal = self.principal
        return self._track(watch_threads(self.documents, principal.uid, on_update, on_error))

    async def send(self, peer: Participant, body: str) -> Message | None:
        sender = self.principal
        key = self.conversation_key(peer.uid)
        return await send_message(self.documents, self.log, key, sender, peer, body)

    def composer(self, peer: Participant) -> Composer:
        self.conversation_key(peer.uid)

        async def send(text: str) -> Message | None:
            return await self.send(peer, text)

        return Composer(send)

    async def sign_in_profile(self, push_token: str | None = None) -> dict:
        return await upsert_profile(self.documents, self.principal, push_token)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_all()
        self._unsubscribe_auth()

    def _track(self, subscription: LiveSubscription) -> LiveSubscription:
        self._subscriptions = [sub for sub in self._subscriptions if sub.active]
        self._subscriptions.append(subscription)
        return subscription

    def _cancel_all(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.cancel()

    def _on_auth_change(self, principal: Participant | None) -> None:
        if principal is None:
            logger.info("principal signed out; cancelling %d subscriptions", self.open_subscriptions)
            self._cancel_all()
