"""Chat client core: conversation addressing, live directory and thread sync."""

from .addressing import KEY_DELIMITER, derive_conversation_key, peer_of, split_conversation_key
from .client import ChatClient
from .composer import Composer
from .directory import (
    admit_participants,
    search_participants,
    upsert_profile,
    watch_directory,
)
from .errors import AuthRequired, ChatError, InvalidIdentifier, SendError, SubscriptionError
from .identity import IdentityProvider, LocalIdentityProvider, require_principal
from .models import Message, Participant, Pending, Resolved, ThreadSummary
from .thread import order_messages, send_message, watch_thread
from .threads import watch_threads

__all__ = [
    "AuthRequired",
    "ChatClient",
    "ChatError",
    "Composer",
    "IdentityProvider",
    "InvalidIdentifier",
    "KEY_DELIMITER",
    "LocalIdentityProvider",
    "Message",
    "Participant",
    "Pending",
    "Resolved",
    "SendError",
    "SubscriptionError",
    "ThreadSummary",
    "admit_participants",
    "derive_conversation_key",
    "order_messages",
    "peer_of",
    "require_principal",
    "search_participants",
    "send_message",
    "split_conversation_key",
    "upsert_profile",
    "watch_directory",
    "watch_thread",
    "watch_threads",
]
