"""Ordered live view of one conversation and the outgoing-message write path."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional

from chatstore.clock import now_ms
from chatstore.records import SERVER_TIMESTAMP, LogRecord

from .addressing import derive_conversation_key
from .errors import InvalidIdentifier, SendError, SubscriptionError
from .models import Message, Participant, message_from_record
from .stores import STORE_FAILURES, DocumentStore, MessageLogStore
from .subscription import LiveSubscription

logger = logging.getLogger(__name__)

CHATS_COLLECTION = "chats"

ThreadCallback = Callable[[List[Message]], None]
ErrorCallback = Callable[[SubscriptionError], None]


def order_messages(records: Iterable[LogRecord], now: int) -> List[Message]:
    """Rebuild the ordered message sequence from a full log snapshot.

    Messages whose server timestamp is still pending sort at ``now`` until
    a later snapshot carries the resolved value. Ties keep store order.
    """

    messages: List[Message] = []
    for record in records:
        message = message_from_record(record.record_id, record.seq, record.data, now)
        if message is not None:
            messages.append(message)
    messages.sort(key=Message.sort_key)
    return messages


def watch_thread(
    log: MessageLogStore,
    key: str,
    on_update: ThreadCallback,
    on_error: Optional[ErrorCallback] = None,
    *,
    now_func: Callable[[], int] = now_ms,
) -> LiveSubscription:
    """Deliver the full ordered thread for ``key`` on every log change.

    Every snapshot is rebuilt from scratch, which is linear in thread size.
    On a store failure the last delivered view stands and the error goes to
    ``on_error``.
    """

    live = LiveSubscription(f"thread:{key}")

    def handle_snapshot(records: List[LogRecord]) -> None:
        messages = order_messages(records, now_func())
        logger.debug("thread %s snapshot: %d messages", key, len(messages))
        on_update(messages)

    def handle_error(error: Exception) -> None:
        failure = SubscriptionError(f"thread {key} subscription failed: {error}")
        failure.__cause__ = error
        if on_error is not None:
            on_error(failure)
        else:
            logger.error("%s", failure)

    inner = log.watch(key, live.guard(handle_snapshot), live.guard(handle_error))
    return live.attach(inner)


async def send_message(
    documents: DocumentStore,
    log: MessageLogStore,
    key: str,
    sender: Participant,
    recipient: Participant,
    body: str,
) -> Message | None:
    """Append ``body`` to the thread log, then refresh the thread summary.

    Whitespace-only bodies are ignored and nothing is written. The two
    writes are not atomic: the log is authoritative and the summary is a
    best-effort cache refreshed on every send.
    """

    text = body.strip() if isinstance(body, str) else ""
    if not text:
        logger.debug("empty message for %s, not sending", key)
        return None
    if sender.uid == recipient.uid:
        raise InvalidIdentifier("cannot start a conversation with yourself")
    if derive_conversation_key(sender.uid, recipient.uid) != key:
        raise InvalidIdentifier(f"conversation key {key!r} does not belong to {sender.uid!r} and {recipient.uid!r}")

    sender_name = sender.sender_name()
    try:
        record = await log.append(
            key,
            {
                "text": text,
                "senderId": sender.uid,
                "senderName": sender_name,
                "timestamp": SERVER_TIMESTAMP,
                "read": False,
            },
        )
    except STORE_FAILURES as exc:
        raise SendError(f"failed to send message: {exc}") from exc

    summary = {
        "participants": [sender.uid, recipient.uid],
        "participantNames": {
            sender.uid: sender_name,
            recipient.uid: recipient.sender_name(),
        },
        "lastMessage": {
            "text": text,
            "senderId": sender.uid,
            "timestamp": SERVER_TIMESTAMP,
        },
        "updatedAt": SERVER_TIMESTAMP,
    }
    try:
        existing = await documents.get(CHATS_COLLECTION, key)
        if existing is None:
            logger.info("creating thread summary %s", key)
            await documents.set(CHATS_COLLECTION, key, {**summary, "createdAt": SERVER_TIMESTAMP})
        else:
            await documents.update(CHATS_COLLECTION, key, summary)
    except STORE_FAILURES as exc:
        logger.warning("message %s appended but summary %s was not refreshed: %s", record.record_id, key, exc)
        raise SendError(f"failed to update conversation summary: {exc}", appended=True) from exc

    message = message_from_record(record.record_id, record.seq, record.data, now_ms())
    return message
