"""Client-side record shapes and validation at the store-read boundary."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple, Union

logger = logging.getLogger(__name__)

UNKNOWN_PROFILE_NAME = "Unknown User"
UNKNOWN_SENDER_NAME = "Unknown"


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


def fallback_display_name(display_name: str | None, email: str | None, default: str) -> str:
    """Display name, else the local part of the email, else ``default``."""

    if display_name and display_name.strip():
        return display_name.strip()
    if email and email.strip():
        local_part = email.strip().split("@")[0]
        if local_part:
            return local_part
    return default


@dataclass(frozen=True)
class Participant:
    uid: str
    display_name: str
    email: str = ""
    phone_number: str = ""
    photo_url: str = ""
    phone_verified: bool = False
    providers: Tuple[str, ...] = ()

    @property
    def has_contact(self) -> bool:
        return bool(self.email or self.phone_number)

    def sender_name(self) -> str:
        return fallback_display_name(self.display_name, self.email, UNKNOWN_SENDER_NAME)


def participant_from_record(record: Mapping[str, Any]) -> Participant | None:
    """Admit a directory record only when it carries an identity and a way to reach it.

    Records need a uid, a display name, and an email or a phone number.
    ``phone`` is read when ``phoneNumber`` is empty; older verification
    flows wrote that field.
    """

    uid = _text(record.get("uid"))
    display_name = _text(record.get("displayName"))
    email = _text(record.get("email"))
    phone = _text(record.get("phoneNumber")) or _text(record.get("phone"))
    if not uid or not display_name or not (email or phone):
        logger.debug("dropping directory record uid=%r: incomplete", uid or None)
        return None
    providers = record.get("providers")
    return Participant(
        uid=uid,
        display_name=display_name,
        email=email,
        phone_number=phone,
        photo_url=_text(record.get("photoURL")),
        phone_verified=bool(record.get("phoneVerified", False)),
        providers=tuple(str(p) for p in providers) if isinstance(providers, (list, tuple)) else (),
    )


@dataclass(frozen=True)
class Pending:
    """A timestamp the store has not resolved yet; ``local_ms`` is display-only."""

    local_ms: int

    @property
    def sort_ms(self) -> int:
        return self.local_ms

    @property
    def is_pending(self) -> bool:
        return True


@dataclass(frozen=True)
class Resolved:
    server_ms: int

    @property
    def sort_ms(self) -> int:
        return self.server_ms

    @property
    def is_pending(self) -> bool:
        return False


Timestamp = Union[Pending, Resolved]


def timestamp_from_value(value: Any, now_ms: int) -> Timestamp:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return Pending(now_ms)
    return Resolved(int(value))


@dataclass(frozen=True)
class Message:
    message_id: str
    text: str
    sender_id: str
    sender_name: str
    timestamp: Timestamp
    read: bool = False
    seq: int = 0

    @property
    def pending(self) -> bool:
        return self.timestamp.is_pending

    def sort_key(self) -> Tuple[int, int]:
        return (self.timestamp.sort_ms, self.seq)


def message_from_record(
    message_id: str,
    seq: int,
    record: Mapping[str, Any],
    now_ms: int,
) -> Message | None:
    text = record.get("text")
    sender_id = _text(record.get("senderId"))
    if not isinstance(text, str) or not text or not sender_id:
        logger.debug("dropping malformed message record %s", message_id)
        return None
    return Message(
        message_id=message_id,
        text=text,
        sender_id=sender_id,
        sender_name=_text(record.get("senderName")) or UNKNOWN_SENDER_NAME,
        timestamp=timestamp_from_value(record.get("timestamp"), now_ms),
        read=bool(record.get("read", False)),
        seq=seq,
    )


@dataclass(frozen=True)
class LastMessage:
    text: str
    sender_id: str
    timestamp: Timestamp


@dataclass(frozen=True)
class ThreadSummary:
    """Denormalized cache of a conversation's latest state, used for listing only."""

    key: str
    participants: Tuple[str, ...]
    participant_names: Dict[str, str] = field(default_factory=dict)
    last_message: LastMessage | None = None
    updated_at: Timestamp | None = None

    def peer_name(self, uid: str) -> str:
        for participant in self.participants:
            if participant != uid:
                return self.participant_names.get(participant, participant)
        return self.participant_names.get(uid, uid)


def summary_from_record(key: str, record: Mapping[str, Any], now_ms: int) -> ThreadSummary | None:
    participants = record.get("participants")
    if not isinstance(participants, (list, tuple)) or not participants:
        logger.debug("dropping thread summary %s without participants", key)
        return None
    names = record.get("participantNames")
    last = record.get("lastMessage")
    last_message = None
    if isinstance(last, Mapping) and isinstance(last.get("text"), str):
        last_message = LastMessage(
            text=last["text"],
            sender_id=_text(last.get("senderId")),
            timestamp=timestamp_from_value(last.get("timestamp"), now_ms),
        )
    return ThreadSummary(
        key=key,
        participants=tuple(str(p) for p in participants),
        participant_names={str(k): str(v) for k, v in names.items()} if isinstance(names, Mapping) else {},
        last_message=last_message,
        updated_at=timestamp_from_value(record.get("updatedAt"), now_ms),
    )
