"""Deterministic conversation keys for 1:1 threads."""

from __future__ import annotations

from typing import Tuple

from .errors import InvalidIdentifier

KEY_DELIMITER = "_"


def validate_identifier(identifier: object) -> str:
    if not isinstance(identifier, str) or not identifier.strip():
        raise InvalidIdentifier("participant identifier must be a non-empty string")
    if KEY_DELIMITER in identifier:
        raise InvalidIdentifier(f"participant identifier may not contain {KEY_DELIMITER!r}: {identifier!r}")
    return identifier


def derive_conversation_key(id_a: str, id_b: str) -> str:
    """Return the key shared by ``id_a`` and ``id_b`` regardless of argument order.

    Either participant computes the same key without a lookup, so the first
    message needs no handshake. Self-conversations are not rejected here.
    """

    first = validate_identifier(id_a)
    second = validate_identifier(id_b)
    return KEY_DELIMITER.join(sorted((first, second)))


def split_conversation_key(key: str) -> Tuple[str, str]:
    if not isinstance(key, str):
        raise InvalidIdentifier("conversation key must be a string")
    parts = key.split(KEY_DELIMITER)
    if len(parts) != 2 or not all(parts):
        raise InvalidIdentifier(f"malformed conversation key: {key!r}")
    return parts[0], parts[1]


def peer_of(key: str, uid: str) -> str:
    first, second = split_conversation_key(key)
    if uid == first:
        return second
    if uid == second:
        return first
    raise InvalidIdentifier(f"{uid!r} is not a participant of {key!r}")
