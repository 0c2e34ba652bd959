"""Live participant directory and profile bookkeeping."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from chatstore.records import SERVER_TIMESTAMP, Document

from .errors import SubscriptionError
from .models import UNKNOWN_PROFILE_NAME, Participant, fallback_display_name, participant_from_record
from .stores import STORE_FAILURES, DocumentStore
from .subscription import LiveSubscription

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"

DirectoryCallback = Callable[[List[Participant]], None]
ErrorCallback = Callable[[SubscriptionError], None]


def admit_participants(documents: Iterable[Document], exclude_id: str | None) -> List[Participant]:
    """Filter a directory snapshot down to reachable, unique, non-self participants.

    The first record seen for a uid wins; snapshot order is preserved.
    """

    admitted: List[Participant] = []
    seen: set[str] = set()
    for document in documents:
        participant = participant_from_record(document.data)
        if participant is None:
            continue
        if participant.uid == exclude_id or participant.uid in seen:
            continue
        seen.add(participant.uid)
        admitted.append(participant)
    return admitted


def search_participants(participants: Iterable[Participant], query: str) -> List[Participant]:
    """Case-insensitive substring match on display name or email."""

    needle = query.strip().lower()
    if not needle:
        return list(participants)
    return [
        participant
        for participant in participants
        if needle in participant.display_name.lower() or needle in participant.email.lower()
    ]


def watch_directory(
    documents: DocumentStore,
    on_update: DirectoryCallback,
    exclude_id: str | None,
    on_error: Optional[ErrorCallback] = None,
) -> LiveSubscription:
    """Deliver the full filtered directory on every remote change.

    A failed subscription degrades to an empty directory and is not retried.
    """

    live = LiveSubscription(f"directory:{exclude_id}")

    def handle_snapshot(docs: List[Document]) -> None:
        participants = admit_participants(docs, exclude_id)
        logger.debug("directory snapshot: %d records, %d admitted", len(docs), len(participants))
        on_update(participants)

    def handle_error(error: Exception) -> None:
        logger.warning("directory subscription failed: %s", error)
        on_update([])
        failure = SubscriptionError(f"directory subscription failed: {error}")
        failure.__cause__ = error
        if on_error is not None:
            on_error(failure)
        else:
            logger.error("%s", failure)

    inner = documents.watch(USERS_COLLECTION, live.guard(handle_snapshot), live.guard(handle_error))
    return live.attach(inner)


def _profile_fields(principal: Participant) -> Dict[str, object]:
    return {
        "uid": principal.uid,
        "displayName": fallback_display_name(principal.display_name, principal.email, UNKNOWN_PROFILE_NAME),
        "email": principal.email,
        "phoneNumber": principal.phone_number,
        "photoURL": principal.photo_url,
    }


async def upsert_profile(
    documents: DocumentStore,
    principal: Participant,
    push_token: str | None = None,
) -> Dict[str, object]:
    """Create or refresh the principal's directory record after sign-in."""

    existing = await documents.get(USERS_COLLECTION, principal.uid)
    record: Dict[str, object] = _profile_fields(principal)
    record.update(
        {
            "phoneVerified": bool(principal.phone_number),
            "lastLogin": SERVER_TIMESTAMP,
            "providers": list(principal.providers) or ["google"],
        }
    )
    if push_token is not None:
        record["fcmToken"] = push_token
    if existing is None:
        record["createdAt"] = SERVER_TIMESTAMP
        logger.info("creating directory record for %s", principal.uid)
    else:
        logger.info("updating directory record for %s", principal.uid)
    await documents.set(USERS_COLLECTION, principal.uid, record, merge=True)
    return record


async def repair_profile(documents: DocumentStore, principal: Participant) -> Dict[str, object]:
    """Rewrite the identity fields so a partially written record is admitted again."""

    record: Dict[str, object] = {
        "uid": principal.uid,
        "displayName": fallback_display_name(principal.display_name, principal.email, UNKNOWN_PROFILE_NAME),
        "email": principal.email,
        "photoURL": principal.photo_url,
        "lastLogin": SERVER_TIMESTAMP,
    }
    if await documents.get(USERS_COLLECTION, principal.uid) is None:
        record["createdAt"] = SERVER_TIMESTAMP
    await documents.set(USERS_COLLECTION, principal.uid, record, merge=True)
    return record


async def record_phone_link(documents: DocumentStore, principal: Participant) -> Dict[str, object]:
    """Persist a phone credential the identity provider has just linked."""

    record: Dict[str, object] = {
        "uid": principal.uid,
        "displayName": principal.display_name,
        "email": principal.email,
        "phoneNumber": principal.phone_number,
        "phoneVerified": True,
        "lastLogin": SERVER_TIMESTAMP,
        "providers": list(principal.providers),
    }
    await documents.set(USERS_COLLECTION, principal.uid, record, merge=True)
    return record


async def phone_number_exists(documents: DocumentStore, phone_number: str) -> bool:
    try:
        matches = await documents.query(USERS_COLLECTION, "phoneNumber", phone_number)
    except STORE_FAILURES as exc:
        logger.warning("phone lookup failed: %s", exc)
        return False
    return bool(matches)


async def needs_phone_verification(documents: DocumentStore, uid: str) -> bool:
    try:
        record = await documents.get(USERS_COLLECTION, uid)
    except STORE_FAILURES as exc:
        logger.warning("could not read verification state for %s: %s", uid, exc)
        return True
    if record is None:
        return True
    return not bool(record.get("phoneVerified", False))


async def remove_duplicate_profiles(documents: DocumentStore) -> Tuple[int, int]:
    """Delete records without a uid and extra records per uid.

    The record stored under its own uid is kept when there is one, else the
    first one in snapshot order. Returns ``(removed, unique)``.
    """

    keep: Dict[str, str] = {}
    doomed: List[str] = []
    for document in await documents.list(USERS_COLLECTION):
        uid = document.data.get("uid")
        if not isinstance(uid, str) or not uid:
            doomed.append(document.doc_id)
            continue
        kept = keep.get(uid)
        if kept is None:
            keep[uid] = document.doc_id
        elif document.doc_id == uid:
            doomed.append(kept)
            keep[uid] = document.doc_id
        else:
            doomed.append(document.doc_id)

    for doc_id in doomed:
        await documents.delete(USERS_COLLECTION, doc_id)
    logger.info("removed %d duplicate directory records, %d unique", len(doomed), len(keep))
    return len(doomed), len(keep)
