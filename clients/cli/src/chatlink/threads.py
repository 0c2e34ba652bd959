"""Live list of the principal's conversations, read from the summary cache."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional

from chatstore.clock import now_ms
from chatstore.records import Document

from .errors import SubscriptionError
from .models import ThreadSummary, summary_from_record
from .stores import DocumentStore
from .subscription import LiveSubscription
from .thread import CHATS_COLLECTION

logger = logging.getLogger(__name__)

ThreadsCallback = Callable[[List[ThreadSummary]], None]


def summaries_for(documents: Iterable[Document], principal_id: str, now: int) -> List[ThreadSummary]:
    """Summaries the principal takes part in, most recently active first."""

    summaries: List[ThreadSummary] = []
    for document in documents:
        summary = summary_from_record(document.doc_id, document.data, now)
        if summary is None or principal_id not in summary.participants:
            continue
        summaries.append(summary)
    summaries.sort(key=lambda s: s.updated_at.sort_ms if s.updated_at else 0, reverse=True)
    return summaries


def watch_threads(
    documents: DocumentStore,
    principal_id: str,
    on_update: ThreadsCallback,
    on_error: Optional[Callable[[SubscriptionError], None]] = None,
    *,
    now_func: Callable[[], int] = now_ms,
) -> LiveSubscription:
    live = LiveSubscription(f"threads:{principal_id}")

    def handle_snapshot(docs: List[Document]) -> None:
        on_update(summaries_for(docs, principal_id, now_func()))

    def handle_error(error: Exception) -> None:
        on_update([])
        failure = SubscriptionError(f"thread list subscription failed: {error}")
        failure.__cause__ = error
        if on_error is not None:
            on_error(failure)
        else:
            logger.error("%s", failure)

    inner = documents.watch(CHATS_COLLECTION, live.guard(handle_snapshot), live.guard(handle_error))
    return live.attach(inner)
