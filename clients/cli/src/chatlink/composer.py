from __future__ import annotations

import logging
from typing import Awaitable, Callable

from .errors import SendError
from .models import Message

logger = logging.getLogger(__name__)

SendFunc = Callable[[str], Awaitable["Message | None"]]


class Composer:
    """Draft and in-flight state for one conversation's input field."""

    def __init__(self, send: SendFunc) -> None:
        self._send = send
        self.draft = ""
        self.sending = False
        self.error: str | None = None

    @property
    def can_send(self) -> bool:
        return bool(self.draft.strip()) and not self.sending

    def set_draft(self, text: str) -> None:
        self.draft = text

    def dismiss_error(self) -> None:
        self.error = None

    async def submit(self) -> Message | None:
        """Send the current draft.

        The draft is cleared optimistically and put back whenever the send
        does not complete, including errors that propagate to the caller.
        """

        draft = self.draft
        text = draft.strip()
        if not text or self.sending:
            return None

        self.draft = ""
        self.sending = True
        self.error = None
        sent = False
        try:
            message = await self._send(text)
            sent = True
            return message
        except SendError as exc:
            logger.warning("send failed: %s", exc)
            if exc.appended:
                self.error = f"Message sent, but the conversation list may lag: {exc}"
            else:
                self.error = f"Failed to send message: {exc}"
            return None
        finally:
            if not sent:
                self.draft = draft
            self.sending = False
