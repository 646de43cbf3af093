"""Shared message queue.

The store is a plain in-memory ordered list owned by the realtime hub. Every
method is synchronous, so on the server's single event loop no two mutations
can interleave; callers re-read the store after any ``await``.
"""

from __future__ import annotations

import logging

from marquee.models import Message

logger = logging.getLogger(__name__)


class QueueError(Exception):
    """Base class for rejected queue mutations."""


class DuplicateIdError(QueueError):
    """Raised when adding a message whose id is already queued."""


class MessageNotFoundError(QueueError):
    """Raised when updating a message that is not in the queue."""


class MessageQueue:
    """Insertion-ordered list of :class:`~marquee.models.Message` records."""

    def __init__(self) -> None:
        self._messages: list[Message] = []

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return self._index(message_id) is not None

    # ── Mutations ──────────────────────────────────────────────────

    def add(self, message: Message) -> Message:
        """Append *message*; raises :class:`DuplicateIdError` if its id exists."""
        if self._index(message.id) is not None:
            raise DuplicateIdError(f"Message already queued: {message.id}")
        self._messages.append(message)
        logger.debug("Queued message %s (%d in queue)", message.id, len(self._messages))
        return message

    def update(self, message: Message) -> Message:
        """Replace the queued record with the same id.

        Updates to an id that is no longer queued are rejected rather than
        ignored, so a viewer racing an update against a delete gets told.
        """
        idx = self._index(message.id)
        if idx is None:
            raise MessageNotFoundError(f"Message not found: {message.id}")
        self._messages[idx] = message
        return message

    def remove(self, message_id: str) -> Message | None:
        """Delete a message by id. Missing ids are a no-op returning ``None``."""
        idx = self._index(message_id)
        if idx is None:
            return None
        return self._messages.pop(idx)

    def clear(self) -> int:
        """Drop every message and return how many were removed."""
        count = len(self._messages)
        self._messages = []
        return count

    # ── Reads ──────────────────────────────────────────────────────

    def get(self, message_id: str) -> Message | None:
        idx = self._index(message_id)
        return self._messages[idx] if idx is not None else None

    def snapshot(self) -> list[Message]:
        """Return copies of every queued message in insertion order."""
        return [msg.model_copy() for msg in self._messages]

    def _index(self, message_id: object) -> int | None:
        for i, msg in enumerate(self._messages):
            if msg.id == message_id:
                return i
        return None
