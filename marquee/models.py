"""Queue data model shared by the store, the hub and the viewer protocol."""

from __future__ import annotations

import time
import uuid
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"


def new_message_id() -> str:
    return uuid.uuid4().hex


class Message(BaseModel):
    """A viewer-submitted message waiting for (or occupying) a display slot.

    ``send_start_time`` is present only while the message is ``sending``, and
    ``slot_index`` is ``None`` exactly while it is ``pending``.
    """

    id: str = Field(default_factory=new_message_id, min_length=1)
    label: str = ""
    text: str = ""
    timestamp: float = Field(default_factory=time.time)
    slot_index: int | None = None
    status: MessageStatus = MessageStatus.PENDING
    send_start_time: float | None = None

    @model_validator(mode="after")
    def _check_status_fields(self) -> Message:
        sending = self.status == MessageStatus.SENDING
        if sending != (self.send_start_time is not None):
            raise ValueError("send_start_time must be set if and only if status is 'sending'")
        if sending != (self.slot_index is not None):
            raise ValueError("slot_index must be set if and only if status is 'sending'")
        return self

    @property
    def is_sending(self) -> bool:
        return self.status == MessageStatus.SENDING

    def mark_sending(self, slot_index: int, started_at: float | None = None) -> Message:
        """Return a copy of this message moved to ``sending`` on *slot_index*."""
        return self.model_copy(update={
            "status": MessageStatus.SENDING,
            "slot_index": slot_index,
            "send_start_time": started_at if started_at is not None else time.time(),
        })

    def mark_pending(self) -> Message:
        """Return a copy of this message moved back to ``pending``."""
        return self.model_copy(update={
            "status": MessageStatus.PENDING,
            "slot_index": None,
            "send_start_time": None,
        })

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")
