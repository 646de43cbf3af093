"""Realtime hub: keeps every viewer of the shared queue in sync.

Handles the viewer side of the relay:

  Viewer → Hub:
    ADD_MESSAGE, UPDATE_MESSAGE, REMOVE_MESSAGE, CLEAR_QUEUE,
    CANCEL_MESSAGE, TRANSMIT, CLEAR_DISPLAY

  Hub → Viewer:
    QUEUE, DEVICE_STATUS, SEND_RESULT, ERROR

Every successful queue mutation is followed by a full ``QUEUE`` snapshot to
every connected viewer, the originator included. Send results and rejected
requests go back to the requesting viewer only.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Callable

from pydantic import ValidationError

from marquee.config import RelayConfig
from marquee.device.registry import SessionRegistry
from marquee.device.session import DeviceSession
from marquee.formatting import format_display_text
from marquee.models import Message, new_message_id
from marquee.queue import MessageQueue, QueueError

logger = logging.getLogger(__name__)


def _optional(raw: dict, key: str, kind: type, default: Any = None) -> Any:
    """Read an optional request field, rejecting values of the wrong JSON type."""
    value = raw.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise TypeError(f"{key} must be a {kind.__name__}, got {type(value).__name__}")
    return value


class HubError(Exception):
    """Base class for rejected viewer requests."""


class NoActiveSessionError(HubError):
    """The viewer has no device session to send through."""


class ViewerConnection:
    """A connected viewer's WebSocket and the device address it targets."""

    def __init__(self, websocket: Any, device_address: str = "", viewer_id: str | None = None) -> None:
        self.websocket = websocket
        self.device_address = device_address
        self.viewer_id = viewer_id or f"viewer-{uuid.uuid4().hex[:8]}"
        self.connected_at = time.time()

    async def send(self, message: dict) -> None:
        """Send a JSON event to the viewer."""
        await self.websocket.send_json(message)


class RealtimeHub:
    """Owns the shared queue and routes viewer requests to it and to devices."""

    def __init__(
        self,
        config: RelayConfig | None = None,
        queue: MessageQueue | None = None,
        registry: SessionRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or RelayConfig()
        self.queue = queue or MessageQueue()
        if registry is None:
            registry = SessionRegistry(
                session_factory=self._create_session,
                probe_interval=self.config.probe_interval,
            )
        registry.on_status(self._on_device_status)
        self.registry = registry
        self._clock = clock
        self._viewers: dict[str, ViewerConnection] = {}
        self._expiry_tasks: dict[str, asyncio.Task] = {}
        self._slot_cursor = 0

    def _create_session(self, address: str) -> DeviceSession:
        return DeviceSession(
            address,
            osc=self.config.osc,
            probe_timeout=self.config.probe_timeout,
            send_timeout=self.config.send_timeout,
        )

    # ── Viewer lifecycle ───────────────────────────────────────────

    async def connect(self, viewer: ViewerConnection) -> None:
        """Activate a viewer: snapshot, device session and first probe."""
        self._viewers[viewer.viewer_id] = viewer
        logger.info("Viewer %s connected (device %r)", viewer.viewer_id, viewer.device_address)

        await self._send(viewer, self._queue_event())

        address = viewer.device_address
        if not address:
            return
        self.registry.acquire(address, viewer.viewer_id)
        online = await self.registry.probe(address)
        if viewer.viewer_id in self._viewers:
            await self._send(viewer, self._status_event(address, online))

    async def disconnect(self, viewer: ViewerConnection) -> None:
        """Deactivate a viewer and drop its device reference."""
        if self._viewers.pop(viewer.viewer_id, None) is None:
            return
        logger.info("Viewer %s disconnected", viewer.viewer_id)
        if viewer.device_address:
            await self.registry.release(viewer.device_address, viewer.viewer_id)

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    def viewers(self) -> list[ViewerConnection]:
        return list(self._viewers.values())

    # ── Request dispatch ───────────────────────────────────────────

    async def handle(self, viewer: ViewerConnection, raw: Any) -> None:
        """Apply one viewer request; rejections are reported to that viewer."""
        if not isinstance(raw, dict):
            await self._send_error(viewer, "Expected a JSON object")
            return
        msg_type = raw.get("type", "")

        try:
            if msg_type == "ADD_MESSAGE":
                await self.add_message(
                    label=str(raw.get("label", "")),
                    text=str(raw.get("text", "")),
                    message_id=raw.get("id"),
                )

            elif msg_type == "UPDATE_MESSAGE":
                await self.update_message(Message.model_validate(raw.get("message") or {}))

            elif msg_type == "REMOVE_MESSAGE":
                await self.remove_message(str(raw.get("id", "")))

            elif msg_type == "CLEAR_QUEUE":
                await self.clear_queue()

            elif msg_type == "CANCEL_MESSAGE":
                await self.cancel_message(viewer, str(raw.get("id", "")))

            elif msg_type == "TRANSMIT":
                await self.transmit(
                    viewer,
                    message_id=_optional(raw, "id", str),
                    slot_index=raw.get("slot_index"),
                    text=_optional(raw, "text", str),
                    activate=_optional(raw, "activate", bool, default=True),
                )

            elif msg_type == "CLEAR_DISPLAY":
                await self.clear_display(viewer, slot_index=raw.get("slot_index"))

            else:
                logger.warning("Unknown message type from %s: %s", viewer.viewer_id, msg_type)
                await self._send_error(viewer, f"Unknown message type: {msg_type}")

        except ValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            await self._send_error(viewer, f"Invalid message: {first.get('msg', exc)}")
        except (TypeError, ValueError) as exc:
            await self._send_error(viewer, f"Invalid {msg_type} request: {exc}")
        except QueueError as exc:
            logger.info("Rejected %s from %s: %s", msg_type, viewer.viewer_id, exc)
            await self._send_error(viewer, str(exc))

    # ── Queue mutations ────────────────────────────────────────────

    async def add_message(self, label: str, text: str, message_id: str | None = None) -> Message:
        message = Message(
            id=message_id or new_message_id(),
            label=label,
            text=text,
            timestamp=self._clock(),
        )
        self.queue.add(message)
        await self.broadcast_queue()
        return message

    async def update_message(self, message: Message) -> Message:
        self.queue.update(message)
        self._sync_expiry(message)
        await self.broadcast_queue()
        return message

    async def remove_message(self, message_id: str) -> Message | None:
        self._cancel_expiry(message_id)
        removed = self.queue.remove(message_id)
        await self.broadcast_queue()
        return removed

    async def clear_queue(self) -> int:
        for message_id in list(self._expiry_tasks):
            self._cancel_expiry(message_id)
        count = self.queue.clear()
        logger.info("Queue cleared (%d messages)", count)
        await self.broadcast_queue()
        return count

    async def cancel_message(self, viewer: ViewerConnection, message_id: str) -> None:
        """Pull a sending message back to pending, or drop a pending one.

        Cancelling a message that is on screen also blanks the display.
        """
        message = self.queue.get(message_id)
        if message is None:
            await self._send_error(viewer, f"Message not found: {message_id}")
            return

        if not message.is_sending:
            await self.remove_message(message_id)
            return

        self._cancel_expiry(message_id)
        self.queue.update(message.mark_pending())
        await self.broadcast_queue()
        await self.clear_display(viewer)

    # ── Device commands ────────────────────────────────────────────

    async def transmit(
        self,
        viewer: ViewerConnection,
        message_id: str | None = None,
        slot_index: int | None = None,
        text: str | None = None,
        activate: bool = True,
    ) -> bool:
        """Show a queued message (or raw *text*) on the viewer's device.

        A queued message moves to ``sending`` only once the device accepted
        the text.
        """
        if message_id:
            message = self.queue.get(message_id)
            if message is None:
                await self._send_result(viewer, False, message_id, f"Message not found: {message_id}")
                return False
            if text is None:
                text = message.text
        if text is None:
            await self._send_result(viewer, False, message_id, "Nothing to send")
            return False

        try:
            session = self._require_session(viewer)
        except NoActiveSessionError as exc:
            logger.error("%s", exc)
            await self._send_result(viewer, False, message_id, str(exc))
            return False

        slot = int(slot_index) if slot_index is not None else self._next_slot()
        ok = await session.send_display(slot, format_display_text(text), activate=activate)

        if ok and message_id:
            current = self.queue.get(message_id)
            if current is not None:
                sending = current.mark_sending(slot, self._clock())
                self.queue.update(sending)
                self._sync_expiry(sending)
                await self.broadcast_queue()

        await self._send_result(viewer, ok, message_id)
        return ok

    async def clear_display(self, viewer: ViewerConnection, slot_index: int | None = None) -> bool:
        """Blank the viewer's display by triggering the empty slot."""
        slot = int(slot_index) if slot_index is not None else self.config.osc.empty_slot
        try:
            session = self._require_session(viewer)
        except NoActiveSessionError as exc:
            logger.error("%s", exc)
            await self._send_result(viewer, False, None, str(exc))
            return False

        ok = await session.send_clear(slot)
        await self._send_result(viewer, ok, None)
        return ok

    def _require_session(self, viewer: ViewerConnection) -> DeviceSession:
        session = self.registry.get(viewer.device_address) if viewer.device_address else None
        if session is None:
            raise NoActiveSessionError(
                f"No device session for {viewer.device_address!r} (viewer {viewer.viewer_id})"
            )
        return session

    def _next_slot(self) -> int:
        slots = self.config.osc.slots
        slot = slots[self._slot_cursor % len(slots)]
        self._slot_cursor = (self._slot_cursor + 1) % len(slots)
        return slot

    # ── Expiry ─────────────────────────────────────────────────────

    def _sync_expiry(self, message: Message) -> None:
        """Match the expiry timer to the message's current status."""
        self._cancel_expiry(message.id)
        if not message.is_sending:
            return
        elapsed = self._clock() - message.send_start_time
        delay = max(self.config.send_duration - elapsed, 0.0)
        self._expiry_tasks[message.id] = asyncio.create_task(
            self._expire_after(message.id, message.send_start_time, delay)
        )

    def _cancel_expiry(self, message_id: str) -> None:
        task = self._expiry_tasks.pop(message_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _expire_after(self, message_id: str, started_at: float, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            current = self.queue.get(message_id)
            if current is None or current.send_start_time != started_at:
                return
            self.queue.remove(message_id)
            logger.info("Message %s finished its display time", message_id)
            await self.broadcast_queue()
        finally:
            if self._expiry_tasks.get(message_id) is asyncio.current_task():
                del self._expiry_tasks[message_id]

    # ── Outbound events ────────────────────────────────────────────

    async def broadcast_queue(self) -> None:
        """Send the full queue snapshot to every connected viewer."""
        event = self._queue_event()
        await asyncio.gather(*(self._send(v, event) for v in self.viewers()))

    async def _on_device_status(self, address: str, online: bool) -> None:
        event = self._status_event(address, online)
        targets = [v for v in self.viewers() if v.device_address == address]
        await asyncio.gather(*(self._send(v, event) for v in targets))

    def _queue_event(self) -> dict:
        return {
            "type": "QUEUE",
            "messages": [m.to_wire() for m in self.queue.snapshot()],
        }

    @staticmethod
    def _status_event(address: str, online: bool) -> dict:
        return {"type": "DEVICE_STATUS", "device": address, "online": online}

    async def _send_result(
        self, viewer: ViewerConnection, ok: bool, message_id: str | None, detail: str | None = None,
    ) -> None:
        await self._send(viewer, {"type": "SEND_RESULT", "ok": ok, "id": message_id, "detail": detail})

    async def _send_error(self, viewer: ViewerConnection, detail: str) -> None:
        await self._send(viewer, {"type": "ERROR", "detail": detail})

    async def _send(self, viewer: ViewerConnection, event: dict) -> bool:
        try:
            await viewer.send(event)
            return True
        except Exception as exc:
            logger.warning("Failed to send %s to %s: %s", event.get("type"), viewer.viewer_id, exc)
            return False

    # ── Shutdown ───────────────────────────────────────────────────

    async def close(self) -> None:
        for message_id in list(self._expiry_tasks):
            self._cancel_expiry(message_id)
        await self.registry.close()
        logger.info("Hub closed")
