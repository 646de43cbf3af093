"""Per-address registry of device sessions.

Each distinct device address gets one :class:`DeviceSession`, the set of
viewer ids currently referencing it and one recurring liveness-probe task.
The entry lives exactly as long as at least one viewer references the
address: releasing the last viewer cancels the probe task and closes the
session.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from marquee.device.session import DeviceSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], DeviceSession]
StatusCallback = Callable[[str, bool], Awaitable[None]]

_DEFAULT_PROBE_INTERVAL = 5.0


@dataclass
class RegistryEntry:
    """One device address and everything tied to its lifetime."""

    address: str
    session: DeviceSession
    viewers: set[str] = field(default_factory=set)
    probe_task: asyncio.Task | None = None


class SessionRegistry:
    """Maps device addresses to lazily created, reference-counted sessions."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        probe_interval: float = _DEFAULT_PROBE_INTERVAL,
        on_status: StatusCallback | None = None,
    ) -> None:
        self._session_factory = session_factory or DeviceSession
        self.probe_interval = probe_interval
        self._on_status = on_status
        self._entries: dict[str, RegistryEntry] = {}

    def on_status(self, callback: StatusCallback) -> None:
        """Register the coroutine called with ``(address, online)`` after each periodic probe."""
        self._on_status = callback

    # ── Reference counting ─────────────────────────────────────────

    def acquire(self, address: str, viewer_id: str) -> DeviceSession:
        """Register *viewer_id* for *address*, creating the session if needed.

        The session's transport opens on first use, so this never waits on
        the device.
        """
        entry = self._entries.get(address)
        if entry is None:
            session = self._session_factory(address)
            entry = RegistryEntry(address=address, session=session)
            self._entries[address] = entry
            entry.probe_task = asyncio.create_task(self._probe_loop(address))
            logger.info("Created device session for %s", address)
        entry.viewers.add(viewer_id)
        logger.debug("Viewer %s acquired %s (%d viewers)", viewer_id, address, len(entry.viewers))
        return entry.session

    async def release(self, address: str, viewer_id: str) -> bool:
        """Drop *viewer_id* from *address*.

        Returns ``True`` when this was the last viewer and the entry was torn
        down (probe task cancelled, session closed).
        """
        entry = self._entries.get(address)
        if entry is None:
            return False
        entry.viewers.discard(viewer_id)
        if entry.viewers:
            logger.debug("Viewer %s released %s (%d remaining)", viewer_id, address, len(entry.viewers))
            return False

        del self._entries[address]
        await self._teardown(entry)
        logger.info("Cleaned up device session for %s", address)
        return True

    # ── Probing ────────────────────────────────────────────────────

    async def probe(self, address: str) -> bool:
        """Run one liveness check against *address*.

        Addresses without an entry (e.g. after the last viewer left) get a
        throwaway session for the duration of the check.
        """
        entry = self._entries.get(address)
        if entry is not None:
            return await entry.session.check_liveness()

        session = self._session_factory(address)
        try:
            return await session.check_liveness()
        finally:
            await session.close()

    async def _probe_loop(self, address: str) -> None:
        """Probe *address* every interval until the entry is torn down."""
        while True:
            await asyncio.sleep(self.probe_interval)
            entry = self._entries.get(address)
            if entry is None:
                return
            online = await entry.session.check_liveness()
            logger.debug("Probe %s: %s", address, "online" if online else "offline")
            if self._entries.get(address) is not entry:
                # Torn down while the probe was in flight
                return
            if self._on_status is None:
                continue
            try:
                await self._on_status(address, online)
            except Exception:
                logger.exception("Error in device status callback for %s", address)

    # ── Queries ────────────────────────────────────────────────────

    def get(self, address: str) -> DeviceSession | None:
        entry = self._entries.get(address)
        return entry.session if entry else None

    def viewer_count(self, address: str) -> int:
        entry = self._entries.get(address)
        return len(entry.viewers) if entry else 0

    def addresses(self) -> list[str]:
        return list(self._entries)

    def probe_task(self, address: str) -> asyncio.Task | None:
        entry = self._entries.get(address)
        return entry.probe_task if entry else None

    # ── Shutdown ───────────────────────────────────────────────────

    async def close(self) -> None:
        """Tear down every entry regardless of remaining viewers."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            await self._teardown(entry)

    async def _teardown(self, entry: RegistryEntry) -> None:
        task = entry.probe_task
        entry.probe_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await entry.session.close()
