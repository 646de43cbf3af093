"""OSC control session for one display device.

OSC runs over plain UDP, so there is no connection and no implicit liveness
signal. A session owns a single ``asyncio`` datagram endpoint, opened lazily
on the first send, and treats "the transport accepted the datagram within
the deadline" as the acknowledgment. ICMP errors (e.g. port unreachable
when the display software is closed) are reported by the event loop
asynchronously. A liveness probe waits briefly for one after its ping; for
other commands they surface as a failure of the next send.

Transport failures never leave this module as exceptions: every public
method returns a boolean.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pythonosc.osc_message_builder import OscMessageBuilder

from marquee.config import OscConfig

logger = logging.getLogger(__name__)

_DEFAULT_PROBE_TIMEOUT = 1.0
_DEFAULT_SEND_TIMEOUT = 3.0

# Upper bound on how long a probe waits for an ICMP error after the ping
_PROBE_GRACE = 0.05


class DeviceError(Exception):
    """Base class for OSC transport failures."""


class TransportTimeout(DeviceError):
    """A send or probe exceeded its deadline."""


class TransportError(DeviceError):
    """The underlying UDP transport failed."""


def parse_device_address(address: str, default_port: int) -> tuple[str, int]:
    """Split ``host`` or ``host:port`` into ``(host, port)``.

    Bare IPv6 literals contain colons, so only a single colon followed by
    digits is treated as a port separator.
    """
    address = address.strip()
    host, sep, port = address.rpartition(":")
    if sep and port.isdigit() and ":" not in host:
        return host, int(port)
    return address, default_port


def build_osc_message(path: str, *args: Any) -> bytes:
    """Encode an OSC message datagram."""
    builder = OscMessageBuilder(address=path)
    for arg in args:
        builder.add_arg(arg)
    return builder.build().dgram


class _OscProtocol(asyncio.DatagramProtocol):
    """Collects asynchronous errors reported for the endpoint."""

    def __init__(self) -> None:
        self.transport: asyncio.DatagramTransport | None = None
        self.error: Exception | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Any) -> None:
        logger.debug("Ignoring %d byte datagram from %s", len(data), addr)

    def error_received(self, exc: Exception) -> None:
        self.error = exc

    def take_error(self) -> Exception | None:
        exc, self.error = self.error, None
        return exc


class DeviceSession:
    """Outbound OSC session to one device address.

    Parameters
    ----------
    address:
        Device address as given by the viewer, ``host`` or ``host:port``.
    osc:
        OSC vocabulary (port, layer, address templates).
    """

    def __init__(
        self,
        address: str,
        osc: OscConfig | None = None,
        probe_timeout: float = _DEFAULT_PROBE_TIMEOUT,
        send_timeout: float = _DEFAULT_SEND_TIMEOUT,
    ) -> None:
        self.address = address
        self.osc = osc or OscConfig()
        self.host, self.port = parse_device_address(address, self.osc.port)
        self.probe_timeout = probe_timeout
        self.send_timeout = send_timeout
        self._transport: asyncio.DatagramTransport | None = None
        self._protocol: _OscProtocol | None = None
        self._open_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Commands ───────────────────────────────────────────────────

    async def send_display(self, slot_index: int, text: str, activate: bool = True) -> bool:
        """Put *text* into clip *slot_index* and optionally trigger the clip."""
        try:
            await self._send(self.osc.text_path(slot_index), text, timeout=self.send_timeout)
        except DeviceError as exc:
            logger.error("Sending text to %s slot %d failed: %s", self.address, slot_index, exc)
            return False
        logger.info("Sent text to %s at slot %d: %r", self.address, slot_index, text)

        if activate:
            try:
                await self._send(self.osc.connect_path(slot_index), 1, timeout=self.send_timeout)
                logger.info("Activated slot %d on %s", slot_index, self.address)
            except DeviceError as exc:
                # Text was delivered, so the send still counts as a success
                logger.error("Activating slot %d on %s failed: %s", slot_index, self.address, exc)
        return True

    async def send_clear(self, slot_index: int) -> bool:
        """Trigger the (empty) clip *slot_index* to blank the display."""
        try:
            await self._send(self.osc.connect_path(slot_index), 1, timeout=self.send_timeout)
        except DeviceError as exc:
            logger.error("Clearing %s via slot %d failed: %s", self.address, slot_index, exc)
            return False
        logger.info("Cleared %s using slot %d", self.address, slot_index)
        return True

    async def check_liveness(self) -> bool:
        """Send a ping and report whether the device refused it within the probe timeout.

        After the ping is handed to the transport the probe keeps the loop
        running for a short grace period, so a port-unreachable reply to this
        ping (not only to an earlier one) marks the device offline.
        """
        try:
            await self._send(self.osc.ping_address, timeout=self.probe_timeout)
            await self._raise_pending_error(min(_PROBE_GRACE, self.probe_timeout))
        except DeviceError as exc:
            logger.debug("Probe to %s failed: %s", self.address, exc)
            return False
        except Exception:
            logger.exception("Unexpected probe failure for %s", self.address)
            return False
        return True

    async def close(self) -> None:
        """Release the UDP endpoint. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._transport is not None:
            self._transport.close()
        self._transport = None
        self._protocol = None
        logger.debug("Closed OSC session for %s", self.address)

    # ── Transport ──────────────────────────────────────────────────

    async def _send(self, path: str, *args: Any, timeout: float) -> None:
        dgram = build_osc_message(path, *args)
        try:
            await asyncio.wait_for(self._transmit(dgram), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransportTimeout(f"{path} to {self.address} timed out after {timeout}s") from exc
        except OSError as exc:
            raise TransportError(f"{path} to {self.address}: {exc}") from exc

    async def _raise_pending_error(self, grace: float) -> None:
        await asyncio.sleep(0)
        protocol = self._protocol
        if protocol is not None and protocol.error is None:
            await asyncio.sleep(grace)
            protocol = self._protocol
        pending = protocol.take_error() if protocol is not None else None
        if pending is not None:
            raise TransportError(f"{self.address} reported: {pending}")

    async def _transmit(self, dgram: bytes) -> None:
        transport, protocol = await self._open()
        pending = protocol.take_error()
        if pending is not None:
            raise TransportError(f"{self.address} reported: {pending}")
        if transport.is_closing():
            raise TransportError(f"Transport for {self.address} is closed")
        transport.sendto(dgram)

    async def _open(self) -> tuple[asyncio.DatagramTransport, _OscProtocol]:
        if self._closed:
            raise TransportError(f"Session for {self.address} is closed")
        async with self._open_lock:
            if self._transport is None or self._protocol is None:
                loop = asyncio.get_running_loop()
                transport, protocol = await loop.create_datagram_endpoint(
                    _OscProtocol, remote_addr=(self.host, self.port),
                )
                if self._closed:
                    transport.close()
                    raise TransportError(f"Session for {self.address} is closed")
                self._transport, self._protocol = transport, protocol
                logger.info("Opened OSC session to %s:%d", self.host, self.port)
            return self._transport, self._protocol
