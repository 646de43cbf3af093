"""Tests for the OSC device session."""

from __future__ import annotations

import asyncio
import socket
from unittest.mock import patch

import pytest
from pythonosc.osc_message import OscMessage

from marquee.config import OscConfig
from marquee.device.session import (
    DeviceSession,
    TransportError,
    build_osc_message,
    parse_device_address,
)


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #

class _Collector(asyncio.DatagramProtocol):
    """UDP listener that decodes every datagram as an OSC message."""

    def __init__(self) -> None:
        self.messages: list[OscMessage] = []

    def datagram_received(self, data: bytes, addr) -> None:
        self.messages.append(OscMessage(data))


async def _listen() -> tuple[asyncio.DatagramTransport, _Collector, int]:
    loop = asyncio.get_running_loop()
    transport, collector = await loop.create_datagram_endpoint(
        _Collector, local_addr=("127.0.0.1", 0),
    )
    port = transport.get_extra_info("sockname")[1]
    return transport, collector, port


async def _wait_for(collector: _Collector, count: int, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while len(collector.messages) < count:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"expected {count} datagrams, got {len(collector.messages)}")
        await asyncio.sleep(0.01)


# ------------------------------------------------------------------ #
# Address parsing / encoding
# ------------------------------------------------------------------ #

class TestParseDeviceAddress:
    def test_host_only_uses_default_port(self):
        assert parse_device_address("192.168.1.20", 2165) == ("192.168.1.20", 2165)

    def test_host_and_port(self):
        assert parse_device_address("192.168.1.20:7000", 2165) == ("192.168.1.20", 7000)

    def test_hostname(self):
        assert parse_device_address("resolume.local", 2165) == ("resolume.local", 2165)

    def test_ipv6_literal_keeps_default_port(self):
        assert parse_device_address("fe80::1", 2165) == ("fe80::1", 2165)

    def test_strips_whitespace(self):
        assert parse_device_address("  10.0.0.5 ", 2165) == ("10.0.0.5", 2165)


class TestBuildOscMessage:
    def test_string_argument(self):
        msg = OscMessage(build_osc_message("/a/b", "HELLO\nWORLD"))
        assert msg.address == "/a/b"
        assert msg.params == ["HELLO\nWORLD"]

    def test_int_argument(self):
        msg = OscMessage(build_osc_message("/connect", 1))
        assert msg.params == [1]

    def test_no_arguments(self):
        msg = OscMessage(build_osc_message("/ping"))
        assert msg.address == "/ping"
        assert msg.params == []


class TestOscConfig:
    def test_default_paths(self):
        osc = OscConfig()
        assert osc.text_path(4) == (
            "/composition/layers/5/clips/4/video/source/textgenerator/text/params/lines"
        )
        assert osc.connect_path(9) == "/composition/layers/5/clips/9/connect"

    def test_custom_layer(self):
        osc = OscConfig(layer=2)
        assert osc.connect_path(1) == "/composition/layers/2/clips/1/connect"


# ------------------------------------------------------------------ #
# Session against a real UDP listener
# ------------------------------------------------------------------ #

class TestDeviceSessionUdp:
    @pytest.mark.asyncio
    async def test_send_display_sends_text_then_connect(self):
        listener, collector, port = await _listen()
        session = DeviceSession(f"127.0.0.1:{port}")
        try:
            ok = await session.send_display(4, "HELLO WORLD\nTABLE 12")
            assert ok is True
            await _wait_for(collector, 2)
        finally:
            await session.close()
            listener.close()

        text_msg, connect_msg = collector.messages
        assert text_msg.address == OscConfig().text_path(4)
        assert text_msg.params == ["HELLO WORLD\nTABLE 12"]
        assert connect_msg.address == OscConfig().connect_path(4)
        assert connect_msg.params == [1]

    @pytest.mark.asyncio
    async def test_send_display_without_activate(self):
        listener, collector, port = await _listen()
        session = DeviceSession(f"127.0.0.1:{port}")
        try:
            assert await session.send_display(6, "HI", activate=False) is True
            await _wait_for(collector, 1)
            await asyncio.sleep(0.05)
        finally:
            await session.close()
            listener.close()

        assert len(collector.messages) == 1
        assert collector.messages[0].address == OscConfig().text_path(6)

    @pytest.mark.asyncio
    async def test_send_clear_only_connects(self):
        listener, collector, port = await _listen()
        session = DeviceSession(f"127.0.0.1:{port}")
        try:
            assert await session.send_clear(9) is True
            await _wait_for(collector, 1)
        finally:
            await session.close()
            listener.close()

        assert collector.messages[0].address == "/composition/layers/5/clips/9/connect"
        assert collector.messages[0].params == [1]

    @pytest.mark.asyncio
    async def test_check_liveness_sends_ping(self):
        listener, collector, port = await _listen()
        session = DeviceSession(f"127.0.0.1:{port}")
        try:
            assert await session.check_liveness() is True
            await _wait_for(collector, 1)
        finally:
            await session.close()
            listener.close()

        assert collector.messages[0].address == "/ping"

    @pytest.mark.asyncio
    async def test_transport_reused_across_sends(self):
        listener, collector, port = await _listen()
        session = DeviceSession(f"127.0.0.1:{port}")
        try:
            await session.check_liveness()
            first = session._transport
            await session.check_liveness()
            assert session._transport is first
        finally:
            await session.close()
            listener.close()

    @pytest.mark.asyncio
    async def test_custom_osc_layer(self):
        listener, collector, port = await _listen()
        session = DeviceSession(f"127.0.0.1:{port}", osc=OscConfig(layer=3))
        try:
            await session.send_clear(1)
            await _wait_for(collector, 1)
        finally:
            await session.close()
            listener.close()

        assert collector.messages[0].address == "/composition/layers/3/clips/1/connect"


# ------------------------------------------------------------------ #
# Failure handling
# ------------------------------------------------------------------ #

class TestDeviceSessionFailures:
    @pytest.mark.asyncio
    async def test_liveness_timeout_returns_false(self):
        session = DeviceSession("10.0.0.5", probe_timeout=0.05)

        async def _hang(self_, dgram):
            await asyncio.sleep(10)

        with patch.object(DeviceSession, "_transmit", _hang):
            assert await session.check_liveness() is False

    @pytest.mark.asyncio
    async def test_send_timeout_returns_false(self):
        session = DeviceSession("10.0.0.5", send_timeout=0.05)

        async def _hang(self_, dgram):
            await asyncio.sleep(10)

        with patch.object(DeviceSession, "_transmit", _hang):
            assert await session.send_display(4, "HI") is False
            assert await session.send_clear(9) is False

    @pytest.mark.asyncio
    async def test_os_error_returns_false(self):
        session = DeviceSession("10.0.0.5")

        async def _fail(self_):
            raise OSError("Network is unreachable")

        with patch.object(DeviceSession, "_open", _fail):
            assert await session.check_liveness() is False
            assert await session.send_display(4, "HI") is False

    @pytest.mark.asyncio
    async def test_unexpected_error_in_probe_returns_false(self):
        session = DeviceSession("10.0.0.5")

        async def _boom(self_, dgram):
            raise RuntimeError("boom")

        with patch.object(DeviceSession, "_transmit", _boom):
            assert await session.check_liveness() is False

    @pytest.mark.asyncio
    async def test_pending_icmp_error_fails_next_send_only(self):
        listener, collector, port = await _listen()
        session = DeviceSession(f"127.0.0.1:{port}")
        try:
            assert await session.check_liveness() is True
            session._protocol.error_received(ConnectionRefusedError("refused"))
            assert await session.check_liveness() is False
            assert await session.check_liveness() is True
        finally:
            await session.close()
            listener.close()

    @pytest.mark.asyncio
    async def test_first_probe_of_closed_port_is_offline(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
        sock.close()

        session = DeviceSession(f"127.0.0.1:{port}", probe_timeout=0.5)
        try:
            assert await session.check_liveness() is False
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_probe_with_error_during_grace_is_offline(self):
        listener, collector, port = await _listen()
        session = DeviceSession(f"127.0.0.1:{port}")

        async def _refused_after_send(self_, dgram):
            transport, protocol = await self_._open()
            transport.sendto(dgram)
            asyncio.get_running_loop().call_soon(
                protocol.error_received, ConnectionRefusedError("refused"),
            )

        try:
            with patch.object(DeviceSession, "_transmit", _refused_after_send):
                assert await session.check_liveness() is False
            assert await session.check_liveness() is True
        finally:
            await session.close()
            listener.close()

    @pytest.mark.asyncio
    async def test_activation_failure_still_reports_success(self):
        session = DeviceSession("10.0.0.5")
        calls = []

        async def _send(self_, path, *args, timeout):
            calls.append(path)
            if path.endswith("/connect"):
                raise TransportError("refused")

        with patch.object(DeviceSession, "_send", _send):
            assert await session.send_display(4, "HI") is True
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        listener, collector, port = await _listen()
        session = DeviceSession(f"127.0.0.1:{port}")
        try:
            await session.check_liveness()
            await session.close()
            await session.close()
            assert session.closed
        finally:
            listener.close()

    @pytest.mark.asyncio
    async def test_close_without_transport(self):
        session = DeviceSession("10.0.0.5")
        await session.close()
        assert session.closed

    @pytest.mark.asyncio
    async def test_send_after_close_fails(self):
        session = DeviceSession("10.0.0.5")
        await session.close()
        assert await session.check_liveness() is False
        assert await session.send_display(4, "HI") is False
