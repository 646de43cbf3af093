"""pytest configuration for Marquee tests."""

from __future__ import annotations

import pytest


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeSession:
    """Stand-in for DeviceSession that records every command."""

    def __init__(self, address: str, online: bool = True, send_ok: bool = True) -> None:
        self.address = address
        self.online = online
        self.send_ok = send_ok
        self.probes = 0
        self.displays: list[tuple[int, str, bool]] = []
        self.clears: list[int] = []
        self.closed = False

    async def check_liveness(self) -> bool:
        self.probes += 1
        return self.online and not self.closed

    async def send_display(self, slot_index: int, text: str, activate: bool = True) -> bool:
        self.displays.append((slot_index, text, activate))
        return self.send_ok

    async def send_clear(self, slot_index: int) -> bool:
        self.clears.append(slot_index)
        return self.send_ok

    async def close(self) -> None:
        self.closed = True


class FakeSessionFactory:
    """Session factory that keeps every session it created."""

    def __init__(self, online: bool = True, send_ok: bool = True) -> None:
        self.online = online
        self.send_ok = send_ok
        self.created: list[FakeSession] = []

    def __call__(self, address: str) -> FakeSession:
        session = FakeSession(address, online=self.online, send_ok=self.send_ok)
        self.created.append(session)
        return session


@pytest.fixture
def session_factory() -> FakeSessionFactory:
    return FakeSessionFactory()
