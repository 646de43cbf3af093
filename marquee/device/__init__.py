"""Device side of the relay: OSC sessions and the per-address registry."""

from marquee.device.registry import SessionRegistry
from marquee.device.session import (
    DeviceError,
    DeviceSession,
    TransportError,
    TransportTimeout,
)

__all__ = [
    "DeviceError",
    "DeviceSession",
    "SessionRegistry",
    "TransportError",
    "TransportTimeout",
]
