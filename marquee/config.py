"""Relay configuration loaded from ``MARQUEE_*`` environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using %s", name, raw, default)
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class OscConfig:
    """OSC vocabulary of the display software (Resolume composition layout)."""

    port: int = 2165
    layer: int = 5
    ping_address: str = "/ping"
    text_address: str = (
        "/composition/layers/{layer}/clips/{slot}/video/source/textgenerator/text/params/lines"
    )
    connect_address: str = "/composition/layers/{layer}/clips/{slot}/connect"

    # Text clips used in rotation, plus the blank clip for clearing the screen
    slots: list[int] = field(default_factory=lambda: [4, 5, 6, 7, 8])
    empty_slot: int = 9

    def text_path(self, slot: int) -> str:
        return self.text_address.format(layer=self.layer, slot=slot)

    def connect_path(self, slot: int) -> str:
        return self.connect_address.format(layer=self.layer, slot=slot)


@dataclass
class RelayConfig:
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 3000
    static_dir: str = "dist"
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:5173"])

    # Timings (seconds)
    send_duration: float = 300.0
    probe_interval: float = 5.0
    probe_timeout: float = 1.0
    send_timeout: float = 3.0

    osc: OscConfig = field(default_factory=OscConfig)

    @classmethod
    def from_env(cls) -> RelayConfig:
        defaults = cls()
        osc_defaults = defaults.osc
        slots = _env_list("MARQUEE_SLOTS", [str(s) for s in osc_defaults.slots])
        try:
            slot_numbers = [int(s) for s in slots]
        except ValueError:
            logger.warning("Invalid MARQUEE_SLOTS=%r, using defaults", slots)
            slot_numbers = list(osc_defaults.slots)

        osc = OscConfig(
            port=_env_int("MARQUEE_OSC_PORT", osc_defaults.port),
            layer=_env_int("MARQUEE_OSC_LAYER", osc_defaults.layer),
            slots=slot_numbers or list(osc_defaults.slots),
            empty_slot=_env_int("MARQUEE_EMPTY_SLOT", osc_defaults.empty_slot),
        )
        return cls(
            host=os.environ.get("MARQUEE_HOST", defaults.host),
            port=_env_int("MARQUEE_PORT", _env_int("PORT", defaults.port)),
            static_dir=os.environ.get("MARQUEE_STATIC_DIR", defaults.static_dir),
            allowed_origins=_env_list("MARQUEE_ALLOWED_ORIGINS", defaults.allowed_origins),
            send_duration=_env_float("MARQUEE_SEND_DURATION", defaults.send_duration),
            probe_interval=_env_float("MARQUEE_PROBE_INTERVAL", defaults.probe_interval),
            probe_timeout=_env_float("MARQUEE_PROBE_TIMEOUT", defaults.probe_timeout),
            send_timeout=_env_float("MARQUEE_SEND_TIMEOUT", defaults.send_timeout),
            osc=osc,
        )
