"""Marquee relay entry point.

Usage:
    python -m marquee [--host HOST] [--port PORT] [--static DIR] [--debug]
"""

from __future__ import annotations

import argparse
import logging

from marquee.config import RelayConfig
from marquee.server import main as run_server


def main() -> None:
    parser = argparse.ArgumentParser(description="Marquee message relay")
    parser.add_argument(
        "--host",
        default=None,
        help="Interface to bind (overrides MARQUEE_HOST)",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="HTTP port (overrides MARQUEE_PORT / PORT)",
    )
    parser.add_argument(
        "--static",
        default=None,
        help="Directory with the built frontend (overrides MARQUEE_STATIC_DIR)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    # Logging
    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = RelayConfig.from_env()

    # CLI overrides
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.static:
        config.static_dir = args.static

    run_server(config)


if __name__ == "__main__":
    main()
