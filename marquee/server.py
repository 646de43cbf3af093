"""Marquee — relay server.

Exposes:
  WS   /ws?device=<address>   — viewer channel (queue sync, transmit, status)
  GET  /health                — liveness check
  GET  /{path}                — built frontend, with index.html fallback

Start with::

    python -m marquee
    # or
    uvicorn marquee.server:app --host 0.0.0.0 --port 3000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from marquee import __version__
from marquee.config import RelayConfig
from marquee.hub import RealtimeHub, ViewerConnection

logger = logging.getLogger(__name__)

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-XSS-Protection": "1; mode=block",
}


# ──────────────────────────────────────────────────────────────────
# Viewer WebSocket
# ──────────────────────────────────────────────────────────────────

async def viewer_ws_handler(websocket: WebSocket) -> None:
    """Handle one viewer connection.

    The device address is fixed for the lifetime of the connection and comes
    from the ``device`` query parameter. Viewers without one can watch and
    edit the queue but cannot transmit.
    """
    hub: RealtimeHub = websocket.app.state.hub
    await websocket.accept()
    device = websocket.query_params.get("device", "").strip()
    viewer = ViewerConnection(websocket, device)

    try:
        await hub.connect(viewer)
        async for raw_msg in websocket.iter_json():
            await hub.handle(viewer, raw_msg)
    except WebSocketDisconnect:
        logger.debug("Viewer %s closed the connection", viewer.viewer_id)
    except Exception:
        logger.exception("Error in viewer WebSocket for %s", viewer.viewer_id)
    finally:
        await hub.disconnect(viewer)


# ──────────────────────────────────────────────────────────────────
# App factory
# ──────────────────────────────────────────────────────────────────

def create_app(config: RelayConfig | None = None, hub: RealtimeHub | None = None) -> FastAPI:
    """Build the FastAPI app around a single :class:`RealtimeHub`."""
    config = config or (hub.config if hub else RelayConfig.from_env())
    hub = hub or RealtimeHub(config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        await hub.close()

    app = FastAPI(title="Marquee", version=__version__, lifespan=lifespan)
    app.state.hub = hub
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in _SECURITY_HEADERS.items():
            response.headers[name] = value
        return response

    app.add_api_websocket_route("/ws", viewer_ws_handler)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "viewers": hub.viewer_count,
            "devices": hub.registry.addresses(),
            "queue_length": len(hub.queue),
        }

    static_dir = Path(config.static_dir)

    @app.get("/{full_path:path}", include_in_schema=False)
    async def spa_fallback(full_path: str):
        root = static_dir.resolve()
        if full_path:
            candidate = (root / full_path).resolve()
            if candidate.is_file() and root in candidate.parents:
                return FileResponse(candidate)
        index = root / "index.html"
        if index.is_file():
            return FileResponse(index)
        raise HTTPException(status_code=404, detail="Not found")

    return app


app = create_app()


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main(config: RelayConfig | None = None) -> None:
    import uvicorn
    config = config or RelayConfig.from_env()
    logger.info("Starting Marquee relay on %s:%d", config.host, config.port)
    uvicorn.run(create_app(config), host=config.host, port=config.port, reload=False)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
