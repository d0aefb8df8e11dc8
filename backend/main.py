"""
LocalSend Fetch — FastAPI application entry point.

Starts a background discovery session on startup and serves the REST API
and WebSocket endpoint used to browse peers and download their files.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT
from discovery.identity import IdentityService
from discovery.service import DiscoveryService
from download.manager import DownloadManager

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
identity_service = IdentityService()
discovery_service = DiscoveryService(identity_service.device_info)
download_manager = DownloadManager()
ws_manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting LocalSend Fetch services...")

    try:
        # Wire up event broadcasting
        download_manager.on_event(ws_manager.handle_event)
        discovery_service.on_peer_change(ws_manager.handle_peer_event)

        await discovery_service.start()

        logger.info(
            f"LocalSend Fetch ready as {identity_service.device_info} — "
            f"API: {API_HOST}:{API_PORT}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down LocalSend Fetch services...")
        await discovery_service.stop()


# --- FastAPI app ---
app = FastAPI(
    title="LocalSend Fetch",
    version="0.1.0",
    lifespan=lifespan,
)

# Inject services into routes
init_routes(identity_service, discovery_service, download_manager)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception:
        await ws_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
