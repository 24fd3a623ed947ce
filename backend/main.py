"""
Dropline: FastAPI application entry point.

Starts the direct-channel listener, the transfer coordinator and the
signaling client on startup, serves the REST API, the UI event socket
and (optionally) the signaling/relay hub for other agents.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import EventBroadcaster
from config import API_HOST, API_PORT, DEFAULT_SAVE_DIR, HUB_ENABLED, SIGNAL_URL
from signaling.client import SignalingClient
from signaling.hub import SignalingHub
from transfer.coordinator import TransferCoordinator
from transfer.direct import DirectEndpoint

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
hub = SignalingHub()
signaling = SignalingClient(SIGNAL_URL)
direct_endpoint = DirectEndpoint()
coordinator = TransferCoordinator(signaling, direct_endpoint, save_dir=DEFAULT_SAVE_DIR)
ws_manager = EventBroadcaster()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting Dropline services...")

    try:
        # Wire up event broadcasting
        coordinator.on_event(ws_manager.handle_event)
        signaling.on("peers_changed", ws_manager.handle_peers)

        await direct_endpoint.start()
        await coordinator.start()
        await signaling.start()

        logger.info(
            f"Dropline ready. API: {API_HOST}:{API_PORT}, "
            f"direct port: {direct_endpoint.port}, "
            f"hub: {'local' if HUB_ENABLED else SIGNAL_URL}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down Dropline services...")
        await coordinator.stop()
        await signaling.stop()
        await direct_endpoint.stop()


# --- FastAPI app ---
app = FastAPI(
    title="Dropline",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject services into routes
init_routes(signaling, coordinator)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.serve(websocket)


if HUB_ENABLED:
    @app.websocket("/signal")
    async def signal_endpoint(websocket: WebSocket):
        await hub.serve(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
