"""
PeerDrop: FastAPI application entry point.

Hosts the presence registry websocket, the UI event websocket and the
REST API; connects this node's presence client on startup.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from api.routes import init_routes, router
from api.websocket import UIEventHub
from config import (
    API_HOST,
    API_PORT,
    DEVICE_ID,
    DEVICE_NAME,
    PRESENCE_PATH,
    candidate_endpoints,
    get_local_ip_address,
)
from presence.client import PresenceClient
from presence.models import DeviceIdentity
from presence.registry import PresenceRegistry
from transfer.manager import TransferManager
from transfer.negotiator import TransferNegotiator

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

FRONTEND_DIR = Path(__file__).parent.parent / "frontend" / "dist"


def create_app(connect_presence: bool = True) -> FastAPI:
    local_ip = get_local_ip_address()
    identity = DeviceIdentity(id=DEVICE_ID, name=DEVICE_NAME, address=local_ip)

    # --- Services ---
    ui_hub = UIEventHub()
    presence_client = PresenceClient(identity, candidate_endpoints(local_ip))
    registry = PresenceRegistry(lambda: presence_client.identity)
    transfer_manager = TransferManager(advertise_address=local_ip)
    negotiator = TransferNegotiator(presence_client, transfer_manager)

    for service in (registry, presence_client, negotiator, transfer_manager):
        service.on_event(ui_hub.handle_event)

    async def connect_and_scan() -> None:
        if await presence_client.start():
            await presence_client.scan()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info("Starting PeerDrop services...")
        connect_task = None
        if connect_presence:
            # The registry we may connect to is this very server, which only
            # accepts once startup has finished
            connect_task = asyncio.create_task(connect_and_scan())
        logger.info(f"PeerDrop ready: {identity.name} ({identity.id}) on {local_ip}:{API_PORT}")

        try:
            yield
        finally:
            logger.info("Shutting down PeerDrop services...")
            if connect_task:
                connect_task.cancel()
            await transfer_manager.stop()
            await presence_client.stop()

    app = FastAPI(
        title="PeerDrop",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.presence_client = presence_client
    app.state.registry = registry
    app.state.negotiator = negotiator
    app.state.transfer_manager = transfer_manager
    app.state.ui_hub = ui_hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Inject services into routes
    init_routes(presence_client, negotiator, transfer_manager)
    app.include_router(router)

    @app.websocket(PRESENCE_PATH)
    async def presence_endpoint(websocket: WebSocket):
        await registry.serve(websocket)

    @app.websocket("/ws")
    async def ui_endpoint(websocket: WebSocket):
        await ui_hub.serve(websocket)

    # --- Static Files (Frontend) ---
    if FRONTEND_DIR.exists():
        app.mount("/assets", StaticFiles(directory=FRONTEND_DIR / "assets"), name="assets")

        @app.get("/")
        async def read_index():
            return FileResponse(FRONTEND_DIR / "index.html")
    else:
        logger.warning(f"Frontend dist not found at {FRONTEND_DIR}. API only mode.")

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
