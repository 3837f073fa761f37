"""WebSocket fan-out of presence and transfer events to UI clients."""

import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class UIEventHub:
    """Tracks connected UI sockets and pushes every core event to them."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.append(websocket)
        logger.info(f"UI client connected. Total: {self.client_count}")
        try:
            while True:
                # Keep the connection alive; the UI talks to the REST API
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            if websocket in self._connections:
                self._connections.remove(websocket)
            logger.info(f"UI client disconnected. Total: {self.client_count}")

    async def handle_event(self, event: str, data) -> None:
        """Callback for the registry, presence client, negotiator and transfer manager."""
        message = json.dumps({"event": event, "data": data})
        dead: list[WebSocket] = []
        for ws in list(self._connections):
            try:
                await ws.send_text(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            if ws in self._connections:
                self._connections.remove(ws)
