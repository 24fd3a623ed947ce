"""WebSocket fan-out of transfer and presence events to local UIs."""

import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Keeps the /ws clients and pushes every engine event to all of them."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"UI client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"UI client disconnected. Total: {len(self._connections)}")

    async def serve(self, websocket: WebSocket) -> None:
        """Hold one UI connection open until the client goes away."""
        await self.connect(websocket)
        try:
            while True:
                # Clients only listen; anything they send is ignored
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(websocket)

    async def broadcast(self, event: str, data) -> None:
        """Send ``{"event", "data"}`` to every client, dropping dead ones."""
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
                    logger.debug(f"Dropping UI client: {e}")
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Callback for TransferCoordinator.on_event()."""
        await self.broadcast(event_type, data)

    async def handle_peers(self, peers) -> None:
        """Callback for the signaling client's peers_changed."""
        await self.broadcast("peers_changed", [p.model_dump() for p in peers])
