"""
Local websocket client sessions.
"""
import logging
from typing import Dict

from fastapi import WebSocket
from nanoid import generate
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)

SESSION_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


class ClientSession:
    """A connected local client, as seen by the relay."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.id = generate(SESSION_ID_ALPHABET, 10)
        self._closed = False

    def __repr__(self) -> str:
        return f"<ClientSession {self.id}>"

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self):
        self._closed = True

    async def send_text(self, message: str):
        if not self.is_open:
            return
        try:
            await self.websocket.send_text(message)
        except Exception as e:
            logger.warning(f"Send to client {self.id} failed: {e}")
            self._closed = True


class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, ClientSession] = {}

    async def connect(self, websocket: WebSocket) -> ClientSession:
        await websocket.accept()
        session = ClientSession(websocket)
        self.active_connections[session.id] = session
        logger.info(f"Client {session.id} connected ({len(self.active_connections)} active)")
        return session

    def disconnect(self, session: ClientSession):
        session.mark_closed()
        if session.id in self.active_connections:
            del self.active_connections[session.id]
            logger.info(f"Client {session.id} disconnected ({len(self.active_connections)} active)")

    @property
    def active_count(self) -> int:
        return len(self.active_connections)
