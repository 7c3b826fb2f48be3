"""
FastAPI WebSocket server for planning poker rooms.
"""

import asyncio
import logging
import uuid
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Deque, Dict, Optional, Tuple

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from ..constants import DECKS
from ..errors import CloseReason, RoomCapacityError, close_code_for
from ..rules import ServerConfig, load_config_from_env
from ..serialization import serialize_room
from ..session import SessionManager
from ..store import RoomStore
from ..validate import validate_room_id
from .events import ConnectEvent, encode_event

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Tracks sockets per room and delivers outbound events.

    ``broadcast``/``send`` only enqueue; one drain task per room writes the
    queue out in order, so callers never wait on a slow client.
    """

    def __init__(self):
        self.room_connections: Dict[str, Dict[str, WebSocket]] = {}
        self.connection_rooms: Dict[str, str] = {}
        self._outboxes: Dict[str, Deque[Tuple[Optional[str], Dict[str, Any]]]] = {}
        self._drainers: Dict[str, asyncio.Task] = {}

    def register(self, room_id: str, connection_id: str, websocket: WebSocket) -> None:
        self.room_connections.setdefault(room_id, {})[connection_id] = websocket
        self.connection_rooms[connection_id] = room_id

    def unregister(self, connection_id: str) -> None:
        room_id = self.connection_rooms.pop(connection_id, None)
        if room_id is None:
            return
        sockets = self.room_connections.get(room_id, {})
        sockets.pop(connection_id, None)
        if not sockets:
            self.room_connections.pop(room_id, None)

    @property
    def connection_count(self) -> int:
        return len(self.connection_rooms)

    def broadcast(self, room_id: str, message: Dict[str, Any]) -> None:
        self._enqueue(room_id, None, message)

    def send(self, room_id: str, connection_id: str, message: Dict[str, Any]) -> None:
        self._enqueue(room_id, connection_id, message)

    def _enqueue(self, room_id: str, target: Optional[str], message: Dict[str, Any]) -> None:
        self._outboxes.setdefault(room_id, deque()).append((target, message))
        drainer = self._drainers.get(room_id)
        if drainer is None or drainer.done():
            self._drainers[room_id] = asyncio.create_task(self._drain(room_id))

    async def _drain(self, room_id: str) -> None:
        outbox = self._outboxes[room_id]
        while outbox:
            target, message = outbox.popleft()
            text = encode_event(message)
            sockets = self.room_connections.get(room_id, {})
            if target is not None:
                recipients = [(target, sockets[target])] if target in sockets else []
            else:
                recipients = list(sockets.items())
            for connection_id, websocket in recipients:
                try:
                    await websocket.send_text(text)
                except Exception as e:
                    # The receive loop notices the dead socket and cleans up
                    logger.error(f"Error sending to {connection_id} in room {room_id}: {e}")
        self._outboxes.pop(room_id, None)
        self._drainers.pop(room_id, None)

    async def close(self) -> None:
        tasks = list(self._drainers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class CreateRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    deck_type: Optional[str] = Field(default=None, alias="deckType")


def create_app(config: Optional[ServerConfig] = None) -> FastAPI:
    """Build the application with its own store, session engine and sockets."""
    config = config or load_config_from_env()
    store = RoomStore(config)
    connections = ConnectionManager()
    session = SessionManager(store, connections, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await connections.close()
        await store.close()

    app = FastAPI(title="VibePoker Room Engine", version="1.0.0", lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.connections = connections
    app.state.session = session

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "rooms": len(store),
            "connections": connections.connection_count
        }

    @app.get("/decks")
    async def list_decks():
        return {"default": config.default_deck, "decks": {name: list(cards) for name, cards in DECKS.items()}}

    @app.post("/rooms", status_code=201)
    async def create_room(request: Optional[CreateRoomRequest] = None):
        """Create an empty room with a generated id."""
        deck_type = request.deck_type if request else None
        try:
            room = store.create(deck_type if deck_type in DECKS else None)
        except RoomCapacityError as e:
            raise HTTPException(status_code=503, detail=e.code)
        return {"roomId": room.id, "deckType": room.deck_type}

    @app.get("/rooms/{room_id}")
    async def get_room(room_id: str):
        if validate_room_id(room_id) is None:
            raise HTTPException(status_code=400, detail=CloseReason.INVALID_ROOM.value)
        room = store.get(room_id)
        if room is None:
            raise HTTPException(status_code=404, detail="Room not found")
        return serialize_room(room)

    @app.websocket("/ws/{room_id}")
    async def websocket_endpoint(websocket: WebSocket, room_id: str):
        """Main WebSocket endpoint; join parameters come from the query string."""
        await websocket.accept()
        connection_id = uuid.uuid4().hex

        if validate_room_id(room_id) is None:
            await _refuse(websocket, CloseReason.INVALID_ROOM)
            return

        params = ConnectEvent(
            name=websocket.query_params.get("name"),
            deckType=websocket.query_params.get("deckType")
        )
        # Attached only once accepted, still ahead of the join broadcast
        outcome = await session.connect(
            connection_id, room_id, params.name, params.deck_type,
            on_joined=lambda: connections.register(room_id, connection_id, websocket)
        )
        if not outcome.accepted:
            connections.unregister(connection_id)
            await _refuse(websocket, outcome.reason)
            return

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(f"WebSocket {connection_id} disconnected")
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is not None:
                    await session.handle_message(connection_id, raw)
        except Exception as e:
            logger.error(f"WebSocket error for {connection_id}: {e}")
        finally:
            connections.unregister(connection_id)
            await session.disconnect(connection_id)

    return app


async def _refuse(websocket: WebSocket, reason: CloseReason) -> None:
    logger.info(f"Closing connection: {reason.value}")
    await websocket.close(code=close_code_for(reason), reason=reason.value)
