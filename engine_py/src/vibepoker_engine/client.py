"""
Asyncio client for a VibePoker room.

Wraps one WebSocket connection. ``connect()`` returns the first room
snapshot or raises JoinRejected with the server's close reason; after that
every ``room-state`` message replaces ``client.room``. Callers that need to
see the effect of an action await ``wait_for_room`` with a predicate.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

import orjson
import websockets
from websockets.exceptions import ConnectionClosed

from .ws.events import (
    AcceptEstimationEvent, OutboundEventType, RequestStateEvent, ResetRoundEvent,
    RevealCardsEvent, RevoteEvent, SelectCardEvent, UpdateTopicEvent, encode_event
)

logger = logging.getLogger(__name__)

RoomSnapshot = Dict[str, Any]
RoomPredicate = Callable[[RoomSnapshot], bool]


class JoinRejected(Exception):
    """The server refused the connection."""

    def __init__(self, reason: str, code: Optional[int] = None):
        self.reason = reason
        self.code = code
        super().__init__(f"Join rejected: {reason or 'connection closed'}")


class PokerClient:
    """One player's connection to one room."""

    def __init__(
        self,
        base_url: str,
        room_id: str,
        name: str,
        deck_type: Optional[str] = None,
        on_room_update: Optional[Callable[[RoomSnapshot], None]] = None,
        connection_factory: Optional[Callable[[str], Awaitable[Any]]] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.room_id = room_id
        self.name = name
        self.deck_type = deck_type
        self.on_room_update = on_room_update
        self.room: Optional[RoomSnapshot] = None
        self._connection_factory = connection_factory or websockets.connect
        self._connection = None
        self._reader: Optional[asyncio.Task] = None
        self._joined: Optional[asyncio.Future] = None
        self._waiters: List[Tuple[RoomPredicate, asyncio.Future]] = []

    @property
    def url(self) -> str:
        params = {"name": self.name}
        if self.deck_type:
            params["deckType"] = self.deck_type
        return f"{self.base_url}/ws/{quote(self.room_id)}?{urlencode(params)}"

    @property
    def connected(self) -> bool:
        return self._reader is not None and not self._reader.done()

    async def connect(self, timeout: float = 10.0) -> RoomSnapshot:
        """
        Open the connection and wait for the first room snapshot.

        Raises:
            JoinRejected: If the server closes the connection before the
                first snapshot (name taken, room full, ...)
            asyncio.TimeoutError: If no snapshot arrives within ``timeout``
        """
        if self.connected:
            raise RuntimeError("Client already connected")
        self.room = None
        loop = asyncio.get_running_loop()
        self._joined = loop.create_future()
        self._connection = await self._connection_factory(self.url)
        self._reader = asyncio.create_task(self._read_loop())
        try:
            return await asyncio.wait_for(asyncio.shield(self._joined), timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        self._reader = None
        self._connection = None

    async def wait_for_room(self, predicate: RoomPredicate, timeout: float = 5.0) -> RoomSnapshot:
        """Return the first snapshot (current one included) matching ``predicate``."""
        if self.room is not None and predicate(self.room):
            return self.room
        return await self._wait_for_next(predicate, timeout)

    async def _wait_for_next(self, predicate: RoomPredicate, timeout: float) -> RoomSnapshot:
        if not self.connected:
            raise ConnectionError("Client is not connected")
        future = asyncio.get_running_loop().create_future()
        waiter = (predicate, future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    # Actions

    async def select_card(self, card: Optional[str]) -> None:
        await self._send(SelectCardEvent(card=card))

    async def clear_card(self) -> None:
        await self.select_card(None)

    async def update_topic(self, topic: str) -> None:
        await self._send(UpdateTopicEvent(topic=topic))

    async def reveal_cards(self) -> None:
        await self._send(RevealCardsEvent())

    async def accept_estimation(self, value: str) -> None:
        await self._send(AcceptEstimationEvent(value=value))

    async def reset_round(self) -> None:
        await self._send(ResetRoundEvent())

    async def revote(self) -> None:
        await self._send(RevoteEvent())

    async def refresh(self, timeout: float = 5.0) -> RoomSnapshot:
        """Ask the server for the current snapshot and return it."""
        if not self.connected:
            raise ConnectionError("Client is not connected")
        next_room = asyncio.ensure_future(self._wait_for_next(lambda room: True, timeout))
        # Let the waiter register before the request goes out
        await asyncio.sleep(0)
        try:
            await self._send(RequestStateEvent())
        except Exception:
            next_room.cancel()
            raise
        return await next_room

    async def _send(self, event) -> None:
        if self._connection is None:
            raise ConnectionError("Client is not connected")
        await self._connection.send(encode_event(event))

    # Inbound

    async def _read_loop(self) -> None:
        error: Exception = ConnectionError("Connection closed")
        try:
            async for raw in self._connection:
                self._handle_raw(raw)
        except ConnectionClosed as e:
            reason = e.rcvd.reason if e.rcvd is not None else ""
            code = e.rcvd.code if e.rcvd is not None else None
            logger.info(f"Connection to room {self.room_id} closed ({code}): {reason}")
            error = JoinRejected(reason, code) if self.room is None else ConnectionError(f"Connection closed: {reason}")
        finally:
            self._fail_pending(error)

    def _handle_raw(self, raw) -> None:
        try:
            message = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning(f"Ignoring malformed message from server: {raw!r}")
            return
        if not isinstance(message, dict) or message.get("type") != OutboundEventType.ROOM_STATE.value:
            logger.debug(f"Ignoring message: {message!r}")
            return
        self._set_room(message["data"])

    def _set_room(self, room: RoomSnapshot) -> None:
        self.room = room
        if self._joined is not None and not self._joined.done():
            self._joined.set_result(room)
        for waiter in list(self._waiters):
            predicate, future = waiter
            if not future.done() and predicate(room):
                future.set_result(room)
                self._waiters.remove(waiter)
        if self.on_room_update:
            try:
                self.on_room_update(room)
            except Exception:
                logger.exception("on_room_update callback failed")

    def _fail_pending(self, error: Exception) -> None:
        if self._joined is not None and not self._joined.done():
            self._joined.set_exception(error)
        for _, future in self._waiters:
            if not future.done():
                future.set_exception(error)
        self._waiters.clear()
