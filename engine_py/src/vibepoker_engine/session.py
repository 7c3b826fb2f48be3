"""Session engine: binds connection events to room transitions.

Each inbound event becomes exactly one store transaction on the sender's
room. Rejected events (bad input, non-host, redundant value, over rate
limit) are dropped without a broadcast; successful ones end with a full
room snapshot handed to the broadcaster while the room lock is still held,
so snapshots of one room leave in the order their transitions committed.
"""

import logging
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from .engine import (
    EngineResult, accept_estimation, check_join_name, join_room, leave_room,
    reset_round, reveal_cards, revote, select_card, update_topic
)
from .errors import CloseReason, RoomCapacityError
from .models import Room
from .rules import ServerConfig
from .serialization import serialize_room
from .store import RoomStore
from .ws.events import (
    CHATTY_EVENTS, AcceptEstimationEvent, EventType, InboundEvent, RequestStateEvent,
    ResetRoundEvent, RevealCardsEvent, RevoteEvent, SelectCardEvent, UnknownEvent,
    UpdateTopicEvent, create_room_state_event, parse_inbound_event
)

logger = logging.getLogger(__name__)

Transition = Callable[[Room, str], EngineResult]


class Broadcaster(Protocol):
    """Outbound side of the transport. Both calls must not block."""

    def broadcast(self, room_id: str, message: Dict[str, Any]) -> None:
        ...

    def send(self, room_id: str, connection_id: str, message: Dict[str, Any]) -> None:
        ...


class JoinOutcome:
    """Result of a connection attempt."""

    def __init__(self, accepted: bool, reason: Optional[CloseReason] = None, room: Optional[Room] = None):
        self.accepted = accepted
        self.reason = reason
        self.room = room

    @classmethod
    def success(cls, room: Room) -> 'JoinOutcome':
        return cls(accepted=True, room=room)

    @classmethod
    def rejected(cls, reason: CloseReason) -> 'JoinOutcome':
        return cls(accepted=False, reason=reason)


class RateLimiter:
    """Sliding one-second window per connection and bucket."""

    def __init__(self, limits: Dict[str, int], clock: Callable[[], float] = time.monotonic):
        self.limits = limits
        self.clock = clock
        self._timestamps: Dict[str, Dict[str, List[float]]] = defaultdict(dict)

    def allow(self, connection_id: str, bucket: str) -> bool:
        now = self.clock()
        timestamps = self._timestamps[connection_id].setdefault(bucket, [])
        timestamps[:] = [t for t in timestamps if now - t < 1.0]
        if len(timestamps) >= self.limits[bucket]:
            return False
        timestamps.append(now)
        return True

    def forget(self, connection_id: str) -> None:
        self._timestamps.pop(connection_id, None)


def _frame_size(raw: Union[str, bytes, Dict[str, Any]]) -> int:
    """Size of a frame on the wire; decoded dicts are not limited."""
    if isinstance(raw, str):
        return len(raw.encode("utf-8", "surrogatepass"))
    if isinstance(raw, bytes):
        return len(raw)
    return 0


def _join_reason(error_code: Optional[str]) -> CloseReason:
    try:
        return CloseReason(error_code)
    except ValueError:
        return CloseReason.INTERNAL_ERROR


class SessionManager:
    """Owns the connection -> room mapping and runs every transition."""

    def __init__(
        self,
        store: RoomStore,
        broadcaster: Broadcaster,
        config: Optional[ServerConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.config = config or store.config
        self.rate_limiter = RateLimiter(
            {"select": self.config.select_rate_per_sec, "control": self.config.control_rate_per_sec},
            clock=clock
        )
        self._connections: Dict[str, str] = {}  # connection id -> room id

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._connections.get(connection_id)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def _broadcast_state(self, room: Room) -> None:
        event = create_room_state_event(serialize_room(room))
        self.broadcaster.broadcast(room.id, event.model_dump(mode="json"))

    async def connect(
        self,
        connection_id: str,
        room_id: str,
        name: Any,
        deck_type: Optional[str] = None,
        on_joined: Optional[Callable[[], None]] = None
    ) -> JoinOutcome:
        """
        Join ``connection_id`` to ``room_id`` as player ``name``.

        The name is validated before the room is looked at. The room is
        created on first reference; a rejected join leaves no room behind.
        ``on_joined`` runs under the room lock once the join has passed its
        guards and before the join snapshot is broadcast, so a transport can attach the
        socket without a refused joiner ever seeing room state.
        """
        valid_name, reason = check_join_name(name, self.config)
        if reason:
            logger.info(f"Connection {connection_id} refused for room {room_id}: {reason.value}")
            return JoinOutcome.rejected(reason)
        if connection_id in self._connections:
            logger.error(f"Connection {connection_id} tried to join twice")
            return JoinOutcome.rejected(CloseReason.INTERNAL_ERROR)

        try:
            async with self.store.transaction(room_id, create=True) as txn:
                result = join_room(txn.room, connection_id, valid_name, deck_type, self.config)
                if not result.success:
                    logger.info(f"{valid_name!r} refused for room {room_id}: {result.error_code}")
                    return JoinOutcome.rejected(_join_reason(result.error_code))
                if on_joined:
                    on_joined()
                txn.commit(result.state)
                self._connections[connection_id] = room_id
                self._broadcast_state(result.state)
        except RoomCapacityError as e:
            logger.warning(f"Room {room_id} not created: {e.message}")
            return JoinOutcome.rejected(CloseReason.TOO_MANY_ROOMS)
        except Exception:
            logger.exception(f"Unexpected error joining {connection_id} to room {room_id}")
            self._connections.pop(connection_id, None)
            return JoinOutcome.rejected(CloseReason.INTERNAL_ERROR)

        logger.info(f"{valid_name!r} ({connection_id}) joined room {room_id}")
        return JoinOutcome.success(result.state)

    async def disconnect(self, connection_id: str) -> None:
        """Remove the connection's player; runs as a regular transition."""
        room_id = self._connections.pop(connection_id, None)
        self.rate_limiter.forget(connection_id)
        if room_id is None:
            return
        if await self._apply(room_id, connection_id, leave_room):
            logger.info(f"Connection {connection_id} left room {room_id}")

    async def handle_message(self, connection_id: str, raw: Union[str, bytes, Dict[str, Any]]) -> bool:
        """
        Decode and apply one inbound message.

        Returns True when the room changed. Malformed frames are logged and
        dropped; nothing raises to the caller.
        """
        room_id = self._connections.get(connection_id)
        if room_id is None:
            logger.debug(f"Message from unjoined connection {connection_id} dropped")
            return False

        size = _frame_size(raw)
        if size > self.config.max_message_bytes:
            logger.warning(f"Oversized frame ({size} bytes) from {connection_id} dropped")
            return False
        try:
            event = parse_inbound_event(raw)
        except ValueError as e:
            logger.warning(f"Malformed message from {connection_id}: {e}")
            return False

        try:
            return await self.handle_event(connection_id, room_id, event)
        except Exception:
            logger.exception(f"Error handling {event.type} from {connection_id} in room {room_id}")
            return False

    async def handle_event(self, connection_id: str, room_id: str, event: InboundEvent) -> bool:
        if isinstance(event, UnknownEvent):
            logger.debug(f"Ignoring unknown event type {event.type!r}")
            return False

        if isinstance(event, RequestStateEvent):
            room = self.store.get(room_id)
            if room is not None:
                snapshot = create_room_state_event(serialize_room(room))
                self.broadcaster.send(room_id, connection_id, snapshot.model_dump(mode="json"))
            return False

        bucket = "select" if event.type in CHATTY_EVENTS else "control"
        if not self.rate_limiter.allow(connection_id, bucket):
            logger.debug(f"Rate limit hit by {connection_id} for {event.type.value}")
            return False

        changed = await self._apply(room_id, connection_id, self._transition_for(event))
        if changed and event.type in (EventType.REVEAL_CARDS, EventType.ACCEPT_ESTIMATION):
            logger.info(f"Room {room_id}: {event.type.value} by host {connection_id}")
        return changed

    def _transition_for(self, event: InboundEvent) -> Transition:
        config = self.config
        if isinstance(event, SelectCardEvent):
            return lambda room, pid: select_card(room, pid, event.card)
        elif isinstance(event, UpdateTopicEvent):
            return lambda room, pid: update_topic(room, pid, event.topic, config)
        elif isinstance(event, RevealCardsEvent):
            return reveal_cards
        elif isinstance(event, AcceptEstimationEvent):
            return lambda room, pid: accept_estimation(room, pid, event.value, config)
        elif isinstance(event, ResetRoundEvent):
            return reset_round
        elif isinstance(event, RevoteEvent):
            return revote
        raise ValueError(f"Unhandled event type: {type(event)}")

    async def _apply(self, room_id: str, connection_id: str, transition: Transition) -> bool:
        async with self.store.transaction(room_id) as txn:
            if txn.room is None:
                return False
            result = transition(txn.room, connection_id)
            if not result.success:
                logger.debug(f"Dropped event from {connection_id} in room {room_id}: {result.error_code}")
                return False
            txn.commit(result.state)
            self._broadcast_state(result.state)
        return True
