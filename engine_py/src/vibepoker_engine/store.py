"""
In-memory room store with per-room serialization.

The store owns every Room. All reads-then-writes go through
``transaction()``, which holds the room's asyncio.Lock for the whole
read / transition / commit step, so two transitions on one room never
interleave while different rooms proceed independently.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from .constants import GENERATED_ROOM_ID_LENGTH
from .engine import create_room
from .errors import RoomCapacityError
from .models import Room
from .rules import ServerConfig, default_config

logger = logging.getLogger(__name__)


class RoomTransaction:
    """Handle given to the holder of a room lock."""

    def __init__(self, room_id: str, room: Optional[Room], is_new: bool):
        self.room_id = room_id
        self.room = room
        self.is_new = is_new
        self.committed: Optional[Room] = None

    def commit(self, new_room: Room) -> None:
        """Make ``new_room`` the stored state once the transaction exits."""
        self.committed = new_room
        self.room = new_room


class RoomStore:
    def __init__(self, config: ServerConfig = default_config):
        self.config = config
        self._rooms: Dict[str, Room] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)
        self._removal_tasks: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def get(self, room_id: str) -> Optional[Room]:
        """Last committed state of a room (read-only use)."""
        return self._rooms.get(room_id)

    def room_ids(self) -> List[str]:
        return list(self._rooms)

    def is_removal_scheduled(self, room_id: str) -> bool:
        task = self._removal_tasks.get(room_id)
        return task is not None and not task.done()

    def _check_capacity(self) -> None:
        if len(self._rooms) >= self.config.max_rooms:
            raise RoomCapacityError(self.config.max_rooms)

    def generate_room_id(self) -> str:
        while True:
            room_id = uuid.uuid4().hex[:GENERATED_ROOM_ID_LENGTH]
            if room_id not in self._rooms and room_id not in self._locks:
                return room_id

    def create(self, deck_type: Optional[str] = None) -> Room:
        """Explicitly create an empty room with a generated id."""
        self._check_capacity()
        room = create_room(self.generate_room_id(), deck_type or self.config.default_deck)
        self._store(room)
        logger.info(f"Room {room.id} created (deck={room.deck_type})")
        return room

    @asynccontextmanager
    async def transaction(self, room_id: str, create: bool = False) -> AsyncIterator[RoomTransaction]:
        """
        Hold the room lock for one read-modify-write step.

        With ``create=True`` a missing room is materialized, but it only
        enters the store if the transaction commits. Raises
        RoomCapacityError when a new room would exceed ``max_rooms``. If the
        body raises, nothing is committed.
        """
        lock = self._locks.setdefault(room_id, asyncio.Lock())
        self._lock_users[room_id] += 1
        try:
            async with lock:
                room = self._rooms.get(room_id)
                is_new = room is None
                if is_new and create:
                    self._check_capacity()
                    room = create_room(room_id, self.config.default_deck)
                txn = RoomTransaction(room_id, room, is_new)
                yield txn
                if txn.committed is not None:
                    self._store(txn.committed)
        finally:
            self._lock_users[room_id] -= 1
            if not self._lock_users[room_id]:
                del self._lock_users[room_id]
                if room_id not in self._rooms:
                    self._locks.pop(room_id, None)

    def _store(self, room: Room) -> None:
        self._rooms[room.id] = room
        if room.is_empty:
            self._schedule_removal(room)
        else:
            self._cancel_removal(room.id)

    def _schedule_removal(self, room: Room) -> None:
        room_id = room.id
        if self.is_removal_scheduled(room_id):
            return
        logger.info(f"Room {room_id} is empty, removing in {self.config.room_grace_seconds}s")
        self._removal_tasks[room_id] = asyncio.create_task(
            self._remove_after_grace(room_id, room.version)
        )

    def _cancel_removal(self, room_id: str) -> None:
        task = self._removal_tasks.pop(room_id, None)
        if task and not task.done():
            task.cancel()
            logger.debug(f"Removal of room {room_id} cancelled")

    async def _remove_after_grace(self, room_id: str, version: int) -> None:
        await asyncio.sleep(self.config.room_grace_seconds)
        # Past the sleep a rejoin no longer cancels us; the version check below decides
        self._removal_tasks.pop(room_id, None)
        async with self.transaction(room_id) as txn:
            # A rejoin (even one that emptied again) bumps the version
            if txn.room is not None and txn.room.is_empty and txn.room.version == version:
                del self._rooms[room_id]
                logger.info(f"Room {room_id} removed (empty after grace period)")

    async def close(self) -> None:
        """Cancel pending removals; used on shutdown."""
        tasks = list(self._removal_tasks.values())
        self._removal_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
