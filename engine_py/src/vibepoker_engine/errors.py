# engine_py/src/vibepoker_engine/errors.py

from enum import Enum


class CloseReason(str, Enum):
    """Reason codes sent to a connection that is refused or closed."""
    NAME_REQUIRED = "NAME_REQUIRED"
    INVALID_NAME = "INVALID_NAME"
    ROOM_FULL = "ROOM_FULL"
    NAME_TAKEN = "NAME_TAKEN"
    INVALID_ROOM = "INVALID_ROOM"
    TOO_MANY_ROOMS = "TOO_MANY_ROOMS"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# WebSocket close codes
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011

# Reasons a mid-session event is dropped (logged, never surfaced)
NOT_IN_ROOM = "NOT_IN_ROOM"
NOT_HOST = "NOT_HOST"
INVALID_CARD = "INVALID_CARD"
ALREADY_REVEALED = "ALREADY_REVEALED"
UNCHANGED = "UNCHANGED"
ALREADY_JOINED = "ALREADY_JOINED"


class EngineError(Exception):
    """Base exception for room engine errors."""
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class RoomCapacityError(EngineError):
    """Raised when no further rooms may be created."""
    def __init__(self, max_rooms: int):
        super().__init__(CloseReason.TOO_MANY_ROOMS.value, f"Room limit of {max_rooms} reached")
        self.max_rooms = max_rooms


def close_code_for(reason: CloseReason) -> int:
    if reason == CloseReason.INTERNAL_ERROR:
        return CLOSE_INTERNAL_ERROR
    return CLOSE_POLICY_VIOLATION
