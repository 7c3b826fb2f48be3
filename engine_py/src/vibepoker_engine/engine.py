"""Room state transitions for planning poker rounds.

Every transition takes the current Room and returns an EngineResult. On
success ``result.state`` is a modified deep copy; the input room is never
touched, so a caller that does not commit the result leaves no trace.
Rejections are results, not exceptions.
"""

import copy
import time
from typing import Any, Optional, Tuple

from .constants import DECKS, UNKNOWN_TOPIC, resolve_deck_type
from .errors import (
    ALREADY_JOINED, ALREADY_REVEALED, INVALID_CARD, NOT_HOST, NOT_IN_ROOM, UNCHANGED, CloseReason
)
from .models import EstimationHistoryItem, Player, Room
from .results import calculate_results
from .rules import ServerConfig, default_config
from .validate import validate_card_value, validate_name, validate_topic


class EngineResult:
    """Outcome of a room transition."""

    def __init__(
        self,
        success: bool,
        state: Optional[Room] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None
    ):
        self.success = success
        self.state = state
        self.error_code = error_code
        self.error_message = error_message

    @classmethod
    def ok(cls, state: Room) -> 'EngineResult':
        return cls(success=True, state=state)

    @classmethod
    def error(cls, error_code: str, error_message: str) -> 'EngineResult':
        return cls(success=False, error_code=error_code, error_message=error_message)

    def __repr__(self):
        if self.success:
            return f"EngineResult(ok, version={self.state.version})"
        return f"EngineResult(error={self.error_code})"


def _next_state(room: Room) -> Room:
    new_room = copy.deepcopy(room)
    new_room.version += 1
    return new_room


def _now_ms() -> int:
    return int(time.time() * 1000)


def create_room(room_id: str, deck_type: Optional[str] = None) -> Room:
    """Create an empty room."""
    return Room(id=room_id, deck_type=resolve_deck_type(deck_type))


def check_join_name(raw_name: Any, config: ServerConfig = default_config) -> Tuple[Optional[str], Optional[CloseReason]]:
    """
    Validate the name a connection wants to join with.

    Returns ``(name, None)`` on success or ``(None, reason)`` where reason
    is NAME_REQUIRED for a missing/empty name and INVALID_NAME otherwise.
    """
    if raw_name is None or raw_name == '':
        return None, CloseReason.NAME_REQUIRED
    name = validate_name(raw_name, config.max_name_length)
    if not name:
        return None, CloseReason.INVALID_NAME
    return name, None


def join_room(
    room: Room,
    player_id: str,
    name: str,
    deck_type: Optional[str] = None,
    config: ServerConfig = default_config
) -> EngineResult:
    """Add a player; the first player of an empty room becomes host and may pick the deck."""
    if room.get_player(player_id):
        return EngineResult.error(ALREADY_JOINED, f"Connection {player_id} already joined")
    if len(room.players) >= config.max_players_per_room:
        return EngineResult.error(CloseReason.ROOM_FULL.value, "Room is full")
    if room.has_name(name):
        return EngineResult.error(CloseReason.NAME_TAKEN.value, f"Name {name!r} is taken")

    new_room = _next_state(room)
    is_host = new_room.is_empty
    new_room.players.append(Player(id=player_id, name=name, is_host=is_host))
    if is_host:
        new_room.host_id = player_id
        # Otherwise the deck chosen at creation stands
        if deck_type in DECKS:
            new_room.deck_type = deck_type
    return EngineResult.ok(new_room)


def leave_room(room: Room, player_id: str) -> EngineResult:
    """Remove a player, promoting the earliest remaining player if the host left."""
    if not room.get_player(player_id):
        return EngineResult.error(NOT_IN_ROOM, f"Player {player_id} not in room")

    new_room = _next_state(room)
    new_room.players = [p for p in new_room.players if p.id != player_id]
    if new_room.host_id == player_id:
        if new_room.players:
            successor = new_room.players[0]
            successor.is_host = True
            new_room.host_id = successor.id
        else:
            new_room.host_id = ""
    return EngineResult.ok(new_room)


def select_card(room: Room, player_id: str, card: Any) -> EngineResult:
    """Set (or with ``None`` clear) the player's selection."""
    player = room.get_player(player_id)
    if not player:
        return EngineResult.error(NOT_IN_ROOM, f"Player {player_id} not in room")
    if room.is_revealed:
        return EngineResult.error(ALREADY_REVEALED, "Cards already revealed")

    if card is None:
        selection = None
    else:
        selection = validate_card_value(card, room.deck_type)
        if selection is None:
            return EngineResult.error(INVALID_CARD, f"{card!r} is not in deck {room.deck_type}")
    if selection == player.selected_card:
        return EngineResult.error(UNCHANGED, "Selection unchanged")

    new_room = _next_state(room)
    new_room.get_player(player_id).selected_card = selection
    return EngineResult.ok(new_room)


def _require_host(room: Room, player_id: str) -> Optional[EngineResult]:
    if not player_id or room.host_id != player_id:
        return EngineResult.error(NOT_HOST, f"{player_id} is not the host")
    return None


def update_topic(room: Room, player_id: str, topic: Any, config: ServerConfig = default_config) -> EngineResult:
    rejected = _require_host(room, player_id)
    if rejected:
        return rejected
    new_topic = validate_topic(topic, config.max_topic_length)
    if new_topic == room.topic:
        return EngineResult.error(UNCHANGED, "Topic unchanged")

    new_room = _next_state(room)
    new_room.topic = new_topic
    return EngineResult.ok(new_room)


def reveal_cards(room: Room, player_id: str) -> EngineResult:
    rejected = _require_host(room, player_id)
    if rejected:
        return rejected

    new_room = _next_state(room)
    new_room.is_revealed = True
    new_room.results = calculate_results(new_room.players, new_room.deck_type)
    return EngineResult.ok(new_room)


def accept_estimation(
    room: Room,
    player_id: str,
    value: Any,
    config: ServerConfig = default_config,
    now_ms: Optional[int] = None
) -> EngineResult:
    """Record the agreed value in history and mark it on the current results."""
    rejected = _require_host(room, player_id)
    if rejected:
        return rejected
    accepted = validate_card_value(value, room.deck_type) if value is not None else None
    if accepted is None:
        return EngineResult.error(INVALID_CARD, f"{value!r} is not in deck {room.deck_type}")

    new_room = _next_state(room)
    new_room.history.append(EstimationHistoryItem(
        topic=new_room.topic or UNKNOWN_TOPIC,
        value=accepted,
        timestamp=_now_ms() if now_ms is None else now_ms
    ))
    overflow = len(new_room.history) - config.max_history_items
    if overflow > 0:
        del new_room.history[:overflow]
    if new_room.results is not None:
        new_room.results.accepted_value = accepted
    return EngineResult.ok(new_room)


def _clear_round(room: Room) -> Room:
    new_room = _next_state(room)
    new_room.is_revealed = False
    new_room.results = None
    for player in new_room.players:
        player.selected_card = None
    return new_room


def reset_round(room: Room, player_id: str) -> EngineResult:
    """Start a fresh round: clears votes, results and the topic."""
    rejected = _require_host(room, player_id)
    if rejected:
        return rejected
    new_room = _clear_round(room)
    new_room.topic = None
    return EngineResult.ok(new_room)


def revote(room: Room, player_id: str) -> EngineResult:
    """Vote again on the same topic."""
    rejected = _require_host(room, player_id)
    if rejected:
        return rejected
    return EngineResult.ok(_clear_round(room))
