"""
Room snapshot serialization.
"""

from typing import Any, Dict, Optional

from .models import Player, Results, Room


def serialize_player(player: Player) -> Dict[str, Any]:
    return {
        "id": player.id,
        "name": player.name,
        "selectedCard": player.selected_card,
        "isHost": player.is_host
    }


def serialize_results(results: Optional[Results]) -> Optional[Dict[str, Any]]:
    if results is None:
        return None
    serialized = {
        "average": results.average,
        "median": results.median,
        "mode": results.mode,
        "suggestion": results.suggestion,
        "breakdown": [
            {"value": entry.value, "count": entry.count}
            for entry in results.breakdown
        ]
    }
    # Absent until the host accepts a value
    if results.accepted_value is not None:
        serialized["acceptedValue"] = results.accepted_value
    return serialized


def serialize_room(room: Room) -> Dict[str, Any]:
    """
    Serialize a room into the snapshot every client receives.

    Args:
        room: Room state to serialize

    Returns:
        JSON-safe dictionary with camelCase keys
    """
    return {
        "id": room.id,
        "hostId": room.host_id,
        "topic": room.topic,
        "deckType": room.deck_type,
        "players": [serialize_player(player) for player in room.players],
        "isRevealed": room.is_revealed,
        "results": serialize_results(room.results),
        "history": [
            {"topic": item.topic, "value": item.value, "timestamp": item.timestamp}
            for item in room.history
        ],
        "version": room.version
    }
