"""
WebSocket event models and validation.
"""

from enum import Enum
from typing import Any, Dict, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError


class EventType(str, Enum):
    """Inbound event types."""
    SELECT_CARD = "select-card"
    UPDATE_TOPIC = "update-topic"
    REVEAL_CARDS = "reveal-cards"
    ACCEPT_ESTIMATION = "accept-estimation"
    RESET_ROUND = "reset-round"
    REVOTE = "revote"
    REQUEST_STATE = "request-state"


class OutboundEventType(str, Enum):
    """Outbound event types."""
    ROOM_STATE = "room-state"


# Events that consume the "chatty" rate-limit bucket
CHATTY_EVENTS = frozenset({EventType.SELECT_CARD})


class ConnectEvent(BaseModel):
    """Join parameters carried by the connection request."""
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    deck_type: Optional[str] = Field(default=None, alias="deckType")


# Inbound event models
class BaseEvent(BaseModel):
    """Base event model."""
    type: EventType


class SelectCardEvent(BaseEvent):
    """Select or (with null) clear a card.

    The card is checked against the room's deck by the engine; here it
    only has to be present.
    """
    type: EventType = EventType.SELECT_CARD
    card: Any = Field(...)


class UpdateTopicEvent(BaseEvent):
    """Set the round topic (host only)."""
    type: EventType = EventType.UPDATE_TOPIC
    topic: Any = None


class RevealCardsEvent(BaseEvent):
    type: EventType = EventType.REVEAL_CARDS


class AcceptEstimationEvent(BaseEvent):
    """Accept a value into the room history (host only)."""
    type: EventType = EventType.ACCEPT_ESTIMATION
    value: Any = None


class ResetRoundEvent(BaseEvent):
    type: EventType = EventType.RESET_ROUND


class RevoteEvent(BaseEvent):
    type: EventType = EventType.REVOTE


class RequestStateEvent(BaseEvent):
    """Ask for the current snapshot; answered to the sender only."""
    type: EventType = EventType.REQUEST_STATE


class UnknownEvent(BaseModel):
    """Well-formed envelope with a type this server does not handle."""
    type: str


# Union type for all inbound events
InboundEvent = Union[
    SelectCardEvent,
    UpdateTopicEvent,
    RevealCardsEvent,
    AcceptEstimationEvent,
    ResetRoundEvent,
    RevoteEvent,
    RequestStateEvent,
    UnknownEvent
]


# Outbound event models
class RoomStateEvent(BaseModel):
    """Full room snapshot; replaces all client-side room state."""
    type: OutboundEventType = OutboundEventType.ROOM_STATE
    data: Dict[str, Any]


EVENT_MAP = {
    EventType.SELECT_CARD: SelectCardEvent,
    EventType.UPDATE_TOPIC: UpdateTopicEvent,
    EventType.REVEAL_CARDS: RevealCardsEvent,
    EventType.ACCEPT_ESTIMATION: AcceptEstimationEvent,
    EventType.RESET_ROUND: ResetRoundEvent,
    EventType.REVOTE: RevoteEvent,
    EventType.REQUEST_STATE: RequestStateEvent,
}


def parse_inbound_event(data: Union[str, bytes, Dict[str, Any]]) -> InboundEvent:
    """
    Parse a raw frame (or decoded dict) into an event model.

    Args:
        data: Text/bytes frame from the WebSocket, or an already decoded dict

    Returns:
        Parsed event model; unrecognized types yield UnknownEvent

    Raises:
        ValueError: If the frame is not JSON, not an object, has no type
            or carries an invalid payload
    """
    if isinstance(data, (str, bytes)):
        try:
            data = orjson.loads(data)
        except orjson.JSONDecodeError as e:
            raise ValueError(f"Malformed JSON: {e}")

    if not isinstance(data, dict):
        raise ValueError("Event must be a JSON object")

    event_type = data.get("type")
    if not event_type or not isinstance(event_type, str):
        raise ValueError("Missing event type")

    try:
        event_type = EventType(event_type)
    except ValueError:
        return UnknownEvent(type=event_type)

    event_class = EVENT_MAP[event_type]
    try:
        return event_class(**data)
    except ValidationError as e:
        raise ValueError(f"Invalid event data: {e.error_count()} error(s) for {event_type.value}")


def create_room_state_event(snapshot: Dict[str, Any]) -> RoomStateEvent:
    return RoomStateEvent(data=snapshot)


def encode_event(event: Union[BaseModel, Dict[str, Any]]) -> str:
    """Serialize an outbound event to a text frame."""
    if isinstance(event, BaseModel):
        event = event.model_dump(mode="json")
    return orjson.dumps(event).decode()
