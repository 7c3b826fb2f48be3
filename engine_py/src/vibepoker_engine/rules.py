"""
Server configuration and limits.
"""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import (
    DECKS, DEFAULT_DECK, MAX_HISTORY_ITEMS, MAX_NAME_LENGTH, MAX_PLAYERS_PER_ROOM,
    MAX_ROOMS, MAX_TOPIC_LENGTH, ROOM_GRACE_SECONDS
)


class ServerConfig(BaseModel):
    """Configuration for rooms, input limits and rate limiting."""

    max_players_per_room: int = Field(
        default=MAX_PLAYERS_PER_ROOM,
        ge=1,
        le=500,
        description="Maximum number of players in one room"
    )
    max_rooms: int = Field(
        default=MAX_ROOMS,
        ge=1,
        description="Maximum number of rooms held in memory at once"
    )
    max_name_length: int = Field(
        default=MAX_NAME_LENGTH,
        ge=1,
        le=200,
        description="Maximum length of a player name"
    )
    max_topic_length: int = Field(
        default=MAX_TOPIC_LENGTH,
        ge=1,
        le=2000,
        description="Topics longer than this are truncated"
    )
    max_history_items: int = Field(
        default=MAX_HISTORY_ITEMS,
        ge=1,
        description="Accepted estimations kept per room, oldest dropped first"
    )
    room_grace_seconds: float = Field(
        default=ROOM_GRACE_SECONDS,
        ge=0,
        description="Delay before an empty room is discarded"
    )
    select_rate_per_sec: int = Field(
        default=10,
        ge=1,
        description="Card selections accepted per connection per second"
    )
    control_rate_per_sec: int = Field(
        default=5,
        ge=1,
        description="Topic/reveal/reset style actions accepted per connection per second"
    )
    max_message_bytes: int = Field(
        default=4096,
        ge=64,
        description="Inbound frames larger than this are dropped"
    )
    default_deck: str = Field(
        default=DEFAULT_DECK,
        description="Deck used when the host does not pick a known one"
    )

    @field_validator('default_deck')
    @classmethod
    def validate_default_deck(cls, v):
        """The fallback deck must be one of the known decks."""
        if v not in DECKS:
            raise ValueError(f'default_deck must be one of {sorted(DECKS)}, got {v!r}')
        return v


# Default configuration instance
default_config = ServerConfig()

# Environment variable -> config field
ENV_VARS = {
    'VIBEPOKER_MAX_PLAYERS': 'max_players_per_room',
    'VIBEPOKER_MAX_ROOMS': 'max_rooms',
    'VIBEPOKER_MAX_NAME_LENGTH': 'max_name_length',
    'VIBEPOKER_MAX_TOPIC_LENGTH': 'max_topic_length',
    'VIBEPOKER_MAX_HISTORY': 'max_history_items',
    'VIBEPOKER_ROOM_GRACE_SECONDS': 'room_grace_seconds',
    'VIBEPOKER_SELECT_RATE': 'select_rate_per_sec',
    'VIBEPOKER_CONTROL_RATE': 'control_rate_per_sec',
    'VIBEPOKER_MAX_MESSAGE_BYTES': 'max_message_bytes',
    'VIBEPOKER_DEFAULT_DECK': 'default_deck',
}


def create_config(**overrides) -> ServerConfig:
    """Create a ServerConfig with optional overrides."""
    config_dict = default_config.model_dump()
    config_dict.update(overrides)
    return ServerConfig(**config_dict)


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """Build the config from ``VIBEPOKER_*`` environment variables."""
    environ = os.environ if environ is None else environ
    overrides = {
        field_name: environ[var]
        for var, field_name in ENV_VARS.items()
        if environ.get(var)
    }
    # pydantic coerces the string values
    return create_config(**overrides)
