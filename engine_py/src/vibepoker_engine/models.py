"""Room models and data structures"""

from dataclasses import dataclass, field
from typing import List, Optional, Union

from .constants import DEFAULT_DECK

CardValue = str
# Numeric decks report numbers, the size deck reports labels
Statistic = Optional[Union[int, float, str]]


@dataclass
class Player:
    id: str  # connection id
    name: str
    selected_card: Optional[CardValue] = None
    is_host: bool = False


@dataclass
class BreakdownEntry:
    value: CardValue
    count: int


@dataclass
class Results:
    average: Statistic = None
    median: Statistic = None
    mode: Optional[CardValue] = None
    suggestion: Statistic = None
    breakdown: List[BreakdownEntry] = field(default_factory=list)
    accepted_value: Optional[CardValue] = None  # set by accept-estimation only


@dataclass(frozen=True)
class EstimationHistoryItem:
    topic: str
    value: CardValue
    timestamp: int  # epoch milliseconds


@dataclass
class Room:
    id: str
    host_id: str = ""
    topic: Optional[str] = None
    deck_type: str = DEFAULT_DECK
    players: List[Player] = field(default_factory=list)  # join order
    is_revealed: bool = False
    results: Optional[Results] = None
    history: List[EstimationHistoryItem] = field(default_factory=list)
    version: int = 0

    def get_player(self, player_id: str) -> Optional[Player]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def has_name(self, name: str) -> bool:
        lowered = name.lower()
        return any(p.name.lower() == lowered for p in self.players)

    @property
    def is_empty(self) -> bool:
        return not self.players
