"""Deck definitions and estimation constants"""

from typing import Dict, Final, List, Tuple

# Sentinel cards present in every deck; never part of numeric aggregation
UNKNOWN_CARD: Final[str] = '?'
ABSTAIN_CARD: Final[str] = '☕'  # hot beverage, "need a break"
SENTINEL_CARDS: Final[Tuple[str, str]] = (UNKNOWN_CARD, ABSTAIN_CARD)

HALF_CARD: Final[str] = '½'

DECKS: Dict[str, Tuple[str, ...]] = {
    'fibonacci': ('0', '1', '2', '3', '5', '8', '13', '21', '34', '55', '89', UNKNOWN_CARD, ABSTAIN_CARD),
    'scrum': ('0', HALF_CARD, '1', '2', '3', '5', '8', '13', '20', '40', '100', UNKNOWN_CARD, ABSTAIN_CARD),
    'sequential': ('0', '1', '2', '3', '4', '5', '6', '7', '8', '9', '10', UNKNOWN_CARD, ABSTAIN_CARD),
    'hourly': ('1', '2', '3', '4', '6', '8', '12', '16', '24', '32', '40', UNKNOWN_CARD, ABSTAIN_CARD),
    'tshirt': ('XS', 'S', 'M', 'L', 'XL', 'XXL', UNKNOWN_CARD, ABSTAIN_CARD),
}

DEFAULT_DECK: Final[str] = 'scrum'
SIZE_DECK: Final[str] = 'tshirt'

# Ordinal weights for the size deck
TSHIRT_WEIGHTS: Dict[str, int] = {
    'XS': 1, 'S': 2, 'M': 3, 'L': 5, 'XL': 8, 'XXL': 13
}

# Textual spellings accepted for the half card
HALF_ALIASES: Tuple[str, ...] = ('1/2', '0.5')

# Characters stripped from names and topics
MARKUP_CHARS: Final[str] = '<>&"\''

MAX_NAME_LENGTH: Final[int] = 50
MAX_TOPIC_LENGTH: Final[int] = 200
MAX_ROOM_ID_LENGTH: Final[int] = 36
MAX_PLAYERS_PER_ROOM: Final[int] = 50
MAX_HISTORY_ITEMS: Final[int] = 50
MAX_ROOMS: Final[int] = 1000
ROOM_GRACE_SECONDS: Final[float] = 30.0

UNKNOWN_TOPIC: Final[str] = 'Unknown Topic'
GENERATED_ROOM_ID_LENGTH: Final[int] = 8


def resolve_deck_type(deck_type) -> str:
    """Return ``deck_type`` if it names a known deck, else the default deck."""
    if isinstance(deck_type, str) and deck_type in DECKS:
        return deck_type
    return DEFAULT_DECK


def get_deck(deck_type=None) -> List[str]:
    return list(DECKS[resolve_deck_type(deck_type)])


def is_sentinel(card: str) -> bool:
    return card in SENTINEL_CARDS
