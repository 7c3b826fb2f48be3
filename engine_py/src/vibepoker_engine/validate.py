"""
Validation and sanitization of untrusted input.

Nothing in this module raises for bad input: rejection is signalled by a
``None`` return (names, room ids, card values) or an empty string (topics).
"""

import re
import unicodedata
from typing import Any, Optional

from .constants import (
    HALF_ALIASES, HALF_CARD, MARKUP_CHARS, MAX_NAME_LENGTH, MAX_ROOM_ID_LENGTH,
    MAX_TOPIC_LENGTH, get_deck
)
from .models import CardValue

ROOM_ID_PATTERN = re.compile(r'^[A-Za-z0-9-]+$')

# Emoji (U+FE0F) and text (U+FE0E) presentation selectors
_PRESENTATION_SELECTORS = {0xFE0E: None, 0xFE0F: None}
_MARKUP_TABLE = {ord(c): None for c in MARKUP_CHARS}


def _strip_markup(text: str) -> str:
    return text.translate(_MARKUP_TABLE)


def validate_name(raw: Any, max_length: int = MAX_NAME_LENGTH) -> Optional[str]:
    """
    Validate a player display name.

    Returns the trimmed name with markup characters removed, or ``None`` if
    the input is not a string, is blank, or is longer than ``max_length``.
    """
    if not isinstance(raw, str):
        return None
    trimmed = raw.strip()
    if not trimmed or len(trimmed) > max_length:
        return None
    return _strip_markup(trimmed)


def validate_topic(raw: Any, max_length: int = MAX_TOPIC_LENGTH) -> str:
    """Sanitize a round topic; invalid input yields an empty string."""
    if not isinstance(raw, str):
        return ''
    return _strip_markup(raw.strip()[:max_length])


def validate_room_id(raw: Any) -> Optional[str]:
    if not isinstance(raw, str) or len(raw) > MAX_ROOM_ID_LENGTH:
        return None
    if not ROOM_ID_PATTERN.match(raw):
        return None
    return raw


def normalize_card_value(raw: str) -> str:
    """
    Canonicalize a card value for comparison.

    Applies NFC composition, drops presentation selectors and maps the
    textual spellings of one half onto the half glyph.
    """
    normalized = unicodedata.normalize('NFC', raw).translate(_PRESENTATION_SELECTORS)
    if normalized in HALF_ALIASES:
        return HALF_CARD
    return normalized


def _coerce_card(raw: Any) -> Optional[str]:
    # bool is an int subclass but never a card
    if isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        return raw
    if isinstance(raw, int):
        return str(raw)
    if isinstance(raw, float):
        if raw != raw or raw in (float('inf'), float('-inf')):
            return None
        return str(int(raw)) if raw.is_integer() else repr(raw)
    return None


def validate_card_value(raw: Any, deck_type: Optional[str] = None) -> Optional[CardValue]:
    """
    Match ``raw`` against the selected deck.

    Returns the deck's own spelling of the matching card, or ``None`` when
    nothing matches. Callers that accept a deselect must check for a
    ``None`` input themselves before calling this.
    """
    text = _coerce_card(raw)
    if text is None:
        return None
    wanted = normalize_card_value(text)
    for card in get_deck(deck_type):
        if normalize_card_value(card) == wanted:
            return card
    return None
