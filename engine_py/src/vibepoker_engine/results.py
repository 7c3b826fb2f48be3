"""
Result aggregation over revealed selections.

Pure functions: given the players of a room and its deck, compute the
average, median, mode, nearest-card suggestion and frequency breakdown.
"""

import math
from typing import Dict, List, Optional, Sequence, Union

from .constants import HALF_CARD, SIZE_DECK, TSHIRT_WEIGHTS, get_deck, is_sentinel, resolve_deck_type
from .models import BreakdownEntry, Player, Results

Number = Union[int, float]


def card_weight(card: str, deck_type: Optional[str] = None) -> Optional[float]:
    """Map a card onto the number used for aggregation, or ``None``."""
    if is_sentinel(card):
        return None
    if resolve_deck_type(deck_type) == SIZE_DECK:
        weight = TSHIRT_WEIGHTS.get(card)
        return float(weight) if weight is not None else None
    if card == HALF_CARD:
        return 0.5
    try:
        value = float(card)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def nearest_card(target: float, deck_type: Optional[str] = None) -> Optional[str]:
    """
    Find the deck card whose weight is closest to ``target``.

    Cards are scanned in deck order and only a strictly smaller distance
    replaces the current best, so ties go to the card listed first.
    """
    best: Optional[str] = None
    best_diff = math.inf
    for card in get_deck(deck_type):
        weight = card_weight(card, deck_type)
        if weight is None:
            continue
        diff = abs(target - weight)
        if diff < best_diff:
            best_diff = diff
            best = card
    return best


def build_breakdown(cards: Sequence[str]) -> List[BreakdownEntry]:
    """Frequency table, most frequent first; ties keep first-seen order."""
    counts: Dict[str, int] = {}
    for card in cards:
        counts[card] = counts.get(card, 0) + 1
    entries = [BreakdownEntry(value=value, count=count) for value, count in counts.items()]
    # sorted() is stable, insertion order survives among equal counts
    return sorted(entries, key=lambda entry: entry.count, reverse=True)


def median(values: Sequence[float]) -> float:
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def round_half_up(value: float, digits: int = 1) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def as_number(value: float) -> Number:
    """Report integral floats as ints (``2`` rather than ``2.0``)."""
    return int(value) if float(value).is_integer() else value


def calculate_results(players: Sequence[Player], deck_type: Optional[str] = None) -> Results:
    """
    Aggregate the selections of ``players`` for the given deck.

    Args:
        players: Players in join order; unselected players are skipped
        deck_type: Deck of the room, unknown names fall back to the default

    Returns:
        A fresh Results without ``accepted_value``
    """
    deck_type = resolve_deck_type(deck_type)
    cards = [p.selected_card for p in players if p.selected_card is not None]

    breakdown = build_breakdown(cards)
    mode = breakdown[0].value if breakdown else None

    weights = [w for w in (card_weight(card, deck_type) for card in cards) if w is not None]
    if not weights:
        return Results(mode=mode, breakdown=breakdown)

    mean = sum(weights) / len(weights)
    mid = median(weights)
    closest = nearest_card(mean, deck_type)

    if deck_type == SIZE_DECK:
        # Labels only; a numeric mean of ordinal weights is meaningless to show
        return Results(
            average=closest,
            median=nearest_card(mid, deck_type),
            mode=mode,
            suggestion=closest,
            breakdown=breakdown
        )

    suggestion = card_weight(closest, deck_type) if closest is not None else None
    return Results(
        average=as_number(round_half_up(mean)),
        median=as_number(mid),
        mode=mode,
        suggestion=as_number(suggestion) if suggestion is not None else None,
        breakdown=breakdown
    )
