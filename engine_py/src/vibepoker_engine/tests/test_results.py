"""
Tests for result aggregation.
"""

from vibepoker_engine.models import Player
from vibepoker_engine.results import (
    calculate_results, card_weight, nearest_card, round_half_up
)


def _players(*cards):
    return [Player(id=f"p{i}", name=f"Player {i}", selected_card=card) for i, card in enumerate(cards)]


def test_scrum_average_median_suggestion():
    results = calculate_results(_players("1", "3"), "scrum")
    assert results.average == 2
    assert results.median == 2
    assert results.suggestion == 2
    assert results.accepted_value is None


def test_scrum_average_rounded_to_one_decimal():
    results = calculate_results(_players("1", "2", "2"), "scrum")
    # 5/3 = 1.666...
    assert results.average == 1.7
    assert results.median == 2
    assert results.suggestion == 2


def test_half_card_counts_as_half():
    results = calculate_results(_players("½", "½"), "scrum")
    assert results.average == 0.5
    assert results.suggestion == 0.5


def test_even_count_median():
    results = calculate_results(_players("1", "2", "5", "8"), "scrum")
    assert results.median == 3.5


def test_tshirt_unanimous():
    results = calculate_results(_players("S", "S", "S"), "tshirt")
    assert results.average == "S"
    assert results.suggestion == "S"
    assert results.median == "S"


def test_tshirt_nearest_label():
    # Weights 2 and 5, mean 3.5: M(3) is 0.5 away, L(5) is 1.5 away
    results = calculate_results(_players("S", "L"), "tshirt")
    assert results.suggestion == "M"
    assert results.average == "M"


def test_tie_break_keeps_earlier_deck_entry():
    # Weights 3 and 5, mean 4: M and L are both 1 away
    results = calculate_results(_players("M", "L"), "tshirt")
    assert results.suggestion == "M"


def test_sentinels_only():
    results = calculate_results(_players("?", "☕", "?"), "scrum")
    assert results.average is None
    assert results.median is None
    assert results.suggestion is None
    assert results.mode == "?"
    assert [(e.value, e.count) for e in results.breakdown] == [("?", 2), ("☕", 1)]


def test_sentinels_excluded_from_numbers():
    results = calculate_results(_players("5", "?", "8", "☕"), "scrum")
    assert results.average == 6.5
    assert results.suggestion == 5


def test_no_selections():
    results = calculate_results(_players(None, None), "scrum")
    assert results.mode is None
    assert results.breakdown == []
    assert results.average is None


def test_breakdown_sorted_by_count_then_first_seen():
    results = calculate_results(_players("3", "5", "5", "8", "3", "1"), "scrum")
    assert [(e.value, e.count) for e in results.breakdown] == [("3", 2), ("5", 2), ("8", 1), ("1", 1)]
    assert results.mode == "3"


def test_unselected_players_skipped():
    results = calculate_results(_players("8", None, "8"), "fibonacci")
    assert results.average == 8
    assert results.breakdown[0].count == 2


def test_card_weight():
    assert card_weight("?", "scrum") is None
    assert card_weight("½", "scrum") == 0.5
    assert card_weight("XL", "tshirt") == 8
    assert card_weight("13", "fibonacci") == 13


def test_nearest_card():
    assert nearest_card(4, "fibonacci") == "3"
    assert nearest_card(6.5, "fibonacci") == "5"
    assert nearest_card(30, "scrum") == "20"
    assert nearest_card(4, "hourly") == "4"


def test_round_half_up():
    assert round_half_up(0.25) == 0.3
    assert round_half_up(2.45) == 2.5
    assert round_half_up(1.0) == 1.0
