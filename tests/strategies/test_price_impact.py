# tests/strategies/test_price_impact.py
import pytest

from mmbot.storage.models import BookLevel
from mmbot.strategies.price_impact import ask_walk_cost, split_notional


def test_ask_walk_cost_sums_levels_below_target():
    asks = [BookLevel(0.90, 100), BookLevel(0.95, 200), BookLevel(1.00, 500)]

    assert ask_walk_cost(asks, 1.0) == pytest.approx(90 + 190)


def test_ask_walk_cost_zero_when_nothing_below():
    assert ask_walk_cost([BookLevel(1.05, 10)], 1.0) == 0
    assert ask_walk_cost([], 1.0) == 0


def test_split_notional_even():
    assert split_notional(100, 4) == [25.0, 25.0, 25.0, 25.0]


def test_split_notional_remainder_goes_last():
    chunks = split_notional(100.01, 3)

    assert chunks == [33.33, 33.33, 33.35]
    assert sum(chunks) == pytest.approx(100.01)


def test_split_notional_rejects_zero_parts():
    with pytest.raises(ValueError):
        split_notional(10, 0)
