# mmbot/strategies/price_impact.py
import math
from collections.abc import Callable, Sequence

from mmbot.storage.models import BookLevel

# (asks ascending, target price) -> USDT notional needed
PriceImpactModel = Callable[[Sequence[BookLevel], float], float]


def ask_walk_cost(asks: Sequence[BookLevel], target_price: float) -> float:
    """Cost of consuming every ask priced below the target.

    Once those levels are gone the best ask sits at or above the target.
    Returns 0 when the book already has nothing below the target.
    """
    cost = 0.0
    for level in asks:
        if level.price >= target_price:
            break
        cost += level.price * level.quantity
    return cost


def split_notional(total: float, parts: int) -> list[float]:
    """Split into equal cent-rounded chunks, the last one absorbing the remainder"""
    if parts < 1:
        raise ValueError("parts must be at least 1")
    total_cents = round(total * 100)
    chunk = math.floor(total_cents / parts)
    chunks = [chunk] * (parts - 1) + [total_cents - chunk * (parts - 1)]
    return [c / 100 for c in chunks]
