"""
Order book view calculation.

Turns the unsorted price -> size dicts into the bounded ladder the UI renders:
sorted sides truncated to `depth`, running totals per side, spread, and
the grand total used to scale depth bars.

Called on demand (CALCULATE), never per message. Pure: the input dicts are
only read.
"""

from __future__ import annotations

import numpy as np

from ..datafeed.orderbook import PriceLevels
from ..types import BookLevel, BookView


def _side_levels(levels: PriceLevels, depth: int, descending: bool) -> list[BookLevel]:
    """Sort one side by price, keep the first `depth` rows, add running totals."""
    if depth <= 0 or not levels:
        return []

    rows = sorted(levels.items(), reverse=descending)[:depth]
    sizes = np.fromiter((size for _, size in rows), dtype=np.float64, count=len(rows))
    totals = np.cumsum(sizes).tolist()

    return [
        BookLevel(price, size, total)
        for (price, size), total in zip(rows, totals)
    ]


def compute_view(bids: PriceLevels, asks: PriceLevels, depth: int) -> BookView:
    """
    Compute the view for the top `depth` levels of each side.

    Bids are sorted by price descending, asks ascending. `grand_total` is the
    larger of the two side totals, not their sum.

    Boundary: with no bids the highest bid is 0 and the spread percentage is
    a division by zero. The result follows IEEE semantics (+/-inf, or nan
    when both sides are empty) instead of raising.
    """
    bid_levels = _side_levels(bids, depth, descending=True)
    ask_levels = _side_levels(asks, depth, descending=False)

    bid_total = bid_levels[-1].total if bid_levels else 0.0
    ask_total = ask_levels[-1].total if ask_levels else 0.0
    grand_total = max(bid_total, ask_total)

    highest_bid = bid_levels[0].price if bid_levels else 0
    lowest_ask = ask_levels[0].price if ask_levels else 0
    spread = lowest_ask - highest_bid

    with np.errstate(divide='ignore', invalid='ignore'):
        spread_percentage = float(np.float64(spread) / np.float64(highest_bid) * 100)

    return BookView(
        spread=spread,
        spread_percentage=spread_percentage,
        bid_levels=bid_levels,
        ask_levels=ask_levels,
        grand_total=grand_total,
    )
