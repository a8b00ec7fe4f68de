"""
Local order book mirror fed by snapshot + delta messages.

HOT PATH: apply() is called for every inbound message on the subscribed feed.

Strategy:
1. dict[float, float] per side for O(1) upsert/delete of individual prices
2. Snapshots and deltas take the same path; a snapshot is just a batch
   that happens to cover the full depth
3. Sorting is left to the view calculator (engine/view.py), only done
   when a view is requested
"""

from __future__ import annotations

import math
from typing import Any, Iterable

PriceLevels = dict[float, float]


def is_valid_row(row: Any) -> bool:
    """
    A row is valid when it is exactly [price, size] with both components
    finite real numbers and a non-negative size.
    """
    if not isinstance(row, (list, tuple)) or len(row) != 2:
        return False
    price, size = row
    for value in (price, size):
        # bool is an int subclass; JSON true/false is not a price
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value):
            return False
    return size >= 0


def apply_rows(rows: Iterable[Any] | None, levels: PriceLevels) -> PriceLevels:
    """
    Apply one side of an update batch to `levels` in place.

    size == 0 removes the price, any other size overwrites it.
    Malformed rows are skipped without touching `levels`.

    HOT PATH.
    """
    if not isinstance(rows, (list, tuple)):
        return levels

    for row in rows:
        if not is_valid_row(row):
            continue
        price, size = row
        if size == 0:
            levels.pop(price, None)
        else:
            levels[price] = size

    return levels


class OrderBook:
    """
    Bid and ask price levels for the subscribed product.

    Owned by the connection machine's context. NOT thread-safe; every
    mutation happens on the machine's single consumer task.
    """

    __slots__ = ('bids', 'asks')

    def __init__(
        self,
        bids: PriceLevels | None = None,
        asks: PriceLevels | None = None,
    ) -> None:
        # price -> size, size always > 0
        self.bids: PriceLevels = bids if bids is not None else {}
        self.asks: PriceLevels = asks if asks is not None else {}

    def apply(self, message: dict[str, Any]) -> None:
        """
        Apply an update batch: {bids: [[price, size], ...], asks: [[price, size], ...]}

        Either side may be missing. Applying the same batch twice leaves the
        book unchanged the second time.
        """
        apply_rows(message.get('bids'), self.bids)
        apply_rows(message.get('asks'), self.asks)

    def clear(self) -> None:
        """Empty both sides in place."""
        self.bids.clear()
        self.asks.clear()

    def copy(self) -> OrderBook:
        return OrderBook(dict(self.bids), dict(self.asks))

    def __repr__(self) -> str:
        return f"OrderBook(bids={len(self.bids)}, asks={len(self.asks)})"
