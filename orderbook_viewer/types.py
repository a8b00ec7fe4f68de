"""
Data types for the order book viewer.

Notes:
- NamedTuple for immutable, memory-efficient structures (views, requests, events)
- The mutable source of truth (price -> size dicts) lives in datafeed/orderbook.py
"""

from __future__ import annotations

from typing import Any, NamedTuple, Union


class BookLevel(NamedTuple):
    """Single row of a computed view."""
    price: float
    size: float
    total: float  # Running size from the top of the book down to this row


class BookView(NamedTuple):
    """
    Bounded, sorted, cumulative view of the book.

    Derived from the price-level dicts on each CALCULATE; never written back.
    """
    spread: float
    spread_percentage: float
    bid_levels: list[BookLevel]  # Price descending
    ask_levels: list[BookLevel]  # Price ascending
    grand_total: float           # max(bid side total, ask side total)


EMPTY_VIEW = BookView(
    spread=0.0,
    spread_percentage=0.0,
    bid_levels=[],
    ask_levels=[],
    grand_total=0.0,
)


class SubscriptionRequest(NamedTuple):
    """Outbound control message sent on subscribe/unsubscribe."""
    event: str  # "subscribe" | "unsubscribe"
    feed: str
    product_id: str

    def payload(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "feed": self.feed,
            "product_ids": [self.product_id],
        }


# ---------------------------------------------------------------------------
# Machine events. One class per kind; the machine dispatches on type.
# ---------------------------------------------------------------------------

class Connect(NamedTuple):
    url: str


class Subscribe(NamedTuple):
    product_id: str
    feed: str


class Unsubscribe(NamedTuple):
    pass


class Calculate(NamedTuple):
    depth: int


class Disconnect(NamedTuple):
    pass


class Error(NamedTuple):
    """Runtime error reported by the transport while connected."""
    error: Any


class MessageReceived(NamedTuple):
    """Decoded inbound payload. Any JSON value is accepted."""
    data: Any


class Opened(NamedTuple):
    """Internal: the open started by CONNECT attempt `attempt` succeeded."""
    connection: Any
    attempt: int


class OpenFailed(NamedTuple):
    """Internal: the open started by CONNECT attempt `attempt` failed."""
    error: Any
    attempt: int


Event = Union[
    Connect, Subscribe, Unsubscribe, Calculate, Disconnect,
    Error, MessageReceived, Opened, OpenFailed,
]
