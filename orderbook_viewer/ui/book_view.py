"""
Order book TUI using Textual.

Displays:
- Top: status line (product, connection state, spread)
- Left: bids (total, size, price) with depth bars, best bid first
- Right: asks (price, size, total) with depth bars, best ask first

The app is only a client of the connection machine: it sends commands and
reads snapshots, it never touches the book directly.

Notes:
- Requests a new view (CALCULATE) every refresh interval, not per message
- Depth bars are scaled by the view's grand total so both sides share a scale
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import RenderableType
from rich.style import Style
from rich.table import Table
from rich.text import Text

from textual.app import App, ComposeResult
from textual.containers import Horizontal
from textual.widgets import Footer, Static

from ..engine.machine import State
from ..types import Calculate, Connect, Subscribe, Unsubscribe

if TYPE_CHECKING:
    from ..config import Settings
    from ..engine.machine import ConnectionMachine, MachineSnapshot
    from ..types import BookLevel, BookView

# Color scheme (dark theme)
BID_COLOR = "#22c55e"      # Green
ASK_COLOR = "#ef4444"      # Red
HEADER_COLOR = "#94a3b8"
BAR_BG = "#1e293b"
BAR_WIDTH = 16


def format_price(price: float) -> str:
    return f"{price:,.2f}"


def format_size(size: float) -> str:
    """Thousands separators, no trailing zeros."""
    if float(size).is_integer():
        return f"{int(size):,}"
    return f"{size:,.4f}".rstrip("0").rstrip(".")


def make_bar(value: float, max_value: float, width: int, color: str, reverse: bool = False) -> Text:
    """Create a horizontal bar using block characters."""
    if max_value <= 0:
        return Text(" " * width)

    fill_ratio = min(1.0, value / max_value)
    fill_width = int(fill_ratio * width)

    filled = "█" * fill_width
    empty = " " * (width - fill_width)
    bar = empty + filled if reverse else filled + empty
    return Text(bar, style=Style(color=color, bgcolor=BAR_BG))


class SideTable(Static):
    """One side of the book."""

    DEFAULT_CSS = """
    SideTable {
        width: 1fr;
        height: 100%;
    }
    """

    def __init__(self, side: str) -> None:
        super().__init__()
        self.side = side
        self._view: BookView | None = None

    def update_view(self, view: BookView) -> None:
        self._view = view
        self.refresh()

    def render(self) -> RenderableType:
        if self._view is None:
            return Text("Waiting for data...", style="dim")

        view = self._view
        levels: list[BookLevel] = view.bid_levels if self.side == "bids" else view.ask_levels
        if not levels:
            return Text("No levels", style="dim")

        color = BID_COLOR if self.side == "bids" else ASK_COLOR

        table = Table(
            show_header=True,
            header_style=HEADER_COLOR,
            box=None,
            padding=(0, 1),
            collapse_padding=True,
        )

        # Bids mirror asks so both sides meet at the spread
        if self.side == "bids":
            table.add_column("Depth", justify="right", width=BAR_WIDTH, no_wrap=True)
            table.add_column("Total", justify="right", width=10)
            table.add_column("Size", justify="right", width=10)
            table.add_column("Price", justify="right", width=12)
            for level in levels:
                table.add_row(
                    make_bar(level.total, view.grand_total, BAR_WIDTH, color, reverse=True),
                    Text(format_size(level.total)),
                    Text(format_size(level.size)),
                    Text(format_price(level.price), style=color),
                )
        else:
            table.add_column("Price", justify="left", width=12)
            table.add_column("Size", justify="right", width=10)
            table.add_column("Total", justify="right", width=10)
            table.add_column("Depth", justify="left", width=BAR_WIDTH, no_wrap=True)
            for level in levels:
                table.add_row(
                    Text(format_price(level.price), style=color),
                    Text(format_size(level.size)),
                    Text(format_size(level.total)),
                    make_bar(level.total, view.grand_total, BAR_WIDTH, color),
                )

        return table


class StatusBar(Static):
    """Status bar showing product, connection state and spread."""

    DEFAULT_CSS = """
    StatusBar {
        dock: top;
        height: 3;
        padding: 0 2;
        background: #0f172a;
    }
    """

    def __init__(self) -> None:
        super().__init__()
        self._snapshot: MachineSnapshot | None = None

    def update_snapshot(self, snapshot: MachineSnapshot) -> None:
        self._snapshot = snapshot
        self.refresh()

    def render(self) -> RenderableType:
        if self._snapshot is None:
            return Text("Starting...", style="dim")

        state, context = self._snapshot
        view = context.view
        product = context.subscribed_product_id or "-"

        parts = [
            Text(f" {product} ", style="bold white on #1e40af"),
            Text("  "),
            Text(state.value, style="red" if state is State.ERROR else "cyan"),
            Text("  │  ", style="dim"),
            Text("Spread: ", style="dim"),
            Text(f"{format_price(view.spread)} ({view.spread_percentage:.2f}%)", style="yellow"),
        ]
        if state is State.ERROR and context.error is not None:
            parts.append(Text("  │  ", style="dim"))
            parts.append(Text(str(context.error), style="red"))

        result = Text()
        for p in parts:
            result.append(p)
        return result


class BookApp(App):
    """Main order book application."""

    CSS = """
    Screen {
        background: #0f172a;
    }

    #book {
        width: 100%;
        height: 100%;
        padding: 1 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("t", "toggle_feed", "Toggle Feed"),
        ("c", "reconnect", "Reconnect"),
    ]

    def __init__(self, machine: ConnectionMachine, settings: Settings) -> None:
        super().__init__()
        self.machine = machine
        self.settings = settings
        self.products = settings.products
        self.product_id = self.products[0]
        self._status_bar: StatusBar | None = None
        self._bids: SideTable | None = None
        self._asks: SideTable | None = None

    def compose(self) -> ComposeResult:
        self._status_bar = StatusBar()
        self._bids = SideTable("bids")
        self._asks = SideTable("asks")

        yield self._status_bar
        yield Horizontal(self._bids, self._asks, id="book")
        yield Footer()

    def on_mount(self) -> None:
        """Connect and start the refresh timer."""
        self._tick()
        self.set_interval(self.settings.refresh_interval_ms / 1000, self._tick)

    def _tick(self) -> None:
        """Drive the machine from its current state and redraw."""
        snapshot = self.machine.snapshot()
        state = snapshot.state

        # Errors wait for a manual reconnect
        if state is State.DISCONNECTED:
            self.machine.send(Connect(self.settings.websocket_url))
        elif state is State.UNSUBSCRIBED:
            self.machine.send(Subscribe(self.product_id, self.settings.feed))
        elif state is State.MESSAGE_RECEIVED:
            self.machine.send(Calculate(self.settings.levels))

        if self._status_bar:
            self._status_bar.update_snapshot(snapshot)
        if self._bids:
            self._bids.update_view(snapshot.context.view)
        if self._asks:
            self._asks.update_view(snapshot.context.view)

    def action_toggle_feed(self) -> None:
        """Switch to the next configured product (bound to 't' key)."""
        if len(self.products) < 2 or not self.machine.matches("connected.subscribed"):
            return
        index = self.products.index(self.product_id)
        self.product_id = self.products[(index + 1) % len(self.products)]
        self.machine.send(Unsubscribe())
        self.machine.send(Subscribe(self.product_id, self.settings.feed))

    def action_reconnect(self) -> None:
        """Reconnect after a disconnect or error (bound to 'c' key)."""
        if self.machine.matches("disconnected") or self.machine.matches("error"):
            self.machine.send(Connect(self.settings.websocket_url))


async def run_ui(machine: ConnectionMachine, settings: Settings) -> None:
    """Run the TUI application."""
    app = BookApp(machine, settings)
    await app.run_async()
