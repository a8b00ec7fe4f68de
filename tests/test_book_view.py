from __future__ import annotations

import pytest

from orderbook_viewer.config import Settings
from orderbook_viewer.engine.machine import ConnectionMachine, State
from orderbook_viewer.types import Calculate, Connect, Subscribe, Unsubscribe
from orderbook_viewer.ui.book_view import BookApp, format_price, format_size, make_bar
from tests.fakes import FakeTransport


def test_format_price() -> None:
    assert format_price(1234.5) == "1,234.50"
    assert format_price(-2) == "-2.00"


@pytest.mark.parametrize(
    ("size", "expected"),
    [(1500, "1,500"), (10.0, "10"), (0.25, "0.25"), (1234.5678, "1,234.5678")],
)
def test_format_size(size: float, expected: str) -> None:
    assert format_size(size) == expected


def test_make_bar_scales_to_max() -> None:
    assert make_bar(5, 10, 10, "#ffffff").plain == "█████     "
    assert make_bar(5, 10, 10, "#ffffff", reverse=True).plain == "     █████"
    assert make_bar(5, 0, 4, "#ffffff").plain == "    "


class RecordingMachine(ConnectionMachine):
    """Records sent events instead of queueing them."""

    def __init__(self) -> None:
        super().__init__(FakeTransport())
        self.sent_events: list[object] = []

    def send(self, event) -> None:  # type: ignore[override]
        self.sent_events.append(event)


def _app(machine: RecordingMachine) -> BookApp:
    settings = Settings(websocket_url="ws://x", feed="f", product_ids="A,B", levels=7)
    return BookApp(machine, settings)


def test_tick_subscribes_when_unsubscribed() -> None:
    machine = RecordingMachine()
    machine.state = State.UNSUBSCRIBED
    _app(machine)._tick()
    assert machine.sent_events == [Subscribe("A", "f")]


def test_tick_requests_view_when_receiving() -> None:
    machine = RecordingMachine()
    machine.state = State.MESSAGE_RECEIVED
    _app(machine)._tick()
    assert machine.sent_events == [Calculate(7)]


def test_toggle_feed_switches_product() -> None:
    machine = RecordingMachine()
    machine.state = State.LISTENING
    app = _app(machine)

    app.action_toggle_feed()
    app.action_toggle_feed()

    assert machine.sent_events == [
        Unsubscribe(), Subscribe("B", "f"),
        Unsubscribe(), Subscribe("A", "f"),
    ]


def test_reconnect_only_when_down() -> None:
    machine = RecordingMachine()
    app = _app(machine)

    machine.state = State.UNSUBSCRIBED
    app.action_reconnect()
    machine.state = State.ERROR
    app.action_reconnect()

    assert machine.sent_events == [Connect("ws://x")]


def test_tick_reconnects_after_disconnect() -> None:
    machine = RecordingMachine()
    machine.state = State.DISCONNECTED
    _app(machine)._tick()
    assert machine.sent_events == [Connect("ws://x")]


def test_tick_waits_for_manual_reconnect_after_error() -> None:
    machine = RecordingMachine()
    machine.state = State.ERROR
    _app(machine)._tick()
    assert machine.sent_events == []
