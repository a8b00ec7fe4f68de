from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import orjson
import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from orderbook_viewer.datafeed.transport import ListenerSet, WebSocketTransport
from orderbook_viewer.engine.machine import ConnectionMachine, State
from orderbook_viewer.errors import ConnectFailure
from orderbook_viewer.types import BookLevel, Calculate, Connect, Disconnect, Subscribe

PRODUCT_ID = "PI_XBTUSD"
FEED = "book_ui_1"

SNAPSHOT = {
    "numLevels": 3,
    "feed": "book_ui_1_snapshot",
    "product_id": PRODUCT_ID,
    "bids": [[1, 10], [2, 20], [3, 30]],
    "asks": [[4, 10], [5, 20], [6, 30]],
}
DELTA = {"feed": FEED, "product_id": PRODUCT_ID, "bids": [[3, 0]], "asks": [[4, 15]]}


class FeedServer:
    """Minimal exchange: answers subscribe with a snapshot and one delta."""

    def __init__(self) -> None:
        self.received: list[dict[str, Any]] = []
        self.close_after_subscribe = False
        self.close_on_connect = False
        app = web.Application()
        app.router.add_get("/ws", self.handle)
        self.server = test_utils.TestServer(app)

    @property
    def url(self) -> str:
        return str(self.server.make_url("/ws"))

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        if self.close_on_connect:
            await ws.close()
            return ws
        async for msg in ws:
            payload = orjson.loads(msg.data)
            self.received.append(payload)
            if payload["event"] != "subscribe":
                continue
            if self.close_after_subscribe:
                await ws.close()
                break
            await ws.send_str(orjson.dumps(SNAPSHOT).decode())
            await ws.send_str(orjson.dumps(DELTA).decode())
        return ws


@pytest_asyncio.fixture
async def feed_server() -> AsyncIterator[FeedServer]:
    server = FeedServer()
    await server.server.start_server()
    try:
        yield server
    finally:
        await server.server.close()


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def test_listener_set_detach() -> None:
    listeners = ListenerSet()
    seen: list[int] = []
    detach = listeners.add(seen.append)
    listeners.emit(1)
    detach()
    detach()
    listeners.emit(2)
    assert seen == [1]
    assert len(listeners) == 0


def test_replaying_listener_set_delivers_unheard_values() -> None:
    listeners = ListenerSet(replay=True)
    listeners.emit(1000)

    seen: list[int] = []
    listeners.add(seen.append)
    listeners.add(seen.append)

    assert seen == [1000]


def test_cleared_listener_set_forgets_unheard_values() -> None:
    listeners = ListenerSet(replay=True)
    listeners.emit(1000)
    listeners.clear()

    seen: list[int] = []
    listeners.add(seen.append)
    assert seen == []


@pytest.mark.asyncio
async def test_open_unreachable_raises_connect_failure() -> None:
    transport = WebSocketTransport(connect_timeout=2.0)
    with pytest.raises(ConnectFailure) as excinfo:
        await transport.open("ws://127.0.0.1:1/ws")
    assert excinfo.value.url == "ws://127.0.0.1:1/ws"
    await transport.aclose()


@pytest.mark.asyncio
async def test_open_invalid_url_raises_connect_failure() -> None:
    transport = WebSocketTransport(connect_timeout=2.0)
    with pytest.raises(ConnectFailure):
        await transport.open("wrong-socket-url")
    await transport.aclose()


@pytest.mark.asyncio
async def test_send_after_close_is_noop(feed_server: FeedServer) -> None:
    transport = WebSocketTransport()
    connection = await transport.open(feed_server.url)
    assert connection.ready

    connection.close()
    connection.close()
    connection.send({"event": "subscribe", "feed": FEED, "product_ids": [PRODUCT_ID]})
    await connection.wait_closed()

    assert not connection.ready
    assert connection.finished
    await transport.aclose()
    assert feed_server.received == []


@pytest.mark.asyncio
async def test_machine_mirrors_remote_book(feed_server: FeedServer) -> None:
    async with ConnectionMachine(WebSocketTransport()) as machine:
        machine.send(Connect(feed_server.url))
        await machine.wait_for("connected.unsubscribed")

        machine.send(Subscribe(PRODUCT_ID, FEED))
        await _wait_until(lambda: machine.context.asks.get(4) == 15)

        assert machine.state is State.MESSAGE_RECEIVED
        assert machine.context.bids == {1: 10, 2: 20}
        assert machine.context.asks == {4: 15, 5: 20, 6: 30}
        assert feed_server.received == [
            {"event": "subscribe", "feed": FEED, "product_ids": [PRODUCT_ID]},
        ]

        machine.send(Calculate(2))
        await machine.settle()
        view = machine.context.view
        assert view.bid_levels == [BookLevel(2, 20, 20), BookLevel(1, 10, 30)]
        assert view.ask_levels == [BookLevel(4, 15, 15), BookLevel(5, 20, 35)]
        assert view.grand_total == 35
        assert view.spread == 2

        machine.send(Disconnect())
        await machine.wait_for("disconnected")
        assert machine.context.bids == {}


@pytest.mark.asyncio
async def test_server_close_disconnects_machine(feed_server: FeedServer) -> None:
    feed_server.close_after_subscribe = True

    async with ConnectionMachine(WebSocketTransport()) as machine:
        machine.send(Connect(feed_server.url))
        await machine.wait_for("connected.unsubscribed")
        machine.send(Subscribe(PRODUCT_ID, FEED))

        await machine.wait_for("disconnected")
        assert machine.context.connection is None
        assert machine.context.error is None


@pytest.mark.asyncio
async def test_machine_reaches_error_for_unreachable_endpoint() -> None:
    async with ConnectionMachine(WebSocketTransport(connect_timeout=2.0)) as machine:
        machine.send(Connect("ws://127.0.0.1:1/ws"))
        await machine.wait_for("error")
        assert isinstance(machine.context.error, ConnectFailure)


@pytest.mark.asyncio
async def test_immediate_server_close_disconnects_machine(feed_server: FeedServer) -> None:
    feed_server.close_on_connect = True

    async with ConnectionMachine(WebSocketTransport()) as machine:
        machine.send(Connect(feed_server.url))
        await machine.wait_for("connecting")
        await machine.wait_for("disconnected")

        assert machine.context.connection is None
        assert machine.context.error is None


@pytest.mark.asyncio
async def test_close_releases_session_after_reader_failure(feed_server: FeedServer) -> None:
    transport = WebSocketTransport()
    connection = await transport.open(feed_server.url)

    def explode(_raw: str) -> None:
        raise RuntimeError("listener blew up")

    connection.on_message(explode)
    connection.send({"event": "subscribe", "feed": FEED, "product_ids": [PRODUCT_ID]})
    await _wait_until(lambda: connection._reader.done())

    connection.close()
    await connection.wait_closed()

    assert connection.finished
    assert connection._session.closed
    await transport.aclose()
