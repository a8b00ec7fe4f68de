"""
Connection / subscription state machine.

Owns the order book and drives it from a single serialized event queue:

    disconnected --CONNECT--> connecting --opened--> connected.unsubscribed
                                         --failed--> error
    connected.unsubscribed --SUBSCRIBE--> connected.subscribed.listening
    connected.subscribed.* --MESSAGE_RECEIVED--> connected.subscribed.message_received
    connected.subscribed.* --UNSUBSCRIBE--> connected.unsubscribed
    connected.* --DISCONNECT--> disconnected
    connected.* --ERROR--> error
    error --CONNECT--> connecting

Events with no entry in the transition table for the current state are
dropped. In particular a second SUBSCRIBE while subscribed is ignored; the
caller must UNSUBSCRIBE first.

Listeners are scoped to regions: the error/close watcher lives for the whole
`connected` region, the message listener for the whole `connected.subscribed`
region. They are attached on region entry and detached on region exit.

Thread-safety: NOT thread-safe. Designed for single-threaded async use; all
event producers enqueue through send().
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, NamedTuple

import orjson

from ..datafeed.orderbook import OrderBook
from ..datafeed.transport import Connection, Detach, Transport
from ..errors import ConnectFailure
from ..types import (
    EMPTY_VIEW,
    BookView,
    Calculate,
    Connect,
    Disconnect,
    Error,
    Event,
    MessageReceived,
    OpenFailed,
    Opened,
    Subscribe,
    SubscriptionRequest,
    Unsubscribe,
)
from .view import compute_view

logger = logging.getLogger(__name__)


class State(Enum):
    """Leaf states. The value is the dotted path from the root."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    UNSUBSCRIBED = "connected.unsubscribed"
    LISTENING = "connected.subscribed.listening"
    MESSAGE_RECEIVED = "connected.subscribed.message_received"
    ERROR = "error"

    def matches(self, path: str) -> bool:
        """True if `path` is this state's path or one of its ancestors."""
        return self.value == path or self.value.startswith(path + ".")

    @property
    def connected(self) -> bool:
        return self.matches("connected")

    @property
    def subscribed(self) -> bool:
        return self.matches("connected.subscribed")


CONNECTED_STATES = (State.UNSUBSCRIBED, State.LISTENING, State.MESSAGE_RECEIVED)
SUBSCRIBED_STATES = (State.LISTENING, State.MESSAGE_RECEIVED)


@dataclass
class ConnectionContext:
    """
    Everything the machine knows. Fields are replaced by actions, never merged.

    `book` is the source of truth and is only mutated by the machine.
    """

    connection: Connection | None = None
    subscribed_product_id: str | None = None
    subscribed_feed: str | None = None
    book: OrderBook = field(default_factory=OrderBook)
    last_message: Any = None
    error: Any = None
    view: BookView = EMPTY_VIEW

    @property
    def bids(self) -> dict[float, float]:
        return self.book.bids

    @property
    def asks(self) -> dict[float, float]:
        return self.book.asks

    def copy(self) -> ConnectionContext:
        """Copy safe to hand to readers: the book dicts are duplicated."""
        return replace(self, book=self.book.copy())


class MachineSnapshot(NamedTuple):
    state: State
    context: ConnectionContext

    def matches(self, path: str) -> bool:
        return self.state.matches(path)


TransitionListener = Callable[[State], None]
Handler = Callable[[Any], State]


class ConnectionMachine:
    """
    Connection state machine with exclusive ownership of the order book.

    Usage:
        async with ConnectionMachine(WebSocketTransport()) as machine:
            machine.send(Connect(url))
            await machine.wait_for("connected.unsubscribed")
            machine.send(Subscribe("PI_XBTUSD", "book_ui_1"))
            ...
            machine.send(Calculate(25))
            await machine.settle()
            view = machine.snapshot().context.view
    """

    def __init__(self, transport: Transport) -> None:
        self.transport = transport
        self.state = State.DISCONNECTED
        self.context = ConnectionContext()

        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        self._consumer: asyncio.Task[None] | None = None
        self._open_task: asyncio.Task[None] | None = None
        self._attempt = 0

        # Region-scoped listener detachers
        self._detach_watchers: list[Detach] = []
        self._detach_messages: list[Detach] = []

        self._transition_listeners: list[TransitionListener] = []

        # (state, event type) -> handler returning the target state
        self._transitions: dict[tuple[State, type], Handler] = {
            (State.DISCONNECTED, Connect): self._connect,
            (State.ERROR, Connect): self._connect,
            (State.CONNECTING, Opened): self._opened,
            (State.CONNECTING, OpenFailed): self._open_failed,
            (State.UNSUBSCRIBED, Subscribe): self._subscribe,
            (State.MESSAGE_RECEIVED, Calculate): self._calculate,
        }
        for state in CONNECTED_STATES:
            self._transitions[(state, Error)] = self._fail
            self._transitions[(state, Disconnect)] = self._disconnect
        for state in SUBSCRIBED_STATES:
            self._transitions[(state, Unsubscribe)] = self._unsubscribe
            self._transitions[(state, MessageReceived)] = self._receive

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the event consumer. Requires a running event loop."""
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._run(), name="connection-machine")

    async def stop(self) -> None:
        """Stop consuming, tear down any connection, close the transport."""
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

        if self._open_task is not None and not self._open_task.done():
            self._open_task.cancel()
            try:
                await self._open_task
            except asyncio.CancelledError:
                pass

        # Consumer is gone, so handling inline is still serialized.
        # Connections from an open that finished but was never handled are
        # closed by transport.aclose().
        if self.state is State.CONNECTING:
            self._transition(State.DISCONNECTED)
        elif self.state.connected:
            self._dispatch(Disconnect())

        await self.transport.aclose()

    async def __aenter__(self) -> ConnectionMachine:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def send(self, event: Event) -> None:
        """Enqueue an event. Never blocks, never raises."""
        self._queue.put_nowait(event)

    def snapshot(self) -> MachineSnapshot:
        """Current state with a copy of the context."""
        return MachineSnapshot(self.state, self.context.copy())

    def matches(self, path: str) -> bool:
        return self.state.matches(path)

    def on_transition(self, listener: TransitionListener) -> Detach:
        """Call `listener(state)` after every handled event."""
        self._transition_listeners.append(listener)

        def detach() -> None:
            if listener in self._transition_listeners:
                self._transition_listeners.remove(listener)

        return detach

    async def settle(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def wait_for(self, path: str, timeout: float | None = 5.0) -> State:
        """Wait until the machine is in a state matching `path`."""
        if self.state.matches(path):
            return self.state

        reached: asyncio.Future[State] = asyncio.get_running_loop().create_future()

        def check(state: State) -> None:
            if state.matches(path) and not reached.done():
                reached.set_result(state)

        detach = self.on_transition(check)
        try:
            return await asyncio.wait_for(reached, timeout)
        finally:
            detach()

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self._dispatch(event)
            except Exception:
                logger.exception("Handler failed for %s in %s", type(event).__name__, self.state.value)
            finally:
                self._queue.task_done()

    def _dispatch(self, event: Event) -> None:
        handler = self._transitions.get((self.state, type(event)))
        if handler is None:
            if isinstance(event, Opened):
                # Open finished after we stopped waiting for it
                event.connection.close()
            logger.debug("Ignoring %s in %s", type(event).__name__, self.state.value)
            return

        target = handler(event)
        self._transition(target)

        for listener in list(self._transition_listeners):
            listener(self.state)

    def _transition(self, target: State) -> None:
        """Move to `target`, running region exit/entry actions."""
        source = self.state

        # Exit innermost first
        if source.subscribed and not target.subscribed:
            self._detach(self._detach_messages)
        if source.connected and not target.connected:
            self._detach(self._detach_watchers)

        self.state = target
        if source is not target:
            logger.debug("%s -> %s", source.value, target.value)

        # Enter outermost first
        if target.connected and not source.connected:
            self._watch_connection()
        if target.subscribed and not source.subscribed:
            self._listen_for_messages()

    @staticmethod
    def _detach(detachers: list[Detach]) -> None:
        while detachers:
            detachers.pop()()

    # ------------------------------------------------------------------
    # Region-scoped listeners
    # ------------------------------------------------------------------

    def _watch_connection(self) -> None:
        connection = self.context.connection
        if connection is None:
            return
        self._detach_watchers.append(
            connection.on_error(lambda error: self.send(Error(error)))
        )
        self._detach_watchers.append(
            connection.on_close(lambda _code: self.send(Disconnect()))
        )

    def _listen_for_messages(self) -> None:
        connection = self.context.connection
        if connection is None:
            return
        self._detach_messages.append(connection.on_message(self._on_raw_message))

    def _on_raw_message(self, raw: str | bytes) -> None:
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            logger.warning("Dropping undecodable frame: %s", e)
            return
        self.send(MessageReceived(data))

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    def _connect(self, event: Connect) -> State:
        self._attempt += 1
        self._open_task = asyncio.create_task(
            self._open(event.url, self._attempt), name=f"open {event.url}"
        )
        return State.CONNECTING

    async def _open(self, url: str, attempt: int) -> None:
        """The only suspension point: the result comes back as an event."""
        try:
            connection = await self.transport.open(url)
        except ConnectFailure as e:
            logger.warning("Connect failed: %s", e)
            self.send(OpenFailed(e, attempt))
            return
        self.send(Opened(connection, attempt))

    def _opened(self, event: Opened) -> State:
        if event.attempt != self._attempt:
            event.connection.close()
            return self.state
        self.context.connection = event.connection
        return State.UNSUBSCRIBED

    def _open_failed(self, event: OpenFailed) -> State:
        if event.attempt != self._attempt:
            return self.state
        self.context.error = event.error
        return State.ERROR

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _teardown(self) -> None:
        connection = self.context.connection
        if connection is not None:
            connection.close()
        self.context.connection = None
        self.context.book.clear()
        self.context.subscribed_product_id = None
        self.context.subscribed_feed = None

    def _fail(self, event: Error) -> State:
        logger.warning("Transport error: %s", event.error)
        self.context.error = event.error
        self._teardown()
        return State.ERROR

    def _disconnect(self, event: Disconnect) -> State:
        self._teardown()
        return State.DISCONNECTED

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def _send_request(self, request: SubscriptionRequest) -> None:
        connection = self.context.connection
        if connection is not None:
            connection.send(request.payload())

    def _subscribe(self, event: Subscribe) -> State:
        self._send_request(SubscriptionRequest("subscribe", event.feed, event.product_id))
        self.context.book.clear()
        self.context.subscribed_product_id = event.product_id
        self.context.subscribed_feed = event.feed
        logger.info("Subscribed to %s on %s", event.product_id, event.feed)
        return State.LISTENING

    def _unsubscribe(self, event: Unsubscribe) -> State:
        self._send_request(SubscriptionRequest(
            "unsubscribe",
            self.context.subscribed_feed,
            self.context.subscribed_product_id,
        ))
        self.context.book.clear()
        self.context.subscribed_product_id = None
        self.context.subscribed_feed = None
        return State.UNSUBSCRIBED

    # ------------------------------------------------------------------
    # Messages and views
    # ------------------------------------------------------------------

    def _receive(self, event: MessageReceived) -> State:
        """
        Record the payload, then apply it if it belongs to our product.

        HOT PATH.
        """
        message = event.data
        self.context.last_message = message

        if not isinstance(message, dict):
            return State.MESSAGE_RECEIVED

        product_id = message.get('product_id')
        if product_id is not None and product_id != self.context.subscribed_product_id:
            return State.MESSAGE_RECEIVED

        self.context.book.apply(message)
        return State.MESSAGE_RECEIVED

    def _calculate(self, event: Calculate) -> State:
        book = self.context.book
        self.context.view = compute_view(book.bids, book.asks, event.depth)
        return State.MESSAGE_RECEIVED
