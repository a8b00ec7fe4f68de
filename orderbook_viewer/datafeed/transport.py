"""
WebSocket transport for the connection machine.

Handles:
1. Opening the socket (one aiohttp session per connection)
2. Fan-out of inbound frames / errors / close to registered listeners
3. Ordered, non-blocking sends through an outbound queue

The machine only sees the Transport / Connection protocols below, so tests
can swap in an in-memory transport.

Notes:
- send() never raises; it is a no-op once the connection is closing
- close() is idempotent and detaches every listener before returning, so
  nothing reaches the machine after teardown
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Protocol

import aiohttp
import orjson

from ..errors import ConnectFailure

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]
Detach = Callable[[], None]

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_HEARTBEAT = 30.0


class Connection(Protocol):
    @property
    def ready(self) -> bool: ...

    def send(self, payload: dict[str, Any]) -> None: ...

    def on_message(self, callback: Listener) -> Detach: ...

    def on_error(self, callback: Listener) -> Detach: ...

    def on_close(self, callback: Listener) -> Detach: ...

    def close(self) -> None: ...


class Transport(Protocol):
    async def open(self, url: str) -> Connection: ...

    async def aclose(self) -> None: ...


class ListenerSet:
    """
    Callbacks for one notification kind, with detach handles.

    A replaying set keeps values emitted while nobody listens and hands
    them to the next callback added. Close and error notifications use it
    so a peer that drops right after the handshake is still reported.
    """

    __slots__ = ('_callbacks', '_replay', '_unheard')

    def __init__(self, replay: bool = False) -> None:
        self._callbacks: list[Listener] = []
        self._replay = replay
        self._unheard: list[Any] = []

    def add(self, callback: Listener) -> Detach:
        self._callbacks.append(callback)

        def detach() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        if self._unheard:
            pending, self._unheard = self._unheard, []
            for value in pending:
                callback(value)

        return detach

    def emit(self, value: Any) -> None:
        if not self._callbacks:
            if self._replay:
                self._unheard.append(value)
            return
        # Copy: a callback may detach itself (or others) while we iterate
        for callback in list(self._callbacks):
            callback(value)

    def clear(self) -> None:
        self._callbacks.clear()
        self._unheard.clear()

    def __len__(self) -> int:
        return len(self._callbacks)


class WebSocketConnection:
    """
    Open WebSocket plus its reader/writer tasks.

    Created by WebSocketTransport.open(); not meant to be built directly.
    """

    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
    ) -> None:
        self.url = url
        self._session = session
        self._ws = ws
        self._closing = False

        self._message_listeners = ListenerSet()
        self._error_listeners = ListenerSet(replay=True)
        self._close_listeners = ListenerSet(replay=True)

        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._reader = asyncio.create_task(self._read(), name=f"ws-reader {url}")
        self._writer = asyncio.create_task(self._write(), name=f"ws-writer {url}")
        self._shutdown: asyncio.Task[None] | None = None

    @property
    def ready(self) -> bool:
        return not self._closing and not self._ws.closed

    @property
    def finished(self) -> bool:
        """True once close() has run to completion."""
        return self._shutdown is not None and self._shutdown.done()

    def send(self, payload: dict[str, Any]) -> None:
        """Queue a JSON payload. Silently dropped if the socket is not open."""
        if not self.ready:
            logger.debug("Dropping send on closed connection: %s", payload)
            return
        self._outbox.put_nowait(orjson.dumps(payload).decode('utf-8'))

    def on_message(self, callback: Listener) -> Detach:
        return self._message_listeners.add(callback)

    def on_error(self, callback: Listener) -> Detach:
        return self._error_listeners.add(callback)

    def on_close(self, callback: Listener) -> Detach:
        return self._close_listeners.add(callback)

    def close(self) -> None:
        """Detach all listeners and schedule socket shutdown. Idempotent."""
        if self._closing:
            return
        self._closing = True

        self._message_listeners.clear()
        self._error_listeners.clear()
        self._close_listeners.clear()

        self._writer.cancel()
        self._shutdown = asyncio.create_task(self._close_socket())

    async def wait_closed(self) -> None:
        if self._shutdown is not None:
            await self._shutdown

    async def _close_socket(self) -> None:
        self._reader.cancel()
        try:
            for task in (self._reader, self._writer):
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("%s failed on %s", task.get_name(), self.url)
        finally:
            try:
                await self._ws.close()
            finally:
                await self._session.close()
        logger.debug("Closed connection to %s", self.url)

    async def _read(self) -> None:
        """
        Dispatch inbound frames until the socket ends.

        HOT PATH - every order book message goes through here.
        """
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._message_listeners.emit(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                error = self._ws.exception()
                logger.warning("WebSocket error on %s: %s", self.url, error)
                self._error_listeners.emit(error)
            else:
                logger.debug("Ignoring %s frame", msg.type.name)

        if not self._closing:
            logger.info("Connection to %s closed by peer (code=%s)", self.url, self._ws.close_code)
            self._close_listeners.emit(self._ws.close_code)

    async def _write(self) -> None:
        while True:
            data = await self._outbox.get()
            try:
                await self._ws.send_str(data)
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                # The reader reports the broken socket through the listeners
                logger.warning("Send failed on %s: %s", self.url, e)
                return


class WebSocketTransport:
    """
    aiohttp-backed transport.

    Usage:
        transport = WebSocketTransport(connect_timeout=10.0)
        connection = await transport.open("wss://...")
        detach = connection.on_message(print)
        connection.send({"event": "subscribe", ...})
        connection.close()
        await transport.aclose()
    """

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        heartbeat: float | None = DEFAULT_HEARTBEAT,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.heartbeat = heartbeat
        self._connections: list[WebSocketConnection] = []

    async def open(self, url: str) -> WebSocketConnection:
        """Open a WebSocket. Raises ConnectFailure on any failure."""
        session = aiohttp.ClientSession()

        async def connect() -> aiohttp.ClientWebSocketResponse:
            return await session.ws_connect(url, heartbeat=self.heartbeat)

        try:
            ws = await asyncio.wait_for(connect(), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            await session.close()
            raise ConnectFailure(url, f"timed out after {self.connect_timeout}s", e) from e
        except (aiohttp.ClientError, OSError, ValueError) as e:
            await session.close()
            raise ConnectFailure(url, str(e) or e.__class__.__name__, e) from e
        except BaseException:
            await session.close()
            raise

        connection = WebSocketConnection(url, session, ws)
        self._connections = [c for c in self._connections if not c.finished]
        self._connections.append(connection)
        logger.info("Connected to %s", url)
        return connection

    async def aclose(self) -> None:
        """Close every connection opened by this transport and wait for shutdown."""
        connections, self._connections = self._connections, []
        for connection in connections:
            connection.close()
        for connection in connections:
            await connection.wait_closed()
