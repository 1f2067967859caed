"""Duplex live stream over a secure WebSocket.

Inbound frames are buffered in a FIFO and handed to a single waiting reader.
Liveness is checked with application-level pings: when a ping is still
unanswered at the next tick the connection is torn down.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import ssl
from collections import deque
from collections.abc import Callable
from typing import Any

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from simple_lnd.config import PING_INTERVAL_S
from simple_lnd.exceptions import (
    LndError,
    MalformedMessageError,
    RequestAbortedError,
    StreamClosedError,
    StreamTimeoutError,
    TransportError,
)
from simple_lnd.registry import AbortHandle, RequestMode

logger = logging.getLogger(__name__)


class StreamState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class LiveStream:
    """Lazy, single-consumer sequence of JSON values pushed by the server.

    Usage:
        stream = await client.open_invoice_stream()
        async for event in stream:
            ...

    The first error (transport failure, close, liveness timeout or abort) is
    terminal and is raised by every later read. A frame that is not valid JSON
    fails only the read that received it.
    """

    mode = RequestMode.DUPLEX

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        ssl_context: ssl.SSLContext | None = None,
        connect: Callable[..., Any] = websocket_connect,
        ping_interval: float = PING_INTERVAL_S,
        initial_message: Any = None,
        on_close: Callable[[LiveStream], None] | None = None,
    ):
        self.url = url
        self.state = StreamState.CONNECTING
        self.pings_sent = 0
        self.pongs_received = 0

        self._headers = dict(headers or {})
        self._ssl_context = ssl_context
        self._connect = connect
        self._ping_interval = ping_interval
        self._initial_message = initial_message
        self._on_close = on_close

        self._socket: Any = None
        self._handshake: AbortHandle | None = None
        self._queue: deque[str | bytes] = deque()
        self._waiter: asyncio.Future[Any] | None = None
        self._error: LndError | None = None
        self._reader: asyncio.Task[None] | None = None
        self._liveness: asyncio.Task[None] | None = None

    @property
    def error(self) -> LndError | None:
        return self._error

    async def connect(self) -> None:
        """Open the socket and start reading.

        Raises TransportError on failure and RequestAbortedError when abort()
        runs before the handshake completes.
        """
        if self._error is not None:
            raise self._error

        self._handshake = AbortHandle()
        try:
            socket = await self._handshake.guard(
                self._connect(
                    self.url,
                    additional_headers=self._headers,
                    ssl=self._ssl_context,
                    ping_interval=None,
                )
            )
        except RequestAbortedError as e:
            raise self._error from e
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self._fail(TransportError(f"stream connect failed: {e}"))
            raise self._error from e

        self._socket = socket
        if self._error is not None:
            self._terminate()
            raise self._error

        self.state = StreamState.OPEN
        logger.debug("Live stream open: %s", self.url)

        if self._initial_message is not None:
            try:
                await socket.send(json.dumps(self._initial_message))
            except ConnectionClosed as e:
                self._fail(TransportError(f"stream closed during setup: {e}"))
                raise self._error from e

        self._reader = asyncio.create_task(self._read_loop())
        self._liveness = asyncio.create_task(self._keepalive())

    async def next(self) -> Any:
        """Wait for the next JSON value."""
        if self._waiter is not None:
            raise RuntimeError("LiveStream supports only one reader at a time")

        waiter = asyncio.get_running_loop().create_future()
        self._waiter = waiter
        self._drain()
        try:
            return await waiter
        finally:
            if self._waiter is waiter:
                self._waiter = None

    def __aiter__(self) -> LiveStream:
        return self

    async def __anext__(self) -> Any:
        return await self.next()

    def abort(self) -> None:
        """Tear the stream down immediately. Safe to call repeatedly."""
        self._fail(RequestAbortedError("Stream aborted"))
        if self._handshake is not None:
            self._handshake.abort()
        self._terminate()

    async def close(self) -> None:
        """Close the socket gracefully."""
        if self._error is not None:
            return
        self.state = StreamState.CLOSING
        if self._socket is not None:
            await self._socket.close()
        self._fail(StreamClosedError())

    async def _read_loop(self) -> None:
        try:
            async for frame in self._socket:
                self._queue.append(frame)
                self._drain()
        except ConnectionClosed as e:
            self._fail(TransportError(f"stream connection lost: {e}"))
        except OSError as e:
            self._fail(TransportError(str(e)))
        else:
            self._fail(StreamClosedError())

    async def _keepalive(self) -> None:
        while self._error is None:
            await asyncio.sleep(self._ping_interval)
            if self._error is not None:
                return
            if self.pings_sent > self.pongs_received:
                logger.warning(
                    "Live stream unresponsive (%d pings, %d pongs), terminating",
                    self.pings_sent,
                    self.pongs_received,
                )
                self._fail(StreamTimeoutError(self.pings_sent, self.pongs_received))
                self._terminate()
                return
            self.pings_sent += 1
            try:
                pong = await self._socket.ping()
            except ConnectionClosed:
                return
            pong.add_done_callback(self._on_pong)

    def _on_pong(self, pong: asyncio.Future[Any]) -> None:
        if pong.cancelled() or pong.exception() is not None:
            return
        self.pongs_received += 1

    def _fail(self, error: LndError) -> None:
        """Record the terminal error. Only the first one counts."""
        if self._error is not None:
            return
        self._error = error
        self.state = StreamState.CLOSED
        logger.debug("Live stream ended: %s", error)

        if self._liveness is not None and self._liveness is not asyncio.current_task():
            self._liveness.cancel()
        if self._on_close is not None:
            self._on_close(self)
        self._drain()

    def _terminate(self) -> None:
        if self._socket is not None:
            self._socket.transport.abort()

    def _drain(self) -> None:
        waiter = self._waiter
        if waiter is None or waiter.done():
            return

        if self._error is not None:
            self._waiter = None
            waiter.set_exception(self._error)
        elif self._queue:
            frame = self._queue.popleft()
            self._waiter = None
            try:
                waiter.set_result(json.loads(frame))
            except ValueError as e:
                text = frame if isinstance(frame, str) else frame.decode("utf-8", errors="replace")
                waiter.set_exception(MalformedMessageError(text, str(e)))
