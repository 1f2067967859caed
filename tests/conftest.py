"""Shared fixtures: chunked httpx bodies and an in-memory WebSocket."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError

_CLOSE = object()


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in the given chunks."""

    def __init__(self, chunks: list[bytes], hang: bool = False):
        self.chunks = chunks
        self.hang = hang

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.hang:
            await asyncio.Event().wait()


class FakeTransport:
    def __init__(self, socket: FakeSocket):
        self.socket = socket
        self.aborted = False

    def abort(self) -> None:
        self.aborted = True
        self.socket.feed(ConnectionClosedError(None, None))


class FakeSocket:
    """Stands in for a websockets ClientConnection."""

    def __init__(self, answer_pings: bool = True):
        self.answer_pings = answer_pings
        self.frames: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.pings = 0
        self.closed = False
        self.transport = FakeTransport(self)

    def feed(self, frame) -> None:
        self.frames.put_nowait(frame)

    def hang_up(self) -> None:
        self.feed(_CLOSE)

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def ping(self):
        self.pings += 1
        pong = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            pong.set_result(0.0)
        return pong

    async def close(self) -> None:
        self.closed = True
        self.hang_up()

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self.frames.get()
        if frame is _CLOSE:
            raise StopAsyncIteration
        if isinstance(frame, BaseException):
            raise frame
        return frame


class FakeConnector:
    """Replacement for websockets.asyncio.client.connect."""

    def __init__(
        self,
        socket: FakeSocket | None = None,
        error: BaseException | None = None,
        hang: bool = False,
    ):
        self.socket = socket or FakeSocket()
        self.error = error
        self.hang = hang
        self.started = asyncio.Event()
        self.calls: list[tuple[str, dict]] = []

    async def __call__(self, url: str, **kwargs):
        self.calls.append((url, kwargs))
        self.started.set()
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return self.socket


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
