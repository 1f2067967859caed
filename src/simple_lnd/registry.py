"""In-flight request tracking so one destroy() call can abort everything."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable
from typing import Any, Protocol, TypeVar

from simple_lnd.exceptions import RequestAbortedError, SessionDestroyedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Abortable(Protocol):
    def abort(self) -> None: ...


class RequestMode(enum.Enum):
    UNARY = "unary"
    COLLECT_LAST = "collect-last"
    STREAM = "stream"
    DUPLEX = "duplex-stream"


class AbortHandle:
    """Cancellable unit of in-flight work.

    abort() is synchronous and idempotent. Any guard() awaiting at that point,
    or started afterwards, raises RequestAbortedError.
    """

    def __init__(self) -> None:
        self._aborted = asyncio.get_running_loop().create_future()

    @property
    def aborted(self) -> bool:
        return self._aborted.done()

    def abort(self) -> None:
        if not self._aborted.done():
            self._aborted.set_result(None)

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless this handle is aborted first."""
        task = asyncio.ensure_future(aw)
        if not self._aborted.done():
            try:
                await asyncio.wait({task, self._aborted}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                task.cancel()
                raise
        if self._aborted.done():
            task.cancel()
            await asyncio.wait({task})
            if not task.cancelled():
                task.exception()  # mark retrieved
            raise RequestAbortedError()
        return task.result()


class PendingRequest(AbortHandle):
    """One HTTP call, registered with its session while active."""

    def __init__(
        self,
        method: str,
        path: str,
        body: Any = None,
        mode: RequestMode = RequestMode.UNARY,
        session: Any = None,
    ):
        super().__init__()
        self.method = method
        self.path = path
        self.body = body
        self.mode = mode
        self.session = session

    def __repr__(self) -> str:
        return f"PendingRequest({self.method} {self.path}, mode={self.mode.value})"


class RetryTicket(AbortHandle):
    """A parked retry that stands in for a rate-limited request."""

    def __init__(self, backoff: float):
        super().__init__()
        self.backoff = backoff

    async def wait(self) -> None:
        await self.guard(asyncio.sleep(self.backoff))


class RequestRegistry:
    """The set of abortable objects owned by one session."""

    def __init__(self) -> None:
        self._active: set[Abortable] = set()
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def check(self) -> None:
        """Raise SessionDestroyedError once abort_all() has run."""
        if self._destroyed:
            raise SessionDestroyedError()

    def add(self, item: Abortable) -> None:
        self.check()
        self._active.add(item)

    def discard(self, item: Abortable) -> None:
        self._active.discard(item)

    def abort_all(self) -> None:
        if not self._destroyed:
            logger.debug("Aborting %d in-flight request(s)", len(self._active))
        self._destroyed = True
        active, self._active = self._active, set()
        for item in active:
            item.abort()

    def __contains__(self, item: object) -> bool:
        return item in self._active

    def __len__(self) -> int:
        return len(self._active)
