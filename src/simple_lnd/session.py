"""Client session: TLS trust policy, pooled httpx clients and the request engine.

Every call runs through a PendingRequest registered with the session, so
destroy() can abort responses that are still being awaited or streamed.
"""

from __future__ import annotations

import json
import logging
import socket
import ssl
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any
from urllib.parse import urlencode, urlparse

import httpx

from simple_lnd.config import HEARTBEAT_INTERVAL_S, LOCAL_HOSTS, REQUEST_TIMEOUT_S
from simple_lnd.exceptions import MalformedMessageError, TransportError, UnexpectedStatusError
from simple_lnd.framing import LineFramer
from simple_lnd.registry import PendingRequest, RequestRegistry

logger = logging.getLogger(__name__)


def split_host(host: str, port: int | None = None) -> tuple[str, int | None]:
    """Split "host:port" or "https://host:port"; an explicit port wins."""
    if "://" in host:
        parsed = urlparse(host)
        return parsed.hostname or "", port or parsed.port

    i = host.find(":")
    if i > -1:
        if not port:
            port = int(host[i + 1:])
        host = host[:i]
    return host, port


def query(path: str, params: dict[str, Any]) -> str:
    """Append params to path, skipping None values and lowercasing booleans."""
    pairs = {
        k: str(v).lower() if isinstance(v, bool) else v
        for k, v in params.items()
        if v is not None
    }
    if not pairs:
        return path
    return f"{path}?{urlencode(pairs)}"


def parse_record(record: str) -> Any:
    try:
        return json.loads(record)
    except json.JSONDecodeError as e:
        raise MalformedMessageError(record, str(e)) from e


def _keepalive_options(interval: int) -> list[tuple[int, int, int]]:
    options = [(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)]
    for name in ("TCP_KEEPIDLE", "TCP_KEEPINTVL"):
        opt = getattr(socket, name, None)
        if opt is not None:
            options.append((socket.IPPROTO_TCP, opt, interval))
    return options


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class RecordStream:
    """Async iterator over the JSON records of one streamed response.

    Leaving the iteration early (``break``) keeps the request open until
    aclose() is called; use ``async with`` to release it deterministically.

    Usage:
        async with lnd.subscribe_invoices() as invoices:
            async for invoice in invoices:
                ...
    """

    def __init__(self, records: AsyncGenerator[Any, None]):
        self._records = records

    def __aiter__(self) -> RecordStream:
        return self

    async def __anext__(self) -> Any:
        return await self._records.__anext__()

    async def aclose(self) -> None:
        """Abandon the response and unregister the request."""
        await self._records.aclose()

    async def __aenter__(self) -> RecordStream:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


class Session:
    """One logical connection identity: host, credentials and in-flight requests.

    Extra keyword arguments are passed to httpx.AsyncClient, e.g. ``transport=``.
    """

    def __init__(
        self,
        host: str,
        port: int | None = None,
        *,
        default_port: int,
        headers: dict[str, str] | None = None,
        cert: bytes | None = None,
        verify: bool | None = None,
        request_timeout: float = REQUEST_TIMEOUT_S,
        heartbeat_interval: int = HEARTBEAT_INTERVAL_S,
        **httpx_kwargs: Any,
    ):
        host, port = split_host(host, port)
        self.host = host
        self.port = port or default_port
        self.cert = cert
        self.verify = verify if verify is not None else host not in LOCAL_HOSTS
        self.headers = dict(headers or {})
        self.requests = RequestRegistry()

        self._request_timeout = request_timeout
        self._heartbeat_interval = heartbeat_interval
        self._httpx_kwargs = httpx_kwargs
        self._ssl_context: ssl.SSLContext | None = None
        self._client: httpx.AsyncClient | None = None
        self._keepalive_client: httpx.AsyncClient | None = None

    @property
    def destroyed(self) -> bool:
        return self.requests.destroyed

    def destroy(self) -> None:
        """Abort every in-flight request. Later calls fail with SessionDestroyedError."""
        self.requests.abort_all()

    async def aclose(self) -> None:
        self.destroy()
        for client in (self._client, self._keepalive_client):
            if client is not None:
                await client.aclose()
        self._client = None
        self._keepalive_client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def url(self, path: str, scheme: str = "https") -> str:
        return f"{scheme}://{self.host}:{self.port}{path}"

    def ssl_context(self) -> ssl.SSLContext:
        """TLS context honouring the trust anchor and verify policy."""
        if self._ssl_context is None:
            if not self.verify:
                ctx = ssl.create_default_context()
                ctx.check_hostname = False
                ctx.verify_mode = ssl.CERT_NONE
            elif self.cert:
                ctx = ssl.create_default_context(cadata=_cadata(self.cert))
            else:
                ctx = ssl.create_default_context()
            self._ssl_context = ctx
        return self._ssl_context

    def _session_options(self) -> dict[str, Any]:
        return {
            "request_timeout": self._request_timeout,
            "heartbeat_interval": self._heartbeat_interval,
            **self._httpx_kwargs,
        }

    def _build_client(self, keepalive: bool) -> httpx.AsyncClient:
        kwargs = dict(self._httpx_kwargs)
        if "transport" not in kwargs:
            if keepalive:
                kwargs["transport"] = httpx.AsyncHTTPTransport(
                    verify=self.ssl_context(),
                    socket_options=_keepalive_options(self._heartbeat_interval),
                )
            else:
                kwargs["verify"] = self.ssl_context()
        return httpx.AsyncClient(**kwargs)

    def _http_client(self, keepalive: bool = False) -> httpx.AsyncClient:
        if keepalive:
            if self._keepalive_client is None:
                self._keepalive_client = self._build_client(keepalive=True)
            return self._keepalive_client
        if self._client is None:
            self._client = self._build_client(keepalive=False)
        return self._client

    async def _send(self, pending: PendingRequest, *, keepalive: bool = False) -> httpx.Response:
        """Issue the request and return the response with its body unread.

        Keep-alive requests are long-lived feeds: they have no read timeout and
        their sockets send TCP keep-alive packets while idle.
        """
        client = self._http_client(keepalive)
        if keepalive:
            timeout = httpx.Timeout(self._request_timeout, read=None)
        else:
            timeout = httpx.Timeout(self._request_timeout)

        request = client.build_request(
            pending.method,
            self.url(pending.path),
            content=json.dumps(pending.body) if pending.body is not None else None,
            headers={"Connection": "Keep-Alive", **self.headers},
            timeout=timeout,
        )
        logger.debug("%s %s", pending.method, request.url)

        try:
            return await pending.guard(client.send(request, stream=True))
        except httpx.HTTPError as e:
            raise TransportError(str(e) or type(e).__name__) from e

    async def _chunks(self, pending: PendingRequest, response: httpx.Response) -> AsyncIterator[bytes]:
        chunks = response.aiter_bytes()
        while True:
            try:
                chunk = await pending.guard(_next_chunk(chunks))
            except httpx.HTTPError as e:
                raise TransportError(str(e) or type(e).__name__) from e
            if chunk is None:
                return
            yield chunk

    async def _records(self, pending: PendingRequest, response: httpx.Response) -> AsyncIterator[str]:
        """Yield the non-empty newline-delimited records of the response body."""
        framer = LineFramer()
        async for chunk in self._chunks(pending, response):
            for line in framer.push(chunk):
                if line:
                    yield line
        for line in framer.end():
            if line:
                yield line

    async def _read_body(self, pending: PendingRequest, response: httpx.Response) -> bytes:
        body = bytearray()
        async for chunk in self._chunks(pending, response):
            body += chunk
        return bytes(body)

    async def _status_error(self, pending: PendingRequest, response: httpx.Response) -> UnexpectedStatusError:
        body = await self._read_body(pending, response)
        return UnexpectedStatusError(response.status_code, body.decode("utf-8", errors="replace"))


def _cadata(cert: bytes) -> str | bytes:
    # ssl accepts PEM as text and DER as bytes
    if cert.lstrip().startswith(b"-----BEGIN"):
        return cert.decode("ascii")
    return cert
