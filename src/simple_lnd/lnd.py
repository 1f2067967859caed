"""LND REST (grpc-gateway) client."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import AsyncGenerator, Callable
from typing import Any

from websockets.asyncio.client import connect as websocket_connect

from simple_lnd.config import (
    AMBIGUOUS_LND_PORT,
    DEFAULT_LND_HOST,
    DEFAULT_LND_PORT,
    MACAROON_HEADER,
    PING_INTERVAL_S,
    env_value,
)
from simple_lnd.credentials import decode_lndconnect, load_cert, parse_secret
from simple_lnd.exceptions import CredentialError, LndError
from simple_lnd.live import LiveStream
from simple_lnd.registry import PendingRequest, RequestMode
from simple_lnd.session import RecordStream, Session, parse_record, query

logger = logging.getLogger(__name__)


class ConfigState(enum.Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURING = "configuring"
    CONFIGURED = "configured"


class LndClient(Session):
    """Async client for an LND node's REST interface.

    Usage:
        async with LndClient("mynode:8080", macaroon=macaroon_hex, cert=cert_pem) as lnd:
            info = await lnd.get_info()
            async for invoice in lnd.subscribe_invoices():
                ...

    The macaroon and cert may be raw bytes, hex or base64. An lndconnect URI
    can supply host, port, macaroon and cert in one string.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        macaroon: bytes | str | None = None,
        cert: bytes | str | None = None,
        *,
        lndconnect: str | None = None,
        verify: bool | None = None,
        ping_interval: float = PING_INTERVAL_S,
        ws_connect: Callable[..., Any] = websocket_connect,
        **kwargs: Any,
    ):
        if lndconnect:
            params = decode_lndconnect(lndconnect)
            host = host or params.host
            port = port or params.port
            macaroon = macaroon or params.macaroon
            cert = cert or params.cert

        if not macaroon:
            raise CredentialError("macaroon is required")

        self.macaroon = parse_secret(macaroon).hex()
        super().__init__(
            host or DEFAULT_LND_HOST,
            port,
            default_port=DEFAULT_LND_PORT,
            headers={MACAROON_HEADER: self.macaroon},
            cert=_cert_bytes(cert),
            verify=verify,
            **kwargs,
        )
        self.config_state = ConfigState.UNCONFIGURED
        self._configuring: asyncio.Future[None] | None = None
        self._ping_interval = ping_interval
        self._ws_connect = ws_connect

    @classmethod
    def from_env(cls, **kwargs: Any) -> LndClient:
        """Build a client from LNDCONNECT_URI, or LND_REST_HOST + LND_MACAROON_HEX.

        LND_TLS_CERT_PATH optionally points at the node's tls.cert.
        """
        uri = env_value("LNDCONNECT_URI")
        if uri:
            return cls(lndconnect=uri, **kwargs)

        host = env_value("LND_REST_HOST")
        macaroon = env_value("LND_MACAROON_HEX")
        if not (host and macaroon):
            raise CredentialError(
                "set LNDCONNECT_URI or LND_REST_HOST + LND_MACAROON_HEX"
            )
        cert_path = env_value("LND_TLS_CERT_PATH")
        cert = load_cert(cert_path) if cert_path else None
        return cls(host=host, macaroon=macaroon, cert=cert, **kwargs)

    def derive(self) -> LndClient:
        """A client with the same credentials and its own set of requests.

        Useful to keep a long-lived stream apart from other traffic: destroying
        one does not abort the other.
        """
        self.requests.check()
        other = LndClient(
            self.host,
            self.port,
            self.macaroon,
            self.cert,
            verify=self.verify,
            ping_interval=self._ping_interval,
            ws_connect=self._ws_connect,
            **self._session_options(),
        )
        if self.config_state is ConfigState.CONFIGURED:
            other.config_state = ConfigState.CONFIGURED
            other._configuring = self._configuring
        return other

    # ── Operations ───────────────────────────────────────────────────────

    async def get_info(self) -> Any:
        return await self._request_last("GET", "/v1/getinfo")

    async def decode_pay_req(self, payment_request: str) -> Any:
        return await self._request_last("GET", "/v1/payreq/" + payment_request)

    async def list_channels(self, active_only: bool = True) -> Any:
        return await self._request_last(
            "GET", query("/v1/channels", {"active_only": active_only})
        )

    def send_payment(
        self,
        payment_request: str,
        timeout_seconds: int = 10,
        fee_limit_sat: int = 40,
    ) -> RecordStream:
        """Pay an invoice, yielding each payment status update from the router."""
        body = {
            "payment_request": payment_request,
            "timeout_seconds": timeout_seconds,
            "fee_limit_sat": fee_limit_sat,
        }
        return self._stream("POST", "/v2/router/send", body)

    async def add_invoice(self, value: int = 0, memo: str = "") -> Any:
        # int64 fields are strings in the REST JSON mapping
        body = {"memo": memo, "value": str(value)}
        return await self._request_last("POST", "/v1/invoices", body)

    async def list_invoices(
        self,
        index_offset: int = 0,
        num_max_invoices: int = 1024,
        reversed: bool = False,
        pending_only: bool = False,
    ) -> Any:
        path = query(
            "/v1/invoices",
            {
                "index_offset": index_offset,
                "num_max_invoices": num_max_invoices,
                "reversed": reversed,
                "pending_only": pending_only,
            },
        )
        return await self._request_last("GET", path)

    def subscribe_invoices(self, add_index: int = 0, settle_index: int = 0) -> RecordStream:
        """Server-streamed invoice updates over a held-open HTTP response."""
        path = query(
            "/v1/invoices/subscribe",
            {"add_index": add_index, "settle_index": settle_index},
        )
        return self._stream("GET", path, heartbeat=True)

    def subscribe_transactions(self) -> RecordStream:
        """Server-streamed on-chain transaction updates."""
        return self._stream("GET", "/v1/transactions/subscribe", heartbeat=True)

    async def open_invoice_stream(self, add_index: int = 0, settle_index: int = 0) -> LiveStream:
        """Invoice updates over a WebSocket live stream."""
        initial = {"add_index": str(add_index), "settle_index": str(settle_index)}
        return await self.open_stream("/v1/invoices/subscribe?method=GET", initial)

    async def open_stream(self, path: str, initial_message: Any = None) -> LiveStream:
        """Open a duplex stream on a grpc-gateway WebSocket endpoint."""
        self.requests.check()
        await self.configure()

        stream = LiveStream(
            self.url(path, scheme="wss"),
            headers=self.headers,
            ssl_context=self.ssl_context(),
            connect=self._ws_connect,
            ping_interval=self._ping_interval,
            initial_message=initial_message,
            on_close=self.requests.discard,
        )
        self.requests.add(stream)
        await stream.connect()
        return stream

    # ── Connection configuration ─────────────────────────────────────────

    async def configure(self) -> None:
        """Resolve the REST port once; concurrent callers share the same check."""
        if self._configuring is None:
            self._configuring = asyncio.ensure_future(self._auto_configure())
        await asyncio.shield(self._configuring)

    async def _auto_configure(self) -> None:
        self.config_state = ConfigState.CONFIGURING
        try:
            if self.port == AMBIGUOUS_LND_PORT:
                # 10009 is usually the gRPC port; REST is probably on 8080
                if not await self._check_port():
                    self.port = DEFAULT_LND_PORT
                    if not await self._check_port():
                        self.port = AMBIGUOUS_LND_PORT
                logger.debug("Resolved LND REST port for %s: %d", self.host, self.port)
        finally:
            self.config_state = ConfigState.CONFIGURED

    async def _check_port(self) -> bool:
        try:
            await self._request_last("GET", "/v1/getinfo", auto_configure=False)
        except LndError as e:
            logger.debug("Port check of %s:%d failed: %s", self.host, self.port, e)
            return False
        return True

    # ── Request engine ───────────────────────────────────────────────────

    def _stream(self, method: str, path: str, body: Any = None, *, heartbeat: bool = False) -> RecordStream:
        self.requests.check()
        return RecordStream(
            self._request(method, path, body, mode=RequestMode.STREAM, heartbeat=heartbeat)
        )

    async def _request_last(self, method: str, path: str, body: Any = None, **kwargs: Any) -> Any:
        result = None
        async for value in self._request(method, path, body, mode=RequestMode.COLLECT_LAST, **kwargs):
            result = value
        return result

    async def _request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        mode: RequestMode = RequestMode.STREAM,
        auto_configure: bool = True,
        heartbeat: bool = False,
    ) -> AsyncGenerator[Any, None]:
        self.requests.check()
        if auto_configure:
            await self.configure()

        pending = PendingRequest(method, path, body, mode, self)
        self.requests.add(pending)
        response = None
        try:
            response = await self._send(pending, keepalive=heartbeat)
            if not response.is_success:
                raise await self._status_error(pending, response)
            async for record in self._records(pending, response):
                yield parse_record(record)
        finally:
            self.requests.discard(pending)
            if response is not None:
                await response.aclose()


def _cert_bytes(cert: bytes | str | None) -> bytes | None:
    if cert is None or isinstance(cert, bytes):
        return cert
    if cert.lstrip().startswith("-----BEGIN"):
        return cert.encode("ascii")
    return parse_secret(cert).data
