"""LNDHub custodial wallet client.

LNDHub answers rate-limited calls with a fixed plain-text body instead of
JSON. Account calls replay such requests after a flat backoff; the backoff
is parked in the session's request registry so destroy() cancels it.
"""

from __future__ import annotations

import logging
from typing import Any

from simple_lnd.config import (
    DEFAULT_ACCOUNT_TYPE,
    DEFAULT_LNDHUB_HOST,
    DEFAULT_PARTNER_ID,
    OVERLOAD_BACKOFF_S,
    OVERLOAD_SENTINEL,
    env_value,
)
from simple_lnd.exceptions import LndHubError, OverloadedError, UnexpectedStatusError
from simple_lnd.framing import decode_record
from simple_lnd.registry import PendingRequest, RequestMode, RetryTicket
from simple_lnd.session import Session, parse_record, query

logger = logging.getLogger(__name__)

_OVERLOAD_BODY = OVERLOAD_SENTINEL.encode()


class LndHubClient(Session):
    """Async client for an LNDHub account (BlueWallet-compatible API).

    Usage:
        hub = await LndHubClient.create()
        print(hub.account())          # persist login/password/auth yourself
        balance = await hub.balance()

    Args:
        host: LNDHub host, optionally with ":port".
        login, password: Account credentials. ready() creates an account when unset.
        auth: Tokens from a previous authenticate() ({"access_token", "refresh_token"}).
        overload_backoff: Seconds to wait before replaying a rate-limited call.
        **kwargs: Session options and httpx.AsyncClient kwargs.
    """

    def __init__(
        self,
        host: str = DEFAULT_LNDHUB_HOST,
        *,
        login: str | None = None,
        password: str | None = None,
        auth: dict[str, Any] | None = None,
        account_type: str = DEFAULT_ACCOUNT_TYPE,
        overload_backoff: float = OVERLOAD_BACKOFF_S,
        **kwargs: Any,
    ):
        kwargs.setdefault("verify", True)
        super().__init__(
            host,
            default_port=443,
            headers={"Content-Type": "application/json"},
            **kwargs,
        )
        self.login = login
        self.password = password
        self.auth: dict[str, Any] = dict(auth or {})
        self.account_type = account_type
        self.overload_backoff = overload_backoff

        if self.auth.get("access_token"):
            self.headers["Authorization"] = self.auth["access_token"]

    @classmethod
    async def create(
        cls,
        host: str = DEFAULT_LNDHUB_HOST,
        partner_id: str = DEFAULT_PARTNER_ID,
        account_type: str = DEFAULT_ACCOUNT_TYPE,
        **kwargs: Any,
    ) -> LndHubClient:
        """Create a new account on ``host`` and return an authenticated client."""
        hub = cls(host, account_type=account_type, **kwargs)
        await hub.create_account(partner_id, account_type)
        await hub.authenticate()
        return hub

    @classmethod
    def from_env(cls, **kwargs: Any) -> LndHubClient:
        """Build a client from LNDHUB_HOST, LNDHUB_LOGIN and LNDHUB_PASSWORD."""
        host = env_value("LNDHUB_HOST") or DEFAULT_LNDHUB_HOST
        return cls(
            host,
            login=env_value("LNDHUB_LOGIN") or None,
            password=env_value("LNDHUB_PASSWORD") or None,
            **kwargs,
        )

    def account(self) -> dict[str, Any]:
        """The credentials needed to rebuild this client later."""
        return {"login": self.login, "password": self.password, "auth": dict(self.auth)}

    # ── Account bootstrap ────────────────────────────────────────────────

    async def ready(self) -> None:
        """Create an account if none is configured, then authenticate."""
        if not self.login:
            await self.create_account()
        await self.authenticate()

    async def create_account(
        self, partner_id: str = DEFAULT_PARTNER_ID, account_type: str | None = None
    ) -> dict[str, Any]:
        body = {"partnerid": partner_id, "accounttype": account_type or self.account_type}
        result = await self._bootstrap("/create", body, "login")
        self.login = result["login"]
        self.password = result.get("password")
        return result

    async def authenticate(self) -> dict[str, Any]:
        """Exchange login/password (or the refresh token) for an access token."""
        body = _compact(
            login=self.login,
            password=self.password,
            refresh_token=self.auth.get("refresh_token"),
        )
        self.auth = await self._bootstrap("/auth", body, "access_token")
        self.headers["Authorization"] = self.auth["access_token"]
        return self.auth

    # ── Operations ───────────────────────────────────────────────────────

    async def get_info(self) -> Any:
        return await self._request("GET", "/getinfo")

    async def balance(self) -> Any:
        return await self._request("GET", "/balance")

    async def get_btc(self) -> Any:
        """On-chain deposit address(es) for the account."""
        return await self._request("GET", "/getbtc")

    async def get_pending(self) -> Any:
        return await self._request("GET", "/getpending")

    async def add_invoice(self, amt: int | str | None = None, memo: str | None = None) -> Any:
        return await self._request("POST", "/addinvoice", _compact(amt=amt, memo=memo))

    async def pay_invoice(self, invoice: str, amount: int | None = None) -> Any:
        return await self._request("POST", "/payinvoice", _compact(invoice=invoice, amount=amount))

    async def get_txs(self, limit: int | None = None, offset: int | None = None) -> Any:
        return await self._request("GET", _paged("/gettxs", limit=limit, offset=offset))

    async def get_user_invoices(self, limit: int | None = None, offset: int | None = None) -> Any:
        return await self._request("GET", _paged("/getuserinvoices", limit=limit, offset=offset))

    async def decode_invoice(self, invoice: str) -> Any:
        return await self._request("GET", _paged("/decodeinvoice", invoice=invoice))

    # ── Request engine ───────────────────────────────────────────────────

    async def _request(self, method: str, path: str, body: Any = None) -> Any:
        """Issue a call, replaying it after a flat backoff while rate-limited.

        Raises:
            RequestAbortedError: destroy() was called while the call waited.
            SessionDestroyedError: The session was already destroyed.
        """
        while True:
            self.requests.check()
            status, data = await self._exchange(method, path, body)

            if data != _OVERLOAD_BODY:
                return self._result(status, data)

            ticket = RetryTicket(self.overload_backoff)
            logger.debug("%s %s rate-limited, retrying in %ss", method, path, ticket.backoff)
            self.requests.add(ticket)
            try:
                await ticket.wait()
            finally:
                self.requests.discard(ticket)

    async def _bootstrap(self, path: str, body: dict[str, Any], required: str) -> dict[str, Any]:
        """Unauthenticated account call. Rate limiting is an error here.

        LNDHub rejects credentials with a 2xx error document rather than a
        status code, so the reply must carry ``required`` to count as success.
        """
        self.requests.check()
        status, data = await self._exchange("POST", path, body)
        if data == _OVERLOAD_BODY:
            raise OverloadedError(path)
        result = self._result(status, data)
        if not isinstance(result, dict) or result.get("error") or required not in result:
            raise _hub_error(result)
        return result

    async def _exchange(self, method: str, path: str, body: Any) -> tuple[int, bytes]:
        pending = PendingRequest(method, path, body, RequestMode.UNARY, self)
        self.requests.add(pending)
        response = None
        try:
            response = await self._send(pending)
            data = await self._read_body(pending, response)
            return response.status_code, data
        finally:
            self.requests.discard(pending)
            if response is not None:
                await response.aclose()

    @staticmethod
    def _result(status: int, data: bytes) -> Any:
        if not 200 <= status < 300:
            raise UnexpectedStatusError(status, data.decode("utf-8", errors="replace"))
        return parse_record(decode_record(data))


def _compact(**fields: Any) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


def _paged(path: str, **params: Any) -> str:
    # LNDHub treats empty/zero values as absent
    return query(path, {k: v for k, v in params.items() if v})


def _hub_error(result: Any) -> LndHubError:
    if isinstance(result, dict):
        return LndHubError(result.get("code"), str(result.get("message", "")))
    return LndHubError(None, f"unexpected reply: {result!r}")
