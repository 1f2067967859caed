"""simple-lnd — asyncio clients for LND REST and LNDHub wallets.

Request/response calls, newline-delimited JSON streams and WebSocket live
streams, with one destroy() call to abort everything a client has in flight.

Usage:
    from simple_lnd import LndClient, LndHubClient

    async with LndClient(lndconnect=uri) as lnd:
        info = await lnd.get_info()
        async for update in lnd.send_payment(bolt11):
            ...

    hub = await LndHubClient.create()
    balance = await hub.balance()
"""

from simple_lnd.credentials import LndConnectParams, Secret, decode_lndconnect, parse_secret
from simple_lnd.exceptions import (
    CredentialError,
    LndError,
    LndHubError,
    MalformedMessageError,
    OverloadedError,
    RequestAbortedError,
    SessionDestroyedError,
    StreamClosedError,
    StreamTimeoutError,
    TransportError,
    UnexpectedStatusError,
)
from simple_lnd.framing import LineFramer
from simple_lnd.live import LiveStream, StreamState
from simple_lnd.lnd import ConfigState, LndClient
from simple_lnd.lndhub import LndHubClient
from simple_lnd.registry import RequestMode, RequestRegistry
from simple_lnd.session import RecordStream, Session

__version__ = "0.1.0"

__all__ = [
    # Clients
    "LndClient",
    "LndHubClient",
    "Session",
    "ConfigState",
    # Streams
    "LiveStream",
    "StreamState",
    "LineFramer",
    "RecordStream",
    # Requests
    "RequestMode",
    "RequestRegistry",
    # Credentials
    "Secret",
    "LndConnectParams",
    "parse_secret",
    "decode_lndconnect",
    # Exceptions
    "LndError",
    "SessionDestroyedError",
    "TransportError",
    "UnexpectedStatusError",
    "RequestAbortedError",
    "MalformedMessageError",
    "StreamClosedError",
    "StreamTimeoutError",
    "OverloadedError",
    "CredentialError",
    "LndHubError",
]
