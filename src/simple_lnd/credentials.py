"""Decoding of macaroons, TLS certificates and lndconnect URIs."""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import parse_qs, urlparse

from simple_lnd.config import DEFAULT_LND_PORT
from simple_lnd.exceptions import CredentialError

_HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{2})+$")


@dataclass(frozen=True)
class Secret:
    """Decoded credential bytes and the encoding they were read from."""

    data: bytes
    encoding: str  # "raw", "hex" or "base64"

    def hex(self) -> str:
        return self.data.hex()


@dataclass(frozen=True)
class LndConnectParams:
    host: str
    port: int
    macaroon: bytes | None = None
    cert: bytes | None = None


def parse_secret(value: bytes | bytearray | str) -> Secret:
    """Decode credential material.

    Precedence: bytes are taken as-is, then a string of hex digit pairs is
    decoded as hex, then anything else is decoded as (url-safe) base64.

    Raises:
        CredentialError: If the string is neither hex nor base64.
    """
    if isinstance(value, (bytes, bytearray)):
        return Secret(bytes(value), "raw")

    value = value.strip()
    if _HEX_RE.match(value):
        return Secret(bytes.fromhex(value), "hex")

    try:
        return Secret(decode_base64url(value), "base64")
    except (binascii.Error, ValueError) as e:
        raise CredentialError(f"not hex or base64: {e}") from e


def decode_base64url(value: str) -> bytes:
    """Decode standard or url-safe base64, tolerating missing padding."""
    value = value.replace("-", "+").replace("_", "/")
    value += "=" * (-len(value) % 4)
    return base64.b64decode(value, validate=True)


def decode_lndconnect(uri: str) -> LndConnectParams:
    """Parse an lndconnect://host:port?macaroon=...&cert=... URI."""
    parsed = urlparse(uri)
    if not parsed.hostname:
        raise CredentialError("lndconnect URI missing host")

    params = parse_qs(parsed.query)
    macaroon = params.get("macaroon", [None])[0]
    cert = params.get("cert", [None])[0]

    try:
        return LndConnectParams(
            host=parsed.hostname,
            port=parsed.port or DEFAULT_LND_PORT,
            macaroon=decode_base64url(macaroon) if macaroon else None,
            cert=decode_base64url(cert) if cert else None,
        )
    except (binascii.Error, ValueError) as e:
        raise CredentialError(f"bad lndconnect parameter: {e}") from e


def load_cert(path: str | Path) -> bytes:
    """Read a PEM or DER certificate from disk."""
    try:
        return Path(path).expanduser().read_bytes()
    except OSError as e:
        raise CredentialError(f"cannot read certificate {path}: {e}") from e
