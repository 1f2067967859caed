"""Defaults for connections, timeouts and retries.

Each value can be overridden with a SIMPLE_LND_* environment variable or
per client through constructor keywords.
"""

from __future__ import annotations

import os

# LND REST listens on 8080; 10009 is its gRPC port and a common misconfiguration.
DEFAULT_LND_HOST = "127.0.0.1"
DEFAULT_LND_PORT = 8080
AMBIGUOUS_LND_PORT = 10009

DEFAULT_LNDHUB_HOST = "lndhub.herokuapp.com"
DEFAULT_PARTNER_ID = "bluewallet"
DEFAULT_ACCOUNT_TYPE = "common"

LOCAL_HOSTS = frozenset({"127.0.0.1", "localhost"})

REQUEST_TIMEOUT_S = float(os.getenv("SIMPLE_LND_REQUEST_TIMEOUT_S", "30"))
HEARTBEAT_INTERVAL_S = int(os.getenv("SIMPLE_LND_HEARTBEAT_INTERVAL_S", "10"))
PING_INTERVAL_S = float(os.getenv("SIMPLE_LND_PING_INTERVAL_S", "7"))
OVERLOAD_BACKOFF_S = float(os.getenv("SIMPLE_LND_OVERLOAD_BACKOFF_S", "30"))

OVERLOAD_SENTINEL = "Too many requests, please try again later."

MACAROON_HEADER = "Grpc-Metadata-macaroon"


def env_value(name: str) -> str:
    """Read an env var, treating unexpanded placeholders like "${X}" as unset."""
    val = os.environ.get(name, "")
    if not val or val.startswith("${"):
        return ""
    return val


__all__ = [
    "env_value",
    "DEFAULT_LND_HOST",
    "DEFAULT_LND_PORT",
    "AMBIGUOUS_LND_PORT",
    "DEFAULT_LNDHUB_HOST",
    "DEFAULT_PARTNER_ID",
    "DEFAULT_ACCOUNT_TYPE",
    "LOCAL_HOSTS",
    "REQUEST_TIMEOUT_S",
    "HEARTBEAT_INTERVAL_S",
    "PING_INTERVAL_S",
    "OVERLOAD_BACKOFF_S",
    "OVERLOAD_SENTINEL",
    "MACAROON_HEADER",
]
