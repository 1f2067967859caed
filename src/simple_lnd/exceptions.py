"""simple-lnd exceptions."""


class LndError(Exception):
    """Base exception for simple-lnd."""


class SessionDestroyedError(LndError):
    """An operation was started on a session after destroy()."""

    def __init__(self) -> None:
        super().__init__("Session destroyed")


class TransportError(LndError):
    """Socket, TLS or DNS failure while talking to the server."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Transport error: {reason}")


class UnexpectedStatusError(LndError):
    """The server answered with a non-success HTTP status."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Unexpected status code {status_code}")


class RequestAbortedError(LndError):
    """The request was aborted before it completed, usually by destroy()."""

    def __init__(self, reason: str = "Request aborted"):
        self.reason = reason
        super().__init__(reason)


class MalformedMessageError(LndError):
    """A record received from the server is not valid JSON."""

    def __init__(self, record: str, reason: str):
        self.record = record
        self.reason = reason
        super().__init__(f"Malformed message: {reason}")


class StreamClosedError(LndError):
    """The live stream was closed by the peer or locally."""

    def __init__(self, reason: str = "Stream closed"):
        self.reason = reason
        super().__init__(reason)


class StreamTimeoutError(LndError):
    """The live stream peer stopped answering pings."""

    def __init__(self, pings_sent: int, pongs_received: int):
        self.pings_sent = pings_sent
        self.pongs_received = pongs_received
        super().__init__(
            f"Stream unresponsive: {pings_sent} pings sent, "
            f"{pongs_received} pongs received"
        )


class OverloadedError(LndError):
    """The server rate-limited a call that is not retried automatically."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Too many requests: {path}")


class CredentialError(LndError):
    """Credential material is missing or cannot be decoded."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid credentials: {reason}")


class LndHubError(LndError):
    """LNDHub rejected the call with an error document ({"error": true, ...})."""

    def __init__(self, code: int | None, message: str):
        self.code = code
        self.message = message
        super().__init__(f"LNDHub error {code}: {message}")
