"""castlink error types."""
from __future__ import annotations
from typing import Any


class CastError(Exception):
    """Base class for every castlink error."""


class ConnectError(CastError):
    """TCP connect or TLS handshake with the receiver failed."""


class FrameError(CastError):
    """A length prefix or envelope could not be decoded."""


class ProtocolMismatch(CastError):
    """A JSON payload is not a message we understand."""


class RemoteClosed(CastError):
    """The receiver closed the socket."""


class SocketError(CastError):
    """The socket failed while reading or writing."""


class ConnectionClosed(CastError):
    """The connection was closed before the operation could finish."""


class RequestTimeout(CastError):
    """No reply with the expected requestId arrived in time."""

    def __init__(self, request_id: int, timeout: float):
        super().__init__(f"No reply to request {request_id} within {timeout:.1f}s")
        self.request_id = request_id
        self.timeout = timeout


class RequestRejected(CastError):
    """The receiver answered a request with an error message."""

    def __init__(self, message: Any):
        super().__init__(f"Request {message.request_id} rejected: {message.type}")
        self.message = message
