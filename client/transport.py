"""castlink TLS transport: one socket to one receiver, length-prefixed CastMessage frames."""
from __future__ import annotations
import asyncio
import logging
import ssl
from typing import Callable, Optional

from shared.errors import ConnectError, ConnectionClosed, FrameError, RemoteClosed, SocketError
from shared.wire import HEADER, Envelope, decode_envelope, frame_envelope, unpack_length

logger = logging.getLogger("castlink.client.transport")

FrameHandler = Callable[[Envelope], None]
CloseHandler = Callable[[Exception], None]


def _tls_context() -> ssl.SSLContext:
    # Cast devices present self-signed certificates
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class Transport:
    """
    Owns the stream pair of a single receiver connection.
    Frames are decoded in wire order and handed to the frame handler one by one;
    any read failure ends the transport with exactly one close notification.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, peer: str = ""):
        self.peer = peer
        self._reader = reader
        self._writer = writer
        self._on_frame: Optional[FrameHandler] = None
        self._on_close: Optional[CloseHandler] = None
        self._read_task: Optional[asyncio.Task] = None
        self._closed = False

    @classmethod
    async def open(cls, host: str, port: int = 8009, timeout: float = 10.0) -> "Transport":
        """Connect and complete the TLS handshake. Raises ConnectError."""
        logger.info("Connecting to %s:%d", host, port)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, ssl=_tls_context(), ssl_handshake_timeout=timeout),
                timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.error("Connection to %s:%d failed: %s", host, port, e)
            raise ConnectError(f"Cannot connect to {host}:{port}: {e}") from e
        logger.info("TLS session up with %s:%d", host, port)
        return cls(reader, writer, f"{host}:{port}")

    @property
    def closed(self) -> bool:
        return self._closed

    def on_frame(self, handler: FrameHandler) -> None:
        self._on_frame = handler

    def on_close(self, handler: CloseHandler) -> None:
        self._on_close = handler

    def start(self) -> None:
        """Start the read loop. Handlers must be registered first."""
        if self._read_task is None:
            self._read_task = asyncio.create_task(self._read_loop())

    def send(self, env: Envelope) -> None:
        if self._closed:
            raise ConnectionClosed(f"Transport to {self.peer} is closed")
        data = frame_envelope(env)
        try:
            # prefix and body go out in a single write
            self._writer.write(data)
        except (OSError, RuntimeError) as e:
            err = SocketError(f"Write to {self.peer} failed: {e}")
            self._terminate(err)
            raise err from e

    async def _read_loop(self) -> None:
        try:
            while True:
                header = await self._reader.readexactly(HEADER.size)
                body = await self._reader.readexactly(unpack_length(header))
                env = decode_envelope(body)
                if self._on_frame:
                    self._on_frame(env)
        except asyncio.CancelledError:
            raise
        except asyncio.IncompleteReadError as e:
            if e.partial:
                self._terminate(RemoteClosed(f"{self.peer} closed mid-frame ({len(e.partial)} bytes pending)"))
            else:
                self._terminate(RemoteClosed(f"{self.peer} closed the connection"))
        except FrameError as e:
            logger.error("Bad frame from %s: %s", self.peer, e)
            self._terminate(e)
        except OSError as e:
            self._terminate(SocketError(f"Read from {self.peer} failed: {e}"))
        except Exception as e:
            logger.exception("Read loop for %s crashed", self.peer)
            self._terminate(SocketError(f"Read loop for {self.peer} crashed: {e!r}"))

    def _terminate(self, exc: Optional[Exception]) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._writer.close()
        except (OSError, RuntimeError) as e:
            logger.debug("Error closing writer for %s: %s", self.peer, e)
        task = self._read_task
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if exc is not None:
            logger.warning("Transport to %s ended: %s", self.peer, exc)
            if self._on_close:
                self._on_close(exc)

    def close(self) -> None:
        """Close locally. The close handler is only notified of failures."""
        if not self._closed:
            logger.info("Closing transport to %s", self.peer)
        self._terminate(None)

    async def wait_closed(self) -> None:
        if self._read_task:
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
