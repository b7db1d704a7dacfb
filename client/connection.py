"""castlink connection: request ids, heartbeat and channel demultiplexing over one transport."""
from __future__ import annotations
import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from client.channel import Channel
from client.transport import Transport
from shared.config import ConnectionConfig
from shared.errors import (
    CastError, ConnectionClosed, ProtocolMismatch, RequestRejected, RequestTimeout,
)
from shared.protocol import (
    make_payload, parse_message, Message,
    NS_CONNECTION, NS_HEARTBEAT, BROADCAST_ID,
    MSG_CONNECT, MSG_CLOSE, MSG_PING, MSG_PONG, ERROR_TYPES,
)
from shared.wire import Envelope

logger = logging.getLogger("castlink.client.connection")

CloseListener = Callable[[Optional[Exception]], None]
ChannelKey = tuple[str, str, Optional[str]]


@dataclass
class _Pending:
    future: asyncio.Future
    remote_id: str


class CastConnection:
    """
    One logical link to a receiver.
    All state here is mutated from the transport's read loop or from callers on the
    same event loop, so no locking is needed.
    """

    def __init__(self, transport: Transport, config: ConnectionConfig):
        self.config = config
        self._transport = transport
        self._request_ids = itertools.count(config.initial_request_id)
        self._channels: dict[ChannelKey, Channel] = {}
        self._pending: dict[int, _Pending] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._close_listeners: list[CloseListener] = []
        self._closed = False
        self._closed_event = asyncio.Event()
        self.close_reason: Optional[Exception] = None
        transport.on_frame(self._on_frame)
        transport.on_close(self._on_transport_closed)

    @classmethod
    async def open(cls, config: ConnectionConfig) -> "CastConnection":
        """Connect to config.host:config.port and start reading and heartbeating."""
        transport = await Transport.open(config.host, config.port, config.connect_timeout)
        conn = cls(transport, config)
        conn.start()
        return conn

    def start(self) -> None:
        self._transport.start()
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.debug("Link up")

    @property
    def closed(self) -> bool:
        return self._closed

    def add_close_listener(self, listener: CloseListener) -> None:
        self._close_listeners.append(listener)

    def next_request_id(self) -> int:
        return next(self._request_ids)

    # ---- Sending ----

    def _write(self, env: Envelope) -> None:
        if self._closed:
            raise ConnectionClosed("Connection is closed")
        self._transport.send(env)

    def post(self, source_id: str, destination_id: str, namespace: str, msg_type: str,
             data: Optional[dict[str, Any]] = None) -> None:
        """Send without a request id (handshakes and heartbeats)."""
        self._write(Envelope(source_id, destination_id, namespace, make_payload(msg_type, None, data)))

    def send(self, source_id: str, destination_id: str, namespace: str, msg_type: str,
             data: Optional[dict[str, Any]] = None) -> int:
        request_id = self.next_request_id()
        self._write(Envelope(source_id, destination_id, namespace, make_payload(msg_type, request_id, data)))
        logger.debug("[%s] -> [%s] (%s %s #%d)", source_id, destination_id, namespace, msg_type, request_id)
        return request_id

    async def send_and_await(self, source_id: str, destination_id: str, namespace: str, msg_type: str,
                             data: Optional[dict[str, Any]] = None, timeout: Optional[float] = None) -> Message:
        """
        Send and wait for the first message from `destination_id` whose requestId matches.
        Raises RequestTimeout, RequestRejected or ConnectionClosed.
        """
        request_id = self.send(source_id, destination_id, namespace, msg_type, data)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = _Pending(future, destination_id)
        if timeout is None:
            timeout = self.config.request_timeout
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning("No reply to %s #%d from %s after %.1fs", msg_type, request_id, destination_id, timeout)
            raise RequestTimeout(request_id, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    # ---- Channels ----

    def open_channel(self, source_id: str, destination_id: str, namespace: Optional[str] = None) -> Channel:
        """Return the channel for this triple, creating (and CONNECTing) it on first use."""
        if self._closed:
            raise ConnectionClosed("Connection is closed")
        key = (source_id, destination_id, namespace)
        channel = self._channels.get(key)
        if channel is None:
            logger.debug("[%s] <-> [%s] (%s)", source_id, destination_id, namespace or "*")
            channel = Channel(self, source_id, destination_id, namespace)
            self._channels[key] = channel
        return channel

    def connect_endpoint(self, source_id: str, destination_id: str) -> None:
        """Virtual-connection handshake; must precede any other traffic to destination_id."""
        self.post(source_id, destination_id, NS_CONNECTION, MSG_CONNECT,
                  {"origin": {}, "userAgent": "castlink"})

    def release_channel(self, channel: Channel) -> None:
        if self._channels.get(channel.key) is channel:
            del self._channels[channel.key]
        pair = channel.key[:2]
        if self._closed or any(key[:2] == pair for key in self._channels):
            return
        try:
            self.post(channel.source_id, channel.destination_id, NS_CONNECTION, MSG_CLOSE)
        except CastError as e:
            logger.debug("CLOSE to %s not sent: %s", channel.destination_id, e)

    def _route(self, env: Envelope) -> list[Channel]:
        # Incoming traffic flows remote (source_id) -> local (destination_id)
        return [
            channel for (local, remote, ns), channel in self._channels.items()
            if remote == env.source_id
            and (env.destination_id == BROADCAST_ID or local == env.destination_id)
            and (ns is None or ns == env.namespace)
        ]

    # ---- Receiving ----

    def _on_frame(self, env: Envelope) -> None:
        if env.namespace == NS_HEARTBEAT:
            self._handle_heartbeat(env)
            return
        if env.is_binary:
            logger.debug("Ignoring binary payload from %s on %s", env.source_id, env.namespace)
            return
        try:
            message = parse_message(env.namespace, env.payload_utf8 or "")
        except ProtocolMismatch as e:
            logger.warning("Dropping message from %s: %s", env.source_id, e)
            return
        except (TypeError, KeyError, AttributeError) as e:
            logger.warning("Dropping malformed %s payload from %s: %r", env.namespace, env.source_id, e)
            return

        logger.debug("[%s] <- [%s] (%s %s)", env.destination_id, env.source_id, env.namespace, message.type)
        self._resolve_pending(env, message)

        channels = self._route(env)
        if not channels:
            logger.debug("No channel for %s -> %s (%s); dropped", env.source_id, env.destination_id, env.namespace)
        for channel in channels:
            channel.deliver(message)

        if env.namespace == NS_CONNECTION and message.type == MSG_CLOSE:
            self._handle_remote_close(env)

    def _resolve_pending(self, env: Envelope, message: Message) -> None:
        if message.request_id is None:
            return
        pending = self._pending.get(message.request_id)
        if pending is None or pending.remote_id != env.source_id or pending.future.done():
            return
        if message.type in ERROR_TYPES:
            pending.future.set_exception(RequestRejected(message))
        else:
            pending.future.set_result(message)

    def _handle_heartbeat(self, env: Envelope) -> None:
        # PING/PONG bodies are matched as plain text, never JSON-decoded
        body = env.payload_utf8 or ""
        if MSG_PONG in body or MSG_PING not in body:
            return
        local = self.config.sender_id if env.destination_id == BROADCAST_ID else env.destination_id
        try:
            self.post(local, env.source_id, NS_HEARTBEAT, MSG_PONG)
        except CastError as e:
            logger.debug("PONG to %s not sent: %s", env.source_id, e)

    def _handle_remote_close(self, env: Envelope) -> None:
        for (local, remote, ns), channel in list(self._channels.items()):
            if remote == env.source_id and env.destination_id in (local, BROADCAST_ID):
                logger.info("Receiver closed %r", channel)
                del self._channels[channel.key]
                channel.detach()

    async def _heartbeat_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                self.post(self.config.sender_id, self.config.receiver_id, NS_HEARTBEAT, MSG_PING)
            except CastError as e:
                logger.warning("Heartbeat failed: %s", e)
                break

    # ---- Teardown ----

    def _on_transport_closed(self, exc: Exception) -> None:
        self._shutdown(exc)

    def _shutdown(self, exc: Optional[Exception]) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_reason = exc
        task = self._heartbeat_task
        if task and task is not asyncio.current_task():
            task.cancel()

        for request_id, pending in list(self._pending.items()):
            if not pending.future.done():
                pending.future.set_exception(ConnectionClosed(f"Connection closed before reply to #{request_id}"))
        self._pending.clear()

        for channel in list(self._channels.values()):
            channel.detach()
        self._channels.clear()

        self._transport.close()
        self._closed_event.set()
        for listener in list(self._close_listeners):
            try:
                listener(exc)
            except Exception:
                logger.exception("Close listener failed")

    def close(self) -> None:
        """Say CLOSE to every connected endpoint, then tear everything down."""
        if self._closed:
            return
        logger.info("Closing connection")
        for source_id, destination_id in {key[:2] for key in self._channels}:
            try:
                self.post(source_id, destination_id, NS_CONNECTION, MSG_CLOSE)
            except CastError as e:
                logger.debug("CLOSE to %s not sent: %s", destination_id, e)
                break
        self._shutdown(None)

    async def wait_closed(self) -> None:
        await self._closed_event.wait()
        await self._transport.wait_closed()
