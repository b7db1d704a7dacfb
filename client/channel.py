"""castlink logical channels: one (source, destination, namespace) pipe over a connection."""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from shared.errors import ConnectionClosed
from shared.protocol import Message

if TYPE_CHECKING:
    from client.connection import CastConnection

logger = logging.getLogger("castlink.client.channel")

Handler = Callable[[Any], None]
Validator = Callable[[Any], bool]

_END = object()


@dataclass(eq=False)
class Subscription:
    """A registered listener. Cancel it to stop delivery."""

    channel: "Channel"
    handler: Handler
    kind: Optional[type] = None
    validator: Optional[Validator] = None
    namespace: Optional[str] = None

    def accepts(self, message: Message) -> bool:
        if self.namespace is not None and message.namespace != self.namespace:
            return False
        # type guard before the (possibly costly) validator
        if self.kind is not None and not isinstance(message, self.kind):
            return False
        if self.validator is not None and not self.validator(message):
            return False
        return True

    def cancel(self) -> None:
        self.channel._remove(self)


class MessageStream:
    """
    Pull-style view of a channel: `async for message in channel.stream(...)`.
    Backed by a bounded queue; when the consumer falls behind the oldest
    message is dropped. Iteration ends when the channel closes.
    """

    def __init__(self, channel: "Channel", kind: Optional[type], maxsize: int):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._done = False
        self.dropped = 0
        self._subscription = channel.subscribe_filtered(self._push, kind) if kind else channel.subscribe(self._push)

    def _put(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.debug("Stream on %s full; dropped oldest message (%d so far)", self._channel, self.dropped)
        self._queue.put_nowait(item)

    def _push(self, message: Message) -> None:
        self._put(message)

    def _end(self) -> None:
        self._put(_END)

    def cancel(self) -> None:
        self._subscription.cancel()
        self._channel._streams.discard(self)
        self._end()

    def __aiter__(self) -> "MessageStream":
        return self

    async def __anext__(self) -> Message:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._done = True
            raise StopAsyncIteration
        return item


class Channel:
    """
    Bidirectional pipe between a local sender id and a remote receiver id.
    With a namespace, only that namespace is delivered and it is the default for sends;
    without one, every namespace between the two endpoints is delivered.
    """

    def __init__(self, connection: "CastConnection", source_id: str, destination_id: str,
                 namespace: Optional[str] = None):
        self.connection = connection
        self.source_id = source_id
        self.destination_id = destination_id
        self.namespace = namespace
        self._subscriptions: list[Subscription] = []
        self._streams: set[MessageStream] = set()
        self._closed = False
        connection.connect_endpoint(source_id, destination_id)

    def __repr__(self) -> str:
        return f"Channel({self.source_id} -> {self.destination_id}, {self.namespace or '*'})"

    @property
    def key(self) -> tuple[str, str, Optional[str]]:
        return self.source_id, self.destination_id, self.namespace

    @property
    def closed(self) -> bool:
        return self._closed

    def _resolve_ns(self, namespace: Optional[str]) -> str:
        if self._closed:
            raise ConnectionClosed(f"{self!r} is closed")
        ns = namespace or self.namespace
        if ns is None:
            raise ValueError(f"{self!r} has no default namespace; pass one explicitly")
        return ns

    def send(self, msg_type: str, data: Optional[dict[str, Any]] = None, namespace: Optional[str] = None) -> int:
        """Fire and forget. Returns the request id used."""
        ns = self._resolve_ns(namespace)
        return self.connection.send(self.source_id, self.destination_id, ns, msg_type, data)

    async def send_and_await(self, msg_type: str, data: Optional[dict[str, Any]] = None,
                             namespace: Optional[str] = None, timeout: Optional[float] = None) -> Message:
        """Send and wait for the reply carrying the same request id."""
        ns = self._resolve_ns(namespace)
        return await self.connection.send_and_await(
            self.source_id, self.destination_id, ns, msg_type, data, timeout=timeout
        )

    def subscribe(self, handler: Handler, namespace: Optional[str] = None) -> Subscription:
        return self._add(Subscription(self, handler, namespace=namespace))

    def subscribe_filtered(self, handler: Handler, kind: type, validator: Optional[Validator] = None,
                           namespace: Optional[str] = None) -> Subscription:
        """Deliver only messages that are instances of `kind` and pass `validator`."""
        return self._add(Subscription(self, handler, kind=kind, validator=validator, namespace=namespace))

    def stream(self, kind: Optional[type] = None, maxsize: Optional[int] = None) -> MessageStream:
        if maxsize is None:
            maxsize = self.connection.config.stream_queue_size
        stream = MessageStream(self, kind, maxsize)
        self._streams.add(stream)
        if self._closed:
            stream._end()
        return stream

    def _add(self, subscription: Subscription) -> Subscription:
        if not self._closed:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def deliver(self, message: Message) -> None:
        """Hand a decoded message to every matching subscriber. Never raises."""
        for sub in list(self._subscriptions):
            try:
                if sub.accepts(message):
                    sub.handler(message)
            except Exception:
                logger.exception("Handler failed on %r for %s", self, message.type)

    def detach(self) -> None:
        """Mark closed without telling the receiver (connection gone or remote CLOSE)."""
        if self._closed:
            return
        self._closed = True
        self._subscriptions.clear()
        for stream in list(self._streams):
            stream._end()
        self._streams.clear()

    def close(self) -> None:
        if self._closed:
            return
        self.detach()
        self.connection.release_channel(self)
