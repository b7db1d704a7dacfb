"""Shared fixtures: an in-memory transport, a controllable clock and status builders."""
import json
from typing import Any, Optional

import pytest

from client.connection import CastConnection
from shared.config import ConnectionConfig
from shared.errors import ConnectionClosed
from shared.protocol import NS_MEDIA, NS_RECEIVER, RECEIVER_ID, SENDER_ID
from shared.wire import Envelope

MEDIA_SENDER = "client-1"


class FakeTransport:
    """Records sent envelopes and lets tests push received ones."""

    def __init__(self):
        self.sent: list[Envelope] = []
        self.closed = False
        self.started = False
        self._on_frame = None
        self._on_close = None

    def on_frame(self, handler):
        self._on_frame = handler

    def on_close(self, handler):
        self._on_close = handler

    def start(self):
        self.started = True

    def send(self, env: Envelope):
        if self.closed:
            raise ConnectionClosed("fake transport closed")
        self.sent.append(env)

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    def inject(self, source_id: str, destination_id: str, namespace: str, body: Any):
        payload = body if isinstance(body, str) else json.dumps(body)
        self._on_frame(Envelope(source_id, destination_id, namespace, payload))

    def fail(self, exc: Exception):
        self.closed = True
        self._on_close(exc)

    def sent_json(self, namespace: Optional[str] = None, destination_id: Optional[str] = None) -> list[dict]:
        return [
            json.loads(env.payload_utf8) for env in self.sent
            if (namespace is None or env.namespace == namespace)
            and (destination_id is None or env.destination_id == destination_id)
        ]

    def sent_types(self, namespace: Optional[str] = None, destination_id: Optional[str] = None) -> list[str]:
        return [m["type"] for m in self.sent_json(namespace, destination_id)]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def receiver_status(*apps: dict, level: float = 0.5, muted: bool = False, request_id: Optional[int] = None) -> dict:
    msg = {
        "type": "RECEIVER_STATUS",
        "status": {
            "applications": list(apps),
            "volume": {"controlType": "attenuation", "level": level, "muted": muted, "stepInterval": 0.05},
        },
    }
    if request_id is not None:
        msg["requestId"] = request_id
    return msg


def media_app(transport_id: str = "app-1", session_id: Optional[str] = None,
              display_name: str = "Default Media Receiver") -> dict:
    return {
        "appId": "CC1AD845",
        "displayName": display_name,
        "isIdleScreen": False,
        "namespaces": [{"name": "urn:x-cast:com.google.cast.debugoverlay"}, {"name": NS_MEDIA}],
        "sessionId": session_id or transport_id,
        "statusText": "Casting",
        "transportId": transport_id,
    }


def media_status(session_id: Any = "42", state: str = "PLAYING", current_time: Optional[float] = 10.0,
                 duration: Optional[float] = None, title: Optional[str] = None) -> dict:
    entry: dict[str, Any] = {"mediaSessionId": session_id, "playerState": state, "playbackRate": 1}
    if current_time is not None:
        entry["currentTime"] = current_time
    media: dict[str, Any] = {"contentId": "http://example.test/a.mp4", "contentType": "video/mp4"}
    if duration is not None:
        media["duration"] = duration
    if title is not None:
        media["metadata"] = {"metadataType": 0, "title": title}
    entry["media"] = media
    return {"type": "MEDIA_STATUS", "status": [entry]}


@pytest.fixture
def config():
    return ConnectionConfig(
        host="cast.test",
        media_sender_id=MEDIA_SENDER,
        heartbeat_interval=0.05,
        request_timeout=0.5,
        stream_queue_size=4,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def connection(transport, config):
    conn = CastConnection(transport, config)
    yield conn
    conn.close()


@pytest.fixture
def clock():
    return FakeClock()


def push_receiver(transport: FakeTransport, body: dict):
    transport.inject(RECEIVER_ID, SENDER_ID, NS_RECEIVER, body)


def push_media(transport: FakeTransport, body: dict, transport_id: str = "app-1"):
    transport.inject(transport_id, MEDIA_SENDER, NS_MEDIA, body)
