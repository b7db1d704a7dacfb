"""castlink application protocol: namespaces, message types and the Message union."""
from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from shared.errors import ProtocolMismatch


def make_payload(msg_type: str, request_id: Optional[int] = None, data: Optional[dict[str, Any]] = None) -> str:
    body: dict[str, Any] = {"type": msg_type}
    if request_id is not None:
        body["requestId"] = request_id
    if data:
        body.update(data)
    return json.dumps(body, separators=(",", ":"))


# ---- Namespaces ----
NS_CONNECTION = "urn:x-cast:com.google.cast.tp.connection"
NS_HEARTBEAT = "urn:x-cast:com.google.cast.heartbeat"
NS_RECEIVER = "urn:x-cast:com.google.cast.receiver"
NS_MEDIA = "urn:x-cast:com.google.cast.media"

# ---- Endpoints ----
SENDER_ID = "sender-0"
RECEIVER_ID = "receiver-0"
MEDIA_SENDER_PREFIX = "client-"
BROADCAST_ID = "*"

# ---- Sender -> receiver message types ----
MSG_CONNECT = "CONNECT"
MSG_CLOSE = "CLOSE"
MSG_PING = "PING"
MSG_PONG = "PONG"
MSG_GET_STATUS = "GET_STATUS"
MSG_SET_VOLUME = "SET_VOLUME"
MSG_STOP = "STOP"
MSG_PLAY = "PLAY"
MSG_PAUSE = "PAUSE"
MSG_SEEK = "SEEK"

# ---- Receiver -> sender message types ----
MSG_RECEIVER_STATUS = "RECEIVER_STATUS"
MSG_MEDIA_STATUS = "MEDIA_STATUS"
MSG_INVALID_REQUEST = "INVALID_REQUEST"
MSG_LOAD_FAILED = "LOAD_FAILED"
MSG_LOAD_CANCELLED = "LOAD_CANCELLED"
MSG_INVALID_PLAYER_STATE = "INVALID_PLAYER_STATE"

ERROR_TYPES = {MSG_INVALID_REQUEST, MSG_LOAD_FAILED, MSG_LOAD_CANCELLED, MSG_INVALID_PLAYER_STATE}

RESUME_UNCHANGED = "PLAYBACK_UNCHANGED"

# ---- Player states reported by the receiver ----
PLAYER_IDLE = "IDLE"
PLAYER_BUFFERING = "BUFFERING"
PLAYER_BUFFERED = "BUFFERED"
PLAYER_PLAYING = "PLAYING"
PLAYER_PAUSED = "PAUSED"

VALID_PLAYER_STATES = {PLAYER_IDLE, PLAYER_BUFFERING, PLAYER_BUFFERED, PLAYER_PLAYING, PLAYER_PAUSED}

# ---- Coarse states exposed to callers ----
STATE_IDLE = "IDLE"
STATE_LOADING = "LOADING"
STATE_PLAYING = "PLAYING"
STATE_PAUSED = "PAUSED"

_COARSE = {
    PLAYER_IDLE: STATE_IDLE,
    PLAYER_BUFFERING: STATE_LOADING,
    PLAYER_BUFFERED: STATE_LOADING,
    PLAYER_PLAYING: STATE_PLAYING,
    PLAYER_PAUSED: STATE_PAUSED,
}

DEFAULT_VOLUME_STEP = 0.05


def coarse_state(player_state: Optional[str]) -> str:
    return _COARSE.get(player_state or PLAYER_IDLE, STATE_IDLE)


@dataclass(frozen=True)
class VolumeInfo:
    level: float
    muted: bool = False
    step_interval: float = DEFAULT_VOLUME_STEP
    control_type: Optional[str] = None


@dataclass(frozen=True)
class AppInfo:
    app_id: str
    transport_id: str
    session_id: str
    display_name: str = ""
    status_text: str = ""
    namespaces: frozenset[str] = frozenset()
    is_idle_screen: bool = False

    def supports(self, namespace: str) -> bool:
        return namespace in self.namespaces


@dataclass(frozen=True)
class MediaInfo:
    media_session_id: Any
    player_state: str
    current_time: Optional[float] = None
    duration: Optional[float] = None
    content_id: Optional[str] = None
    content_type: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    playback_rate: float = 1.0
    idle_reason: Optional[str] = None
    volume: Optional[VolumeInfo] = None

    @property
    def title(self) -> Optional[str]:
        return (self.metadata or {}).get("title")


@dataclass(frozen=True)
class ReceiverStatus:
    namespace: str
    request_id: Optional[int]
    applications: tuple[AppInfo, ...] = ()
    volume: Optional[VolumeInfo] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    type = MSG_RECEIVER_STATUS

    def media_application(self) -> Optional[AppInfo]:
        """First running application that speaks the media namespace."""
        for app in self.applications:
            if app.supports(NS_MEDIA):
                return app
        return None


@dataclass(frozen=True)
class MediaStatus:
    namespace: str
    request_id: Optional[int]
    entries: tuple[MediaInfo, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    type = MSG_MEDIA_STATUS

    @property
    def current(self) -> Optional[MediaInfo]:
        return self.entries[0] if self.entries else None


@dataclass(frozen=True)
class UnknownMessage:
    namespace: str
    request_id: Optional[int]
    type: str
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


Message = Union[ReceiverStatus, MediaStatus, UnknownMessage]


def valid_media_status(msg: MediaStatus) -> bool:
    """Every entry reports a player state we know how to track."""
    return all(e.player_state in VALID_PLAYER_STATES for e in msg.entries)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _request_id(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _parse_volume(raw: Any) -> Optional[VolumeInfo]:
    if not isinstance(raw, dict):
        return None
    level = _number(raw.get("level"))
    if level is None:
        return None
    step = _number(raw.get("stepInterval"))
    return VolumeInfo(
        level=level,
        muted=bool(raw.get("muted", False)),
        step_interval=step if step else DEFAULT_VOLUME_STEP,
        control_type=raw.get("controlType"),
    )


def _text(raw: dict, key: str, default: Optional[str] = "") -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ProtocolMismatch(f"{key} must be a string, got {value!r}")
    return value


def _parse_app(raw: Any) -> AppInfo:
    if not isinstance(raw, dict) or not isinstance(raw.get("transportId"), str):
        raise ProtocolMismatch(f"Application without transportId: {raw!r}")
    namespaces = raw.get("namespaces")
    if namespaces is None:
        namespaces = []
    if not isinstance(namespaces, list):
        raise ProtocolMismatch(f"Application namespaces is not a list: {namespaces!r}")
    names = frozenset(
        ns["name"] for ns in namespaces
        if isinstance(ns, dict) and isinstance(ns.get("name"), str)
    )
    return AppInfo(
        app_id=_text(raw, "appId"),
        transport_id=raw["transportId"],
        session_id=_text(raw, "sessionId", raw["transportId"]),
        display_name=_text(raw, "displayName"),
        status_text=_text(raw, "statusText"),
        namespaces=names,
        is_idle_screen=bool(raw.get("isIdleScreen", False)),
    )


def _parse_media_entry(raw: Any) -> MediaInfo:
    if not isinstance(raw, dict) or "mediaSessionId" not in raw:
        raise ProtocolMismatch(f"Media status entry without mediaSessionId: {raw!r}")
    session_id = raw["mediaSessionId"]
    if isinstance(session_id, bool) or not isinstance(session_id, (int, str)):
        raise ProtocolMismatch(f"mediaSessionId must be a number or string, got {session_id!r}")
    media = raw.get("media") if isinstance(raw.get("media"), dict) else {}
    metadata = media.get("metadata")
    rate = _number(raw.get("playbackRate"))
    return MediaInfo(
        media_session_id=session_id,
        player_state=_text(raw, "playerState", PLAYER_IDLE),
        current_time=_number(raw.get("currentTime")),
        duration=_number(media.get("duration")),
        content_id=_text(media, "contentId", None),
        content_type=_text(media, "contentType", None),
        metadata=metadata if isinstance(metadata, dict) else None,
        playback_rate=rate if rate is not None else 1.0,
        idle_reason=_text(raw, "idleReason", None),
        volume=_parse_volume(raw.get("volume")),
    )


def parse_message(namespace: str, raw: str) -> Message:
    """Decode a UTF-8 JSON payload into a Message. Raises ProtocolMismatch."""
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ProtocolMismatch(f"Invalid JSON on {namespace}: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolMismatch(f"Payload on {namespace} has no type: {raw[:200]}")

    msg_type = data["type"]
    request_id = _request_id(data.get("requestId"))

    if msg_type == MSG_RECEIVER_STATUS:
        status = data.get("status")
        if not isinstance(status, dict):
            raise ProtocolMismatch("RECEIVER_STATUS without status object")
        apps = status.get("applications")
        if apps is None:
            apps = []
        if not isinstance(apps, list):
            raise ProtocolMismatch("RECEIVER_STATUS applications is not a list")
        return ReceiverStatus(
            namespace=namespace,
            request_id=request_id,
            applications=tuple(_parse_app(a) for a in apps),
            volume=_parse_volume(status.get("volume")),
            raw=data,
        )

    if msg_type == MSG_MEDIA_STATUS:
        entries = data.get("status")
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise ProtocolMismatch("MEDIA_STATUS status is not a list")
        return MediaStatus(
            namespace=namespace,
            request_id=request_id,
            entries=tuple(_parse_media_entry(e) for e in entries),
            raw=data,
        )

    return UnknownMessage(namespace=namespace, request_id=request_id, type=msg_type, raw=data)
