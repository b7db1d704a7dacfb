"""castlink status state machine: tracks the receiver, its media application and media session."""
from __future__ import annotations
import logging
import time
from typing import Any, Callable, Optional

from client.channel import Channel, Subscription
from client.connection import CastConnection
from shared.playback import Clock, PlaybackClock, clamp_seek, clamp_volume
from shared.protocol import (
    AppInfo, MediaInfo, MediaStatus, ReceiverStatus, coarse_state, valid_media_status,
    NS_MEDIA, NS_RECEIVER, DEFAULT_VOLUME_STEP, RESUME_UNCHANGED,
    MSG_GET_STATUS, MSG_SET_VOLUME, MSG_STOP, MSG_PLAY, MSG_PAUSE, MSG_SEEK,
    PLAYER_PLAYING, STATE_IDLE, STATE_PLAYING,
)

logger = logging.getLogger("castlink.client.controller")

PHASE_NO_APPLICATION = "NO_APPLICATION"
PHASE_APPLICATION_ACTIVE = "APPLICATION_ACTIVE"


class MediaSession:
    """One media session on the active application, identified by mediaSessionId."""

    def __init__(self, info: MediaInfo, clock: Clock = time.monotonic):
        self.session_id = info.media_session_id
        self.player_state = info.player_state
        self.duration = info.duration
        self.metadata = info.metadata
        self.content_id = info.content_id
        self.idle_reason = info.idle_reason
        self._clock = PlaybackClock(rate=info.playback_rate, clock=clock)
        self._clock.reset(info.current_time or 0.0, self.player_state == PLAYER_PLAYING)

    def merge(self, info: MediaInfo) -> None:
        """Apply a status update for the same session."""
        self.player_state = info.player_state
        self.idle_reason = info.idle_reason
        self._clock.rate = info.playback_rate
        playing = self.player_state == PLAYER_PLAYING
        if info.current_time is not None:
            self._clock.reset(info.current_time, playing)
        else:
            self._clock.rebase(playing)
        if self.duration is None:
            self.duration = info.duration
        if self.metadata is None:
            self.metadata = info.metadata
        if self.content_id is None:
            self.content_id = info.content_id

    @property
    def position(self) -> float:
        """Last position reported (or set by a local seek)."""
        return self._clock.position

    @property
    def title(self) -> Optional[str]:
        return (self.metadata or {}).get("title")

    def current_position(self) -> float:
        return self._clock.current()

    def seek_to(self, position: float) -> None:
        self._clock.reset(position, self._clock.running)


class ActiveApplication:
    """The running receiver application that speaks the media namespace."""

    def __init__(self, connection: CastConnection, info: AppInfo, media_sender_id: str,
                 clock: Clock, on_change: Callable[[], None]):
        self.info = info
        self.media: Optional[MediaSession] = None
        self._clock = clock
        self._on_change = on_change
        self.channel: Channel = connection.open_channel(media_sender_id, info.transport_id, NS_MEDIA)
        self._subscription: Subscription = self.channel.subscribe_filtered(
            self._on_media_status, MediaStatus, valid_media_status
        )
        self.channel.send(MSG_GET_STATUS)

    @property
    def transport_id(self) -> str:
        return self.info.transport_id

    @property
    def session_id(self) -> str:
        return self.info.session_id

    @property
    def closed(self) -> bool:
        return self.channel.closed

    def update(self, info: AppInfo) -> None:
        self.info = info

    def _on_media_status(self, msg: MediaStatus) -> None:
        entry = msg.current
        if entry is None:
            if self.media is not None:
                logger.info("Media session %s ended", self.media.session_id)
            self.media = None
        elif self.media is None or self.media.session_id != entry.media_session_id:
            logger.info("New media session %s on %s (%s)", entry.media_session_id,
                        self.transport_id, entry.player_state)
            self.media = MediaSession(entry, self._clock)
        else:
            self.media.merge(entry)
        self._on_change()

    def send_media(self, msg_type: str, data: Optional[dict[str, Any]] = None) -> Optional[int]:
        if self.media is None or self.closed:
            logger.debug("%s ignored: no media session on %s", msg_type, self.transport_id)
            return None
        payload = {"mediaSessionId": self.media.session_id}
        payload.update(data or {})
        return self.channel.send(msg_type, payload)

    def close(self) -> None:
        self._subscription.cancel()
        self.channel.close()


class CastController:
    """
    Tracks receiver status and the current media session, and issues playback commands.
    Commands with nothing to act on are silently ignored.
    """

    def __init__(self, connection: CastConnection, clock: Clock = time.monotonic,
                 on_status_change: Optional[Callable[["CastController"], None]] = None):
        self.connection = connection
        self.on_status_change = on_status_change
        self.application: Optional[ActiveApplication] = None
        self.volume: Optional[float] = None
        self.muted = False
        self.volume_step = DEFAULT_VOLUME_STEP
        self._clock = clock
        self._receiver: Optional[Channel] = None
        self._subscription: Optional[Subscription] = None

    def start(self) -> None:
        """Open the platform receiver channel and ask for its status."""
        cfg = self.connection.config
        self._receiver = self.connection.open_channel(cfg.sender_id, cfg.receiver_id, NS_RECEIVER)
        self._subscription = self._receiver.subscribe_filtered(self._on_receiver_status, ReceiverStatus)
        self._receiver.send(MSG_GET_STATUS)

    async def refresh(self) -> ReceiverStatus:
        """Request receiver status and wait for it (also applied through the subscription)."""
        if self._receiver is None or self._receiver.closed:
            self.start()
        return await self._receiver.send_and_await(MSG_GET_STATUS)

    def close(self) -> None:
        if self._subscription:
            self._subscription.cancel()
            self._subscription = None
        if self.application:
            self.application.close()
            self.application = None
        if self._receiver:
            self._receiver.close()
            self._receiver = None

    # ---- Status handling ----

    def _notify(self) -> None:
        if self.on_status_change:
            self.on_status_change(self)

    def _on_receiver_status(self, msg: ReceiverStatus) -> None:
        if msg.volume is not None:
            self.volume = msg.volume.level
            self.muted = msg.volume.muted
            self.volume_step = msg.volume.step_interval

        info = msg.media_application()
        current = self.application
        if info is None:
            if current is not None:
                logger.info("Application %s (%s) is gone", current.info.display_name, current.transport_id)
                current.close()
                self.application = None
        elif current is None or current.closed or current.transport_id != info.transport_id:
            if current is not None and current.closed:
                logger.info("Media channel to %s was closed by the receiver; reopening", current.transport_id)
            elif current is not None:
                logger.info("Application %s replaced by %s", current.transport_id, info.transport_id)
            if current is not None:
                current.close()
            logger.info("Tracking application %s (%s)", info.display_name, info.transport_id)
            self.application = ActiveApplication(
                self.connection, info, self.connection.config.media_sender_id, self._clock, self._notify
            )
        else:
            current.update(info)
        self._notify()

    # ---- Getters ----

    @property
    def phase(self) -> str:
        return PHASE_APPLICATION_ACTIVE if self.application else PHASE_NO_APPLICATION

    @property
    def media(self) -> Optional[MediaSession]:
        return self.application.media if self.application else None

    @property
    def player_state(self) -> Optional[str]:
        media = self.media
        return media.player_state if media else None

    @property
    def state(self) -> str:
        """IDLE, LOADING, PLAYING or PAUSED."""
        return coarse_state(self.player_state) if self.media else STATE_IDLE

    @property
    def duration(self) -> Optional[float]:
        media = self.media
        return media.duration if media else None

    @property
    def title(self) -> Optional[str]:
        media = self.media
        return media.title if media else None

    def current_position(self) -> float:
        media = self.media
        return media.current_position() if media else 0.0

    # ---- Commands ----

    def _send_receiver(self, msg_type: str, data: dict[str, Any]) -> Optional[int]:
        if self._receiver is None or self._receiver.closed:
            logger.debug("%s ignored: receiver channel not open", msg_type)
            return None
        return self._receiver.send(msg_type, data)

    def set_volume(self, level: float) -> Optional[int]:
        level = clamp_volume(level)
        self.volume = level
        return self._send_receiver(MSG_SET_VOLUME, {"volume": {"level": level}})

    def volume_up(self) -> Optional[int]:
        return self.set_volume((self.volume or 0.0) + self.volume_step)

    def volume_down(self) -> Optional[int]:
        return self.set_volume((self.volume or 0.0) - self.volume_step)

    def set_muted(self, muted: bool) -> Optional[int]:
        self.muted = muted
        return self._send_receiver(MSG_SET_VOLUME, {"volume": {"muted": muted}})

    def stop(self) -> Optional[int]:
        if self.application is None:
            logger.debug("STOP ignored: no application")
            return None
        return self._send_receiver(MSG_STOP, {"sessionId": self.application.session_id})

    def play(self) -> Optional[int]:
        if self.application is None:
            logger.debug("PLAY ignored: no application")
            return None
        return self.application.send_media(MSG_PLAY)

    def pause(self) -> Optional[int]:
        if self.application is None:
            logger.debug("PAUSE ignored: no application")
            return None
        return self.application.send_media(MSG_PAUSE)

    def toggle_pause(self) -> Optional[int]:
        return self.pause() if self.state == STATE_PLAYING else self.play()

    def seek(self, position: float) -> Optional[int]:
        media = self.media
        if media is None or self.application.closed:
            logger.debug("SEEK ignored: no media session")
            return None
        target = clamp_seek(position, media.duration)
        media.seek_to(target)
        return self.application.send_media(MSG_SEEK, {"currentTime": target, "resumeState": RESUME_UNCHANGED})

    def rseek(self, delta: float) -> Optional[int]:
        return self.seek(self.current_position() + delta)
