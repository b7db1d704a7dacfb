"""castlink configuration file (TOML) parsing and validation."""
from __future__ import annotations
import logging
import random
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from shared.protocol import MEDIA_SENDER_PREFIX, RECEIVER_ID, SENDER_ID

DEFAULT_PORT = 8009
_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _media_sender_id() -> str:
    return f"{MEDIA_SENDER_PREFIX}{random.randint(10000, 99999)}"


@dataclass
class ConnectionConfig:
    host: str = ""
    port: int = DEFAULT_PORT
    initial_request_id: int = 1
    heartbeat_interval: float = 5.0
    request_timeout: float = 10.0
    connect_timeout: float = 10.0
    stream_queue_size: int = 64
    sender_id: str = SENDER_ID
    receiver_id: str = RECEIVER_ID
    media_sender_id: str = field(default_factory=_media_sender_id)

    def validate(self) -> list[str]:
        errors = []
        if not self.host:
            errors.append("cast.host is required")
        if not (0 < self.port < 65536):
            errors.append(f"cast.port must be 1-65535, got {self.port}")
        if self.initial_request_id < 0:
            errors.append("cast.initial_request_id must not be negative")
        if self.heartbeat_interval <= 0:
            errors.append("cast.heartbeat_interval must be positive")
        if self.request_timeout <= 0:
            errors.append("cast.request_timeout must be positive")
        if self.connect_timeout <= 0:
            errors.append("cast.connect_timeout must be positive")
        if self.stream_queue_size < 1:
            errors.append("cast.stream_queue_size must be at least 1")
        for name in ("sender_id", "receiver_id", "media_sender_id"):
            if not getattr(self, name):
                errors.append(f"cast.{name} must not be empty")
        return errors


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_dir: str = "logs"

    @property
    def level_no(self) -> int:
        return getattr(logging, self.level.upper()) if self.level.upper() in _LEVELS else logging.INFO

    def validate(self) -> list[str]:
        if self.level.upper() not in _LEVELS:
            return [f"Invalid logging.level: {self.level}"]
        return []


@dataclass
class Config:
    cast: ConnectionConfig = field(default_factory=ConnectionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> list[str]:
        return self.cast.validate() + self.logging.validate()


def _parse_cast(raw: dict) -> ConnectionConfig:
    return ConnectionConfig(
        host=raw.get("host", ""),
        port=raw.get("port", DEFAULT_PORT),
        initial_request_id=raw.get("initial_request_id", 1),
        heartbeat_interval=float(raw.get("heartbeat_interval", 5.0)),
        request_timeout=float(raw.get("request_timeout", 10.0)),
        connect_timeout=float(raw.get("connect_timeout", 10.0)),
        stream_queue_size=raw.get("stream_queue_size", 64),
        sender_id=raw.get("sender_id", SENDER_ID),
        receiver_id=raw.get("receiver_id", RECEIVER_ID),
        media_sender_id=raw.get("media_sender_id") or _media_sender_id(),
    )


def load_config(path: Path, host: Optional[str] = None, port: Optional[int] = None) -> Config:
    """Load a castlink.toml file; host/port given on the command line win over the file."""
    with open(path, "rb") as f:
        data = tomllib.load(f)

    logging_raw = data.get("logging", {})
    config = Config(
        cast=_parse_cast(data.get("cast", {})),
        logging=LoggingConfig(
            level=logging_raw.get("level", "INFO"),
            log_dir=logging_raw.get("log_dir", "logs"),
        ),
    )
    if host:
        config.cast.host = host
    if port:
        config.cast.port = port
    return config
