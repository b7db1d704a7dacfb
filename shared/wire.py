"""castlink wire format: CastMessage protobuf envelopes behind a 4-byte length prefix."""
from __future__ import annotations
import struct
from dataclasses import dataclass
from typing import Optional

from google.protobuf import descriptor_pb2, descriptor_pool
from google.protobuf.message import DecodeError, EncodeError
from google.protobuf.message_factory import GetMessageClass

from shared.errors import FrameError

HEADER = struct.Struct(">I")
# Receivers refuse anything bigger than 64 KiB
MAX_FRAME_SIZE = 64 * 1024

PROTOCOL_VERSION = 0  # CASTV2_1_0
PAYLOAD_STRING = 0
PAYLOAD_BINARY = 1

_PACKAGE = "extensions.api.cast_channel"


def _cast_channel_file() -> descriptor_pb2.FileDescriptorProto:
    """cast_channel.proto, CastMessage only (the device-auth messages are never used)."""
    F = descriptor_pb2.FieldDescriptorProto
    proto = descriptor_pb2.FileDescriptorProto(
        name="cast_channel.proto", package=_PACKAGE, syntax="proto2"
    )
    msg = proto.message_type.add(name="CastMessage")

    version = msg.enum_type.add(name="ProtocolVersion")
    version.value.add(name="CASTV2_1_0", number=PROTOCOL_VERSION)
    payload = msg.enum_type.add(name="PayloadType")
    payload.value.add(name="STRING", number=PAYLOAD_STRING)
    payload.value.add(name="BINARY", number=PAYLOAD_BINARY)

    msg.field.add(name="protocol_version", number=1, label=F.LABEL_REQUIRED, type=F.TYPE_ENUM,
                  type_name=f".{_PACKAGE}.CastMessage.ProtocolVersion")
    msg.field.add(name="source_id", number=2, label=F.LABEL_REQUIRED, type=F.TYPE_STRING)
    msg.field.add(name="destination_id", number=3, label=F.LABEL_REQUIRED, type=F.TYPE_STRING)
    msg.field.add(name="namespace", number=4, label=F.LABEL_REQUIRED, type=F.TYPE_STRING)
    msg.field.add(name="payload_type", number=5, label=F.LABEL_REQUIRED, type=F.TYPE_ENUM,
                  type_name=f".{_PACKAGE}.CastMessage.PayloadType")
    msg.field.add(name="payload_utf8", number=6, label=F.LABEL_OPTIONAL, type=F.TYPE_STRING)
    msg.field.add(name="payload_binary", number=7, label=F.LABEL_OPTIONAL, type=F.TYPE_BYTES)
    return proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_cast_channel_file().SerializeToString())
CastMessage = GetMessageClass(_pool.FindMessageTypeByName(f"{_PACKAGE}.CastMessage"))


@dataclass(frozen=True)
class Envelope:
    source_id: str
    destination_id: str
    namespace: str
    payload_utf8: Optional[str] = None
    payload_binary: Optional[bytes] = None

    @property
    def payload_type(self) -> int:
        return PAYLOAD_BINARY if self.payload_binary is not None else PAYLOAD_STRING

    @property
    def is_binary(self) -> bool:
        return self.payload_type == PAYLOAD_BINARY


def _check_endpoints(env: Envelope) -> None:
    if not env.source_id or not env.destination_id or not env.namespace:
        raise FrameError(
            f"Envelope needs source, destination and namespace: "
            f"{env.source_id!r} -> {env.destination_id!r} ({env.namespace!r})"
        )


def encode_envelope(env: Envelope) -> bytes:
    """Serialize an envelope to CastMessage bytes (no length prefix)."""
    _check_endpoints(env)
    msg = CastMessage(
        protocol_version=PROTOCOL_VERSION,
        source_id=env.source_id,
        destination_id=env.destination_id,
        namespace=env.namespace,
        payload_type=env.payload_type,
    )
    if env.is_binary:
        msg.payload_binary = env.payload_binary
    else:
        msg.payload_utf8 = env.payload_utf8 or ""
    try:
        return msg.SerializeToString()
    except EncodeError as e:
        raise FrameError(f"Cannot encode envelope: {e}") from e


def decode_envelope(body: bytes) -> Envelope:
    """Parse CastMessage bytes. Raises FrameError when required fields are missing."""
    msg = CastMessage()
    try:
        msg.ParseFromString(body)
    except DecodeError as e:
        raise FrameError(f"Undecodable envelope ({len(body)} bytes): {e}") from e
    if msg.protocol_version != PROTOCOL_VERSION:
        raise FrameError(f"Unsupported protocol version {msg.protocol_version}")

    if msg.payload_type == PAYLOAD_BINARY:
        env = Envelope(msg.source_id, msg.destination_id, msg.namespace,
                       payload_binary=msg.payload_binary)
    else:
        if not msg.HasField("payload_utf8"):
            raise FrameError("STRING envelope without payload_utf8")
        env = Envelope(msg.source_id, msg.destination_id, msg.namespace,
                       payload_utf8=msg.payload_utf8)
    _check_endpoints(env)
    return env


def frame_envelope(env: Envelope) -> bytes:
    """Length-prefixed frame ready to be written in one piece."""
    body = encode_envelope(env)
    if len(body) > MAX_FRAME_SIZE:
        raise FrameError(f"Envelope of {len(body)} bytes exceeds {MAX_FRAME_SIZE}")
    return HEADER.pack(len(body)) + body


def unpack_length(header: bytes) -> int:
    """Body length announced by a 4-byte header."""
    if len(header) != HEADER.size:
        raise FrameError(f"Length prefix must be {HEADER.size} bytes, got {len(header)}")
    (length,) = HEADER.unpack(header)
    if length == 0 or length > MAX_FRAME_SIZE:
        raise FrameError(f"Bad frame length {length}")
    return length
