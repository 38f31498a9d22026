"""Binary framing of RPC messages exchanged with the transaction coordinator.

Frame layout (big endian)::

    magic(2) version(1) total_length(4) head_length(2)
    message_type(1) codec(1) compressor(1) request_id(4)
    head map (optional) body (optional)

``total_length`` covers the whole frame; ``head_length`` covers everything
from the magic code to the end of the head map.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Protocol

MAGIC_CODE_BYTES = b"\xda\xda"
VERSION = 1
V1_HEAD_LENGTH = 16
CODEC_SEATA = 1

_HEADER = struct.Struct(">2sBIHBBBI")
_UINT16 = struct.Struct(">H")


class GettyRequestType(IntEnum):
    """Kind of frame carried on the wire."""

    REQUEST_SYNC = 0
    RESPONSE = 1
    REQUEST_ONEWAY = 2
    HEARTBEAT_REQUEST = 3
    HEARTBEAT_RESPONSE = 4


@dataclass(frozen=True)
class HeartBeatMessage:
    """A keep-alive ping or pong."""

    ping: bool = True


HEARTBEAT_PING = HeartBeatMessage(ping=True)
HEARTBEAT_PONG = HeartBeatMessage(ping=False)


@dataclass
class RpcMessage:
    """One frame: routing information, optional head map and a body."""

    id: int = 0
    type: int = GettyRequestType.REQUEST_SYNC
    codec: int = CODEC_SEATA
    compressor: int = 0
    head_map: dict[str, str] = field(default_factory=dict)
    body: Any = None


class FrameError(ValueError):
    """A frame could not be encoded or decoded."""


class BodyCodec(Protocol):
    """Turns message bodies into bytes and back for a given codec id."""

    def encode(self, codec_type: int, body: Any) -> bytes: ...

    def decode(self, codec_type: int, data: bytes) -> Any: ...


class _RawBodyCodec:
    """Passes bodies that already are bytes through unchanged."""

    def encode(self, codec_type: int, body: Any) -> bytes:
        if body is None:
            return b""
        if isinstance(body, (bytes, bytearray, memoryview)):
            return bytes(body)
        raise FrameError(f"no codec to encode body of type {type(body).__name__}")

    def decode(self, codec_type: int, data: bytes) -> Any:
        return bytes(data)


_HEARTBEAT_TYPES = (GettyRequestType.HEARTBEAT_REQUEST, GettyRequestType.HEARTBEAT_RESPONSE)


def _request_type(value: int) -> int:
    try:
        return GettyRequestType(value)
    except ValueError:
        return value


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x1_0000_0000 if value & 0x8000_0000 else value


def _pack_string(text: str) -> bytes:
    raw = text.encode("utf-8")
    if len(raw) > 0xFFFF:
        raise FrameError("head map entry is too long")
    return _UINT16.pack(len(raw)) + raw


def encode_head_map(data: dict[str, str]) -> bytes:
    """Encode a head map as length-prefixed key/value strings."""
    return b"".join(_pack_string(key) + _pack_string(value) for key, value in data.items())


def _read_string(data: bytes, offset: int) -> tuple[str, int]:
    if offset + _UINT16.size > len(data):
        raise FrameError("packet stream is not enough")
    (length,) = _UINT16.unpack_from(data, offset)
    start = offset + _UINT16.size
    end = start + length
    if end > len(data):
        raise FrameError("packet stream is not enough")
    return data[start:end].decode("utf-8"), end


def decode_head_map(data: bytes) -> dict[str, str]:
    """Decode the bytes written by :func:`encode_head_map`."""
    raw = bytes(data)
    result: dict[str, str] = {}
    offset = 0
    while offset < len(raw):
        key, offset = _read_string(raw, offset)
        value, offset = _read_string(raw, offset)
        result[key] = value
    return result


class RpcPackageHandler:
    """Reads and writes framed RPC messages."""

    def __init__(self, codec: BodyCodec | None = None) -> None:
        self.codec: BodyCodec = codec if codec is not None else _RawBodyCodec()

    def read(self, data: bytes) -> tuple[RpcMessage | None, int]:
        """Decode one frame from the start of ``data``.

        Returns the message and the number of bytes it spans. When more data
        is needed the message is None and the length is how many bytes the
        frame needs (0 if not even the header is complete yet).
        """
        data = bytes(data)
        if len(data) >= 2 and data[:2] != MAGIC_CODE_BYTES:
            raise FrameError("codec decode not found magic offset")
        if len(data) < V1_HEAD_LENGTH:
            return None, 0

        (
            _magic,
            _version,
            total_length,
            head_length,
            message_type,
            codec_type,
            compress_type,
            request_id,
        ) = _HEADER.unpack_from(data)
        if head_length < V1_HEAD_LENGTH or total_length < head_length:
            raise FrameError("invalid rpc package")
        if len(data) < total_length:
            return None, total_length

        message = RpcMessage(
            id=_to_int32(request_id),
            type=_request_type(message_type),
            codec=codec_type,
            compressor=compress_type,
            head_map=decode_head_map(data[V1_HEAD_LENGTH:head_length]),
        )
        if message_type == GettyRequestType.HEARTBEAT_REQUEST:
            message.body = HEARTBEAT_PING
        elif message_type == GettyRequestType.HEARTBEAT_RESPONSE:
            message.body = HEARTBEAT_PONG
        elif total_length > head_length:
            message.body = self.codec.decode(codec_type, data[head_length:total_length])
        return message, total_length

    def write(self, message: RpcMessage) -> bytes:
        """Encode ``message`` into one frame."""
        if not isinstance(message, RpcMessage):
            raise FrameError("invalid rpc package")

        head_map = encode_head_map(message.head_map) if message.head_map else b""
        body = b""
        if message.type not in _HEARTBEAT_TYPES:
            body = self.codec.encode(message.codec, message.body)

        head_length = V1_HEAD_LENGTH + len(head_map)
        total_length = head_length + len(body)
        if head_length > 0xFFFF or total_length > 0xFFFFFFFF:
            raise FrameError("package length is exceed the getty package's legal maximum length.")
        try:
            header = _HEADER.pack(
                MAGIC_CODE_BYTES,
                VERSION,
                total_length,
                head_length,
                int(message.type),
                message.codec,
                message.compressor,
                message.id & 0xFFFFFFFF,
            )
        except struct.error as exc:
            raise FrameError(f"invalid rpc package: {exc}") from exc
        return header + head_map + body