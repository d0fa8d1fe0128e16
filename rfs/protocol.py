"""
rfs/protocol.py

Binary wire protocol for RFS remote file streaming.

Envelope layout (all fields big-endian):
┌──────────────┬───────┬───────────────────────────────────────────────────┐
│ Field        │ Bytes │ Description                                       │
├──────────────┼───────┼───────────────────────────────────────────────────┤
│ magic        │   4   │ 0x52465331  ("RFS1") — frame start sentinel       │
│ msg_type     │   1   │ MessageType enum                                  │
│ body_len     │   4   │ Body length in bytes                              │
│ checksum     │   4   │ CRC32 of the body                                 │
├──────────────┼───────┼───────────────────────────────────────────────────┤
│ TOTAL HEADER │  13   │                                                   │
└──────────────┴───────┴───────────────────────────────────────────────────┘
│ body         │ body_len bytes │ XDR-style encoded message fields          │
└──────────────┴────────────────┴───────────────────────────────────────────┘

Body field encoding:
  unsigned — u64 big-endian
  string   — u32 length + UTF-8 bytes, zero-padded to a 4-byte boundary
  bytes    — u32 length + raw bytes,   zero-padded to a 4-byte boundary

Message types:
  HELLO          — handshake greeting (origin_name)
  INFO           — informational / error text, either direction
  OPEN_REQUEST   — client asks the server to open a file for reading
  OPEN_RESPONSE  — server returns an opaque handle for the opened file
  READ_REQUEST   — positional read: handle, offset, length
  READ_RESPONSE  — bytes read; empty data means end-of-file

The envelope length makes "need more bytes" a cheap length check. Anything
that fails after the envelope is complete is a fatal ProtocolDecodeError.
"""

import struct
import zlib
from dataclasses import dataclass, fields
from enum import IntEnum
from typing import ClassVar, Optional, Union

# ------------------------------------------------------------------
# Constants
# ------------------------------------------------------------------
MAGIC = 0x52465331              # "RFS1"
HEADER_FORMAT = "!IBII"         # big-endian: magic(I) type(B) body_len(I) checksum(I)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 13 bytes

MAX_BODY_SIZE = 16 * 1024 * 1024    # sanity cap on a single message body
MAX_UNSIGNED = 2 ** 64 - 1

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 44444
CHUNK_SIZE = 4000               # bytes requested per ReadRequest

_U32 = struct.Struct("!I")
_U64 = struct.Struct("!Q")


class MessageType(IntEnum):
    HELLO         = 0x01
    INFO          = 0x02
    OPEN_REQUEST  = 0x03
    OPEN_RESPONSE = 0x04
    READ_REQUEST  = 0x05
    READ_RESPONSE = 0x06


# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------

class ProtocolError(ValueError):
    """The peer violated the protocol. Always fatal to the connection."""


class ProtocolDecodeError(ProtocolError):
    """Bytes on the wire do not form a valid message."""


class LockStepError(ProtocolError):
    """More than one message in flight on a lock-step connection."""


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------
# Each message declares its discriminant and the wire kind of each field,
# in field order. Kinds: "str", "uint", "bytes".

@dataclass(frozen=True)
class Hello:
    origin_name: str

    msg_type: ClassVar[MessageType] = MessageType.HELLO
    wire_kinds: ClassVar[tuple] = ("str",)


@dataclass(frozen=True)
class Info:
    text: str

    msg_type: ClassVar[MessageType] = MessageType.INFO
    wire_kinds: ClassVar[tuple] = ("str",)


@dataclass(frozen=True)
class OpenRequest:
    path: str

    msg_type: ClassVar[MessageType] = MessageType.OPEN_REQUEST
    wire_kinds: ClassVar[tuple] = ("str",)


@dataclass(frozen=True)
class OpenResponse:
    handle: int

    msg_type: ClassVar[MessageType] = MessageType.OPEN_RESPONSE
    wire_kinds: ClassVar[tuple] = ("uint",)


@dataclass(frozen=True)
class ReadRequest:
    handle: int
    offset: int
    length: int

    msg_type: ClassVar[MessageType] = MessageType.READ_REQUEST
    wire_kinds: ClassVar[tuple] = ("uint", "uint", "uint")


@dataclass(frozen=True)
class ReadResponse:
    data: bytes

    msg_type: ClassVar[MessageType] = MessageType.READ_RESPONSE
    wire_kinds: ClassVar[tuple] = ("bytes",)

    @property
    def at_eof(self) -> bool:
        return len(self.data) == 0


Message = Union[Hello, Info, OpenRequest, OpenResponse, ReadRequest, ReadResponse]

MESSAGE_CLASSES = {
    cls.msg_type: cls
    for cls in (Hello, Info, OpenRequest, OpenResponse, ReadRequest, ReadResponse)
}


# ------------------------------------------------------------------
# Body encode / decode
# ------------------------------------------------------------------

def _pad_len(n: int) -> int:
    return (4 - n % 4) % 4


def _encode_opaque(raw: bytes) -> bytes:
    return _U32.pack(len(raw)) + raw + b"\x00" * _pad_len(len(raw))


def _encode_field(kind: str, name: str, value) -> bytes:
    if kind == "uint":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{name} must be an int, got {type(value).__name__}")
        if not 0 <= value <= MAX_UNSIGNED:
            raise ValueError(f"{name} out of range for u64: {value}")
        return _U64.pack(value)
    if kind == "str":
        return _encode_opaque(value.encode("utf-8"))
    return _encode_opaque(bytes(value))


def encode_body(message: Message) -> bytes:
    """Encode the fields of a message, without the envelope."""
    parts = [
        _encode_field(kind, f.name, getattr(message, f.name))
        for f, kind in zip(fields(message), message.wire_kinds)
    ]
    return b"".join(parts)


class _BodyReader:
    """Cursor over a complete message body. Every short read is malformed data."""

    def __init__(self, body: bytes) -> None:
        self._body = body
        self._pos  = 0

    def _take(self, n: int) -> bytes:
        end = self._pos + n
        if end > len(self._body):
            raise ProtocolDecodeError(
                f"Body truncated: need {end} bytes, have {len(self._body)}"
            )
        raw = self._body[self._pos:end]
        self._pos = end
        return raw

    def uint(self) -> int:
        return _U64.unpack(self._take(_U64.size))[0]

    def opaque(self) -> bytes:
        (length,) = _U32.unpack(self._take(_U32.size))
        raw = self._take(length)
        if any(self._take(_pad_len(length))):
            raise ProtocolDecodeError("Non-zero padding after variable-length field")
        return raw

    def text(self) -> str:
        try:
            return self.opaque().decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolDecodeError(f"Invalid UTF-8 in string field: {exc}") from exc

    def finish(self) -> None:
        left = len(self._body) - self._pos
        if left:
            raise ProtocolDecodeError(f"{left} trailing bytes after message body")


def decode_body(msg_type: MessageType, body: bytes) -> Message:
    """
    Decode a complete body for the given message type.

    Raises:
        ProtocolDecodeError: unknown type or malformed body
    """
    cls = MESSAGE_CLASSES.get(msg_type)
    if cls is None:
        raise ProtocolDecodeError(f"Unknown message type: {msg_type!r}")

    reader = _BodyReader(body)
    readers = {"uint": reader.uint, "str": reader.text, "bytes": reader.opaque}
    values = [readers[kind]() for kind in cls.wire_kinds]
    reader.finish()
    return cls(*values)


# ------------------------------------------------------------------
# Envelope encode / decode
# ------------------------------------------------------------------

def encode_message(message: Message) -> bytes:
    """
    Pack a message into bytes ready to send over a TCP socket.

    Returns:
        bytes: header + body
    """
    body = encode_body(message)
    if len(body) > MAX_BODY_SIZE:
        raise ValueError(f"Message body too large: {len(body)} bytes")

    header = struct.pack(
        HEADER_FORMAT,
        MAGIC,
        int(message.msg_type),
        len(body),
        zlib.crc32(body) & 0xFFFFFFFF,
    )
    return header + body


def decode_header(raw: bytes) -> tuple[MessageType, int, int]:
    """
    Unpack a raw 13-byte header into (msg_type, body_len, checksum).

    Raises:
        ProtocolDecodeError: bad magic, unknown type or oversized body
    """
    magic, msg_type, body_len, checksum = struct.unpack(HEADER_FORMAT, raw[:HEADER_SIZE])

    if magic != MAGIC:
        raise ProtocolDecodeError(f"Bad magic: 0x{magic:08X} (expected 0x{MAGIC:08X})")
    try:
        msg_type = MessageType(msg_type)
    except ValueError:
        raise ProtocolDecodeError(f"Unknown message type: 0x{msg_type:02X}") from None
    if body_len > MAX_BODY_SIZE:
        raise ProtocolDecodeError(f"Frame too large: {body_len} bytes")

    return msg_type, body_len, checksum


def split_frame(buffer: bytes) -> Optional[tuple[Message, int]]:
    """
    Try to take one message off the front of buffer.

    Returns:
        (message, bytes_consumed), or None if the buffer does not yet hold
        a complete frame.

    Raises:
        ProtocolDecodeError: the buffered bytes can never become a valid frame
    """
    if len(buffer) < HEADER_SIZE:
        return None

    msg_type, body_len, checksum = decode_header(bytes(buffer[:HEADER_SIZE]))
    end = HEADER_SIZE + body_len
    if len(buffer) < end:
        return None

    body = bytes(buffer[HEADER_SIZE:end])
    actual_crc = zlib.crc32(body) & 0xFFFFFFFF
    if actual_crc != checksum:
        raise ProtocolDecodeError(
            f"CRC mismatch on {msg_type.name}: "
            f"expected 0x{checksum:08X}, got 0x{actual_crc:08X}"
        )

    return decode_body(msg_type, body), end


def decode_message(raw: bytes) -> Message:
    """
    Decode exactly one whole frame.

    Raises:
        ProtocolDecodeError: incomplete, malformed, or followed by extra bytes
    """
    result = split_frame(raw)
    if result is None:
        raise ProtocolDecodeError(f"Incomplete frame: {len(raw)} bytes")
    message, consumed = result
    if consumed != len(raw):
        raise ProtocolDecodeError(f"{len(raw) - consumed} bytes after frame")
    return message
