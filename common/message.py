"""Frame encoding/decoding for the ECU link.

Frames use a sync-prefixed, length-prefixed layout with a Fletcher-16 checksum:
  ['M','E'][2-byte payload length][type][class][command][payload][2-byte checksum]

The checksum covers the message content (type, class, command, payload) only.
The sync marker allows recovery from framing errors (e.g., when attaching to a
stream mid-frame or after line noise): the decoder drops one byte at a time
until a frame with a valid checksum lines up again.

All multi-byte integers are little-endian unsigned 16-bit.
"""

import logging
from dataclasses import dataclass, field
from typing import Literal

from common.checksum import fletcher16
from common.protocol import (
    CHECKSUM_SIZE,
    CONTENT_HEADER_SIZE,
    HEADER_SIZE,
    MAX_CONTENT_SIZE,
    SYNC_BYTES,
    MsgType,
)

logger = logging.getLogger(__name__)

UINT16_SIZE = 2
BYTE_ORDER: Literal["little", "big"] = "little"


def uint16_to_bytes(value: int) -> bytes:
    """Encode unsigned 16-bit int as little-endian bytes."""
    return value.to_bytes(UINT16_SIZE, BYTE_ORDER, signed=False)


def uint16_from_bytes(data: bytes) -> int:
    """Decode little-endian bytes to unsigned 16-bit int."""
    return int.from_bytes(data, BYTE_ORDER, signed=False)


def correlation_key(msg_class: int, command: int) -> int:
    """Pack (class, command) into the key used to match responses to requests."""
    return (msg_class << 8) | command


@dataclass(frozen=True)
class Message:
    """One protocol message: direction, class, command and payload."""

    type: int
    msg_class: int
    command: int
    payload: bytes = b""

    def __post_init__(self) -> None:
        for name in ("type", "msg_class", "command"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFF:
                raise ValueError(f"{name} must fit in one byte, got {value}")
        # Accept bytearray/list payloads but store immutable bytes
        object.__setattr__(self, "payload", bytes(self.payload))

    @property
    def correlation_key(self) -> int:
        return correlation_key(self.msg_class, self.command)

    @property
    def is_response(self) -> bool:
        return self.type == MsgType.RESPONSE

    def content(self) -> bytes:
        """Return the checksummed region: type, class, command, payload."""
        return bytes((self.type, self.msg_class, self.command)) + self.payload

    def __str__(self) -> str:
        return (
            f"Message(type=0x{self.type:02X}, class=0x{self.msg_class:02X}, "
            f"command=0x{self.command:02X}, payload={self.payload.hex(' ')})"
        )


def request(msg_class: int, command: int, payload: bytes = b"") -> Message:
    """Build a request message (type 0x00)."""
    return Message(MsgType.REQUEST, msg_class, command, payload)


def response(msg_class: int, command: int, payload: bytes = b"") -> Message:
    """Build a response/push message (type 0x0F)."""
    return Message(MsgType.RESPONSE, msg_class, command, payload)


def encode_frame(message: Message) -> bytes:
    """Encode a message with sync marker, length prefix and checksum suffix."""
    content = message.content()
    if len(content) >= MAX_CONTENT_SIZE:
        raise ValueError(
            f"Message content of {len(content)} bytes exceeds max {MAX_CONTENT_SIZE - 1}"
        )
    checksum = uint16_to_bytes(fletcher16(content))
    return SYNC_BYTES + uint16_to_bytes(len(message.payload)) + content + checksum


def frame_size(payload_length: int) -> int:
    """Total bytes on the wire for a frame carrying payload_length bytes."""
    return HEADER_SIZE + CONTENT_HEADER_SIZE + payload_length + CHECKSUM_SIZE


def decode_frame(data: bytes) -> Message | None:
    """Decode exactly one complete frame.

    Returns None if data is not a well-formed frame (bad sync, wrong length,
    oversize or checksum mismatch).
    """
    if len(data) < frame_size(0) or data[:2] != SYNC_BYTES:
        return None
    payload_length = uint16_from_bytes(data[2:HEADER_SIZE])
    if CONTENT_HEADER_SIZE + payload_length >= MAX_CONTENT_SIZE:
        return None
    if len(data) != frame_size(payload_length):
        return None
    content_end = HEADER_SIZE + CONTENT_HEADER_SIZE + payload_length
    content = data[HEADER_SIZE:content_end]
    expected = uint16_from_bytes(data[content_end : content_end + CHECKSUM_SIZE])
    if fletcher16(content) != expected:
        return None
    return Message(content[0], content[1], content[2], content[CONTENT_HEADER_SIZE:])


@dataclass
class FrameDecoder:
    """Incremental frame decoder with byte-at-a-time resync.

    Feed it whatever the stream produced; it returns every complete frame it
    can extract and keeps the remainder buffered. Garbage, oversize length
    fields and checksum failures are dropped one byte at a time and never
    raise.
    """

    discarded_bytes: int = 0
    checksum_failures: int = 0
    _buffer: bytearray = field(default_factory=bytearray, repr=False)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def feed(self, data: bytes) -> list[Message]:
        """Append data to the resync buffer and return all complete messages."""
        self._buffer.extend(data)
        messages: list[Message] = []
        while True:
            message = self._next()
            if message is None:
                return messages
            messages.append(message)

    def _drop(self, count: int = 1) -> None:
        del self._buffer[:count]
        self.discarded_bytes += count

    def _next(self) -> Message | None:
        buf = self._buffer
        while len(buf) >= 2:
            if buf[0] != SYNC_BYTES[0] or buf[1] != SYNC_BYTES[1]:
                self._drop()
                continue

            if len(buf) < HEADER_SIZE:
                return None

            payload_length = uint16_from_bytes(buf[2:HEADER_SIZE])
            if CONTENT_HEADER_SIZE + payload_length >= MAX_CONTENT_SIZE:
                logger.debug(f"Frame length {payload_length} exceeds max, resyncing")
                self._drop()
                continue

            total = frame_size(payload_length)
            if len(buf) < total:
                return None

            frame = bytes(buf[:total])
            message = decode_frame(frame)
            if message is None:
                self.checksum_failures += 1
                logger.warning(f"Checksum mismatch on {total}-byte frame, resyncing")
                self._drop()
                continue

            del buf[:total]
            return message
        return None
