"""VBus live wire format: frame encoding, decoding and resynchronisation.

Frame layout (all protocol versions)::

    +------+-------------+-------------+---------+---------------------+----------------+
    | Sync | Destination |   Source    | Version | Header tail         | Payload region |
    | 0xAA | 2 bytes LE  | 2 bytes LE  | 1 byte  | incl. checksum      | N frames       |
    +------+-------------+-------------+---------+---------------------+----------------+

- Version 0x10 (packet): command LE16, frame count, checksum. Each payload
  frame is 4 data bytes, a septet byte and a checksum.
- Version 0x20 (datagram): command LE16, param16 LE and param32 LE as six
  septetted bytes, septet, checksum. No payload frames follow.
- Version 0x30 (telegram): one command byte carrying the frame count in
  bits 5-6, checksum. Each payload frame is 7 data bytes, septet, checksum.

Only the sync byte has its MSB set, so any other byte >= 0x80 marks a
corrupted or interrupted frame.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..errors import ChecksumError, FramingError
from ..utils.checksum import checksum, extract_septet, has_msb, inject_septet

logger = logging.getLogger(__name__)

SYNC = 0xAA
PREFIX_LENGTH = 6  # sync + destination + source + version

PROTOCOL_PACKET = 0x10
PROTOCOL_DATAGRAM = 0x20
PROTOCOL_TELEGRAM = 0x30


@dataclass(frozen=True)
class Frame:
    """One physically transmitted, checksummed VBus unit."""

    destination: int
    source: int
    protocol_version: int
    command: int
    payload: bytes = b""

    def __repr__(self) -> str:
        return (
            f"Frame(dst=0x{self.destination:04X}, src=0x{self.source:04X}, "
            f"ver=0x{self.protocol_version:02X}, cmd=0x{self.command:04X}, "
            f"payload={self.payload.hex(' ') if self.payload else '(empty)'})"
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Packet:
    """A logical message assembled from one or more frames.

    ``raw`` holds the validated wire bytes the packet was decoded from and
    is what the bridge forwards to its clients.
    """

    destination: int
    source: int
    protocol_version: int
    command: int
    payload: bytes = b""
    channel: int = 0
    timestamp: datetime = field(default_factory=_utcnow, compare=False)
    raw: bytes = field(default=b"", compare=False, repr=False)

    @classmethod
    def from_frame(cls, frame: Frame, channel: int = 0, raw: bytes = b"") -> Packet:
        return cls(
            destination=frame.destination,
            source=frame.source,
            protocol_version=frame.protocol_version,
            command=frame.command,
            payload=frame.payload,
            channel=channel,
            raw=raw,
        )

    def to_frame(self) -> Frame:
        return Frame(
            destination=self.destination,
            source=self.source,
            protocol_version=self.protocol_version,
            command=self.command,
            payload=self.payload,
        )

    def to_bytes(self) -> bytes:
        """Wire bytes of this packet, re-encoded if it was built locally."""
        return self.raw or encode(self.to_frame())

    @property
    def is_datagram(self) -> bool:
        return self.protocol_version & 0xF0 == PROTOCOL_DATAGRAM

    @property
    def param16(self) -> int:
        """Signed 16-bit datagram parameter (the value index)."""
        return int.from_bytes(self.payload[0:2], "little", signed=True)

    @property
    def param32(self) -> int:
        """Signed 32-bit datagram parameter (the value)."""
        return int.from_bytes(self.payload[2:6], "little", signed=True)

    @property
    def id_string(self) -> str:
        return (
            f"{self.channel:02X}_{self.destination:04X}_{self.source:04X}_"
            f"{self.protocol_version:02X}_{self.command:04X}"
        )


@dataclass(frozen=True)
class Header:
    """Decoded header block; ``payload`` holds data carried inside the header."""

    destination: int
    source: int
    protocol_version: int
    command: int
    frame_count: int
    payload: bytes = b""


def _check_clean(data: bytes, offset: int = 0) -> None:
    pos = has_msb(data)
    if pos >= 0:
        raise FramingError(
            f"Unexpected byte 0x{data[pos]:02X} at offset {offset + pos}"
        )


def _encode_prefix(frame: Frame) -> bytes:
    prefix = (
        bytes([SYNC])
        + (frame.destination & 0xFFFF).to_bytes(2, "little")
        + (frame.source & 0xFFFF).to_bytes(2, "little")
        + bytes([frame.protocol_version & 0xFF])
    )
    if has_msb(prefix[1:]) >= 0:
        raise ValueError(f"{frame!r} has header bytes outside the 7-bit range")
    return prefix


def _decode_prefix(data: bytes) -> tuple[int, int, int]:
    return (
        int.from_bytes(data[1:3], "little"),
        int.from_bytes(data[3:5], "little"),
        data[5],
    )


def _verify(block: bytes, what: str) -> None:
    expected = checksum(block[:-1])
    if block[-1] != expected:
        raise ChecksumError(
            f"{what} checksum 0x{block[-1]:02X} != expected 0x{expected:02X}"
        )


def _unstuff(data: bytes, septet: int, what: str) -> bytes:
    if septet >> len(data):
        raise FramingError(f"{what} septet 0x{septet:02X} sets bits beyond {len(data)} bytes")
    return extract_septet(data, septet)


class VersionCodec:
    """Encoding strategy for one protocol version."""

    version = 0
    name = ""
    header_length = 0
    frame_length = 0
    frame_data_length = 0

    def frame_count(self, frame: Frame) -> int:
        if not self.frame_data_length:
            return 0
        if len(frame.payload) % self.frame_data_length:
            raise ValueError(
                f"{self.name} payload must be a multiple of "
                f"{self.frame_data_length} bytes, got {len(frame.payload)}"
            )
        return len(frame.payload) // self.frame_data_length

    def encode_header(self, frame: Frame) -> bytes:
        raise NotImplementedError

    def decode_header(self, data: bytes) -> Header:
        raise NotImplementedError

    def encode_frame(self, data: bytes) -> bytes:
        """Septet-encode one payload frame and append its checksum."""
        body, septet = inject_septet(data)
        block = body + bytes([septet])
        return block + bytes([checksum(block)])

    def decode_frame(self, data: bytes) -> bytes:
        """Validate one payload frame and return its data bytes."""
        _check_clean(data)
        _verify(data, f"{self.name} frame")
        return _unstuff(data[: self.frame_data_length], data[-2], f"{self.name} frame")

    def total_length(self, header: Header) -> int:
        return self.header_length + header.frame_count * self.frame_length

    def encode(self, frame: Frame) -> bytes:
        out = bytearray(self.encode_header(frame))
        step = self.frame_data_length
        for offset in range(0, self.frame_count(frame) * step, step):
            out += self.encode_frame(frame.payload[offset : offset + step])
        return bytes(out)


class PacketCodec(VersionCodec):
    version = PROTOCOL_PACKET
    name = "packet"
    header_length = 10
    frame_length = 6
    frame_data_length = 4
    max_frame_count = 0x7F

    def encode_header(self, frame: Frame) -> bytes:
        count = self.frame_count(frame)
        if count > self.max_frame_count:
            raise ValueError(f"Packet payload too long ({len(frame.payload)} bytes)")
        block = _encode_prefix(frame) + (frame.command & 0xFFFF).to_bytes(2, "little")
        block += bytes([count])
        if has_msb(block[6:]) >= 0:
            raise ValueError(f"Command 0x{frame.command:04X} is not 7-bit clean")
        return block + bytes([checksum(block[1:])])

    def decode_header(self, data: bytes) -> Header:
        _check_clean(data[1:], 1)
        _verify(data[1:], "packet header")
        destination, source, version = _decode_prefix(data)
        return Header(
            destination=destination,
            source=source,
            protocol_version=version,
            command=int.from_bytes(data[6:8], "little"),
            frame_count=data[8],
        )


class DatagramCodec(VersionCodec):
    version = PROTOCOL_DATAGRAM
    name = "datagram"
    header_length = 16
    payload_length = 6

    def frame_count(self, frame: Frame) -> int:
        if len(frame.payload) != self.payload_length:
            raise ValueError(
                f"Datagram payload must be {self.payload_length} bytes, "
                f"got {len(frame.payload)}"
            )
        return 0

    def encode_header(self, frame: Frame) -> bytes:
        self.frame_count(frame)
        block = _encode_prefix(frame) + (frame.command & 0xFFFF).to_bytes(2, "little")
        if has_msb(block[6:]) >= 0:
            raise ValueError(f"Command 0x{frame.command:04X} is not 7-bit clean")
        body, septet = inject_septet(frame.payload)
        block += body + bytes([septet])
        return block + bytes([checksum(block[1:])])

    def decode_header(self, data: bytes) -> Header:
        _check_clean(data[1:], 1)
        _verify(data[1:], "datagram")
        destination, source, version = _decode_prefix(data)
        return Header(
            destination=destination,
            source=source,
            protocol_version=version,
            command=int.from_bytes(data[6:8], "little"),
            frame_count=0,
            payload=_unstuff(data[8:14], data[14], "datagram"),
        )

    def encode(self, frame: Frame) -> bytes:
        return self.encode_header(frame)


class TelegramCodec(VersionCodec):
    version = PROTOCOL_TELEGRAM
    name = "telegram"
    header_length = 8
    frame_length = 9
    frame_data_length = 7

    @staticmethod
    def frame_count_from_command(command: int) -> int:
        return (command >> 5) & 0x03

    def frame_count(self, frame: Frame) -> int:
        count = super().frame_count(frame)
        if count != self.frame_count_from_command(frame.command):
            raise ValueError(
                f"Telegram command 0x{frame.command:02X} announces "
                f"{self.frame_count_from_command(frame.command)} frames, "
                f"payload holds {count}"
            )
        return count

    def encode_header(self, frame: Frame) -> bytes:
        self.frame_count(frame)
        if frame.command & ~0x7F:
            raise ValueError(f"Telegram command 0x{frame.command:02X} exceeds 7 bits")
        block = _encode_prefix(frame) + bytes([frame.command])
        return block + bytes([checksum(block[1:])])

    def decode_header(self, data: bytes) -> Header:
        _check_clean(data[1:], 1)
        _verify(data[1:], "telegram header")
        destination, source, version = _decode_prefix(data)
        return Header(
            destination=destination,
            source=source,
            protocol_version=version,
            command=data[6],
            frame_count=self.frame_count_from_command(data[6]),
        )


CODECS: dict[int, VersionCodec] = {
    codec.version: codec for codec in (PacketCodec(), DatagramCodec(), TelegramCodec())
}


def codec_for(version: int) -> VersionCodec:
    """Select the encoding strategy for a protocol-version tag.

    Minor revisions (e.g. 0x11) share the strategy of their major version.

    Raises:
        FramingError: If no strategy handles the version.
    """
    codec = CODECS.get(version) or CODECS.get(version & 0xF0)
    if codec is None:
        raise FramingError(f"Unsupported protocol version 0x{version:02X}")
    return codec


def encode(frame: Frame) -> bytes:
    """Serialize a frame into its wire representation.

    Raises:
        ValueError: If the frame cannot be represented without ambiguity.
    """
    try:
        codec = codec_for(frame.protocol_version)
    except FramingError as e:
        raise ValueError(str(e)) from e
    return codec.encode(frame)


def _parse(buf: bytes) -> tuple[Frame | None, int]:
    """Parse one frame starting at ``buf[0] == SYNC``.

    Returns ``(None, 0)`` when more bytes are required.
    """
    if len(buf) < PREFIX_LENGTH:
        _check_clean(buf[1:], 1)
        return None, 0

    _check_clean(buf[1:PREFIX_LENGTH], 1)
    codec = codec_for(buf[5])
    if len(buf) < codec.header_length:
        _check_clean(buf[PREFIX_LENGTH:], PREFIX_LENGTH)
        return None, 0

    header = codec.decode_header(bytes(buf[: codec.header_length]))
    total = codec.total_length(header)
    if len(buf) < total:
        _check_clean(buf[codec.header_length :], codec.header_length)
        return None, 0

    payload = bytearray(header.payload)
    if codec.frame_length:
        for offset in range(codec.header_length, total, codec.frame_length):
            payload += codec.decode_frame(bytes(buf[offset : offset + codec.frame_length]))

    frame = Frame(
        destination=header.destination,
        source=header.source,
        protocol_version=header.protocol_version,
        command=header.command,
        payload=bytes(payload),
    )
    return frame, total


def decode(data: bytes) -> Frame:
    """Decode exactly one encoded frame.

    Raises:
        FramingError: If ``data`` is not exactly one valid frame.
        ChecksumError: If a checksum does not match.
    """
    if not data or data[0] != SYNC:
        raise FramingError("Missing sync byte")
    frame, length = _parse(data)
    if frame is None:
        raise FramingError(f"Truncated frame ({len(data)} bytes)")
    if length != len(data):
        raise FramingError(f"{len(data) - length} trailing bytes after frame")
    return frame


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of :func:`decode_next`.

    ``consumed`` bytes may be dropped from the front of the buffer. A
    result without a frame and without an error means more bytes are
    needed.
    """

    frame: Frame | None
    consumed: int
    error: FramingError | None = None

    @property
    def need_more(self) -> bool:
        return self.frame is None and self.error is None


def decode_next(buf: bytes | bytearray) -> DecodeResult:
    """Scan ``buf`` for the next valid frame.

    Leading noise before the sync marker is reported as consumed. When the
    candidate at the sync marker fails validation, exactly one byte (the
    sync) is dropped so scanning resumes at the next candidate.
    """
    start = buf.find(SYNC)
    if start < 0:
        return DecodeResult(None, len(buf))

    try:
        frame, length = _parse(bytes(buf[start:]))
    except FramingError as e:
        logger.debug("Dropping byte at offset %d: %s", start, e)
        return DecodeResult(None, start + 1, e)

    if frame is None:
        return DecodeResult(None, start)
    return DecodeResult(frame, start + length)
