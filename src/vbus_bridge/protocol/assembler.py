"""Incremental decoder turning a VBus byte stream into packets.

The assembler is fed arbitrary chunks of bytes and hands out complete
:class:`~vbus_bridge.protocol.framing.Packet` objects. Headers and payload
frames are validated as soon as they are complete, so a corrupted frame is
detected without waiting for the rest of the telegram.

States::

    SEARCHING --header ok--> HEADER_READ --frames announced--> PAYLOAD_ACCUMULATING
        ^                        |                                   |
        |                        +--no frames--> (complete)          +--last frame--> (complete)
        +----------------- (resync: drop one byte) <-----------------+
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from enum import Enum

from ..errors import FramingError
from ..utils.checksum import has_msb
from .framing import PREFIX_LENGTH, SYNC, Header, Packet, VersionCodec, codec_for

logger = logging.getLogger(__name__)


class AssemblerState(Enum):
    SEARCHING = "searching"
    HEADER_READ = "header_read"
    PAYLOAD_ACCUMULATING = "payload_accumulating"


class TelegramAssembler:
    """Reassemble packets from a live VBus byte stream.

    Usage::

        assembler = TelegramAssembler(channel=0)
        assembler.feed(chunk)
        for packet in assembler:
            handle(packet)

    Args:
        channel: Channel number stamped onto every produced packet.
        on_framing_error: Called with the :class:`FramingError` whenever a
            partial telegram is discarded.
    """

    def __init__(
        self,
        channel: int = 0,
        on_framing_error: Callable[[FramingError], None] | None = None,
    ) -> None:
        self.channel = channel
        self._on_framing_error = on_framing_error
        self._buf = bytearray()
        self._state = AssemblerState.SEARCHING
        self._codec: VersionCodec | None = None
        self._header: Header | None = None
        self._raw = bytearray()
        self._payload = bytearray()
        self._frame_index = 0
        self.framing_errors = 0
        self.packets = 0

    @property
    def state(self) -> AssemblerState:
        return self._state

    @property
    def buffered(self) -> int:
        """Number of bytes waiting to be decoded."""
        return len(self._buf)

    def feed(self, data: bytes) -> None:
        self._buf.extend(data)

    def reset(self) -> None:
        """Drop all buffered bytes and any partial telegram."""
        self._buf.clear()
        self._discard_partial()

    def __iter__(self) -> Iterator[Packet]:
        while True:
            packet = self.read_packet()
            if packet is None:
                return
            yield packet

    def read_packet(self) -> Packet | None:
        """Return the next complete packet, or ``None`` if more bytes are needed."""
        while True:
            if self._state is AssemblerState.SEARCHING:
                if not self._read_header():
                    return None
            elif self._state is AssemblerState.HEADER_READ:
                if self._header.frame_count == 0:
                    return self._complete()
                self._state = AssemblerState.PAYLOAD_ACCUMULATING
            else:
                if not self._read_frame():
                    return None
                if (
                    self._state is AssemblerState.PAYLOAD_ACCUMULATING
                    and self._frame_index == self._header.frame_count
                ):
                    return self._complete()

    # ── state handlers ──────────────────────────────────────────────

    def _read_header(self) -> bool:
        start = self._buf.find(SYNC)
        if start < 0:
            self._buf.clear()
            return False
        if start:
            del self._buf[:start]

        try:
            if len(self._buf) < PREFIX_LENGTH:
                self._check_clean(1)
                return False
            self._check_clean(1, PREFIX_LENGTH)
            codec = codec_for(self._buf[5])
            if len(self._buf) < codec.header_length:
                self._check_clean(PREFIX_LENGTH)
                return False
            header = codec.decode_header(bytes(self._buf[: codec.header_length]))
        except FramingError as e:
            self._resync(e)
            return True

        self._codec = codec
        self._header = header
        self._raw = bytearray(self._buf[: codec.header_length])
        self._payload = bytearray(header.payload)
        self._frame_index = 0
        del self._buf[: codec.header_length]
        self._state = AssemblerState.HEADER_READ
        return True

    def _read_frame(self) -> bool:
        length = self._codec.frame_length
        pos = has_msb(self._buf[:length])
        if pos >= 0:
            # A new sync (or garbage) arrived before the telegram was complete.
            del self._buf[:pos]
            self._fail(
                FramingError(
                    f"Telegram {self._describe()} interrupted after "
                    f"{self._frame_index}/{self._header.frame_count} frames"
                )
            )
            return True
        if len(self._buf) < length:
            return False

        block = bytes(self._buf[:length])
        try:
            data = self._codec.decode_frame(block)
        except FramingError as e:
            self._resync(
                FramingError(f"Frame {self._frame_index} of {self._describe()}: {e}")
            )
            return True

        self._payload += data
        self._raw += block
        self._frame_index += 1
        del self._buf[:length]
        return True

    # ── transitions ─────────────────────────────────────────────────

    def _complete(self) -> Packet:
        header = self._header
        packet = Packet(
            destination=header.destination,
            source=header.source,
            protocol_version=header.protocol_version,
            command=header.command,
            payload=bytes(self._payload),
            channel=self.channel,
            raw=bytes(self._raw),
        )
        self.packets += 1
        self._discard_partial()
        return packet

    def _resync(self, error: FramingError) -> None:
        """Discard the partial telegram and drop exactly one byte."""
        if self._buf:
            del self._buf[0]
        self._fail(error)

    def _fail(self, error: FramingError) -> None:
        self.framing_errors += 1
        logger.debug("Framing error on channel %d: %s", self.channel, error)
        self._discard_partial()
        if self._on_framing_error is not None:
            self._on_framing_error(error)

    def _discard_partial(self) -> None:
        self._state = AssemblerState.SEARCHING
        self._codec = None
        self._header = None
        self._raw = bytearray()
        self._payload = bytearray()
        self._frame_index = 0

    def _check_clean(self, start: int, end: int | None = None) -> None:
        chunk = self._buf[start:end]
        pos = has_msb(chunk)
        if pos >= 0:
            raise FramingError(
                f"Unexpected byte 0x{chunk[pos]:02X} at offset {start + pos}"
            )

    def _describe(self) -> str:
        h = self._header
        return f"0x{h.source:04X}->0x{h.destination:04X} cmd 0x{h.command:04X}"
