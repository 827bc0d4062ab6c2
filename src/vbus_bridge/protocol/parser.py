"""Parsing of controller replies and bus-control datagrams."""

from __future__ import annotations

from dataclasses import dataclass

from .commands import Command, base_command
from .framing import Packet


@dataclass
class ValueReply:
    """Parsed value reply (0x0100 | sub-index)."""

    address: int
    index: int
    subindex: int
    value: int


@dataclass
class ValueIndexReply:
    """Parsed reply to an index-by-id-hash lookup."""

    address: int
    index: int
    id_hash: int


@dataclass
class BusOffer:
    """A controller offering bus control to other participants (0x0500)."""

    address: int


@dataclass
class DataPacket:
    """A regular live data packet (protocol 0x10, command 0x0100)."""

    destination: int
    source: int
    payload: bytes

    def __repr__(self) -> str:
        return (
            f"DataPacket(dst=0x{self.destination:04X}, src=0x{self.source:04X}, "
            f"len={len(self.payload)})"
        )


def parse_value_reply(packet: Packet) -> ValueReply | None:
    """Parse a value reply datagram."""
    if not packet.is_datagram or base_command(packet.command) != Command.VALUE_REPLY:
        return None
    return ValueReply(
        address=packet.source,
        index=packet.param16,
        subindex=packet.command & 0xFF,
        value=packet.param32,
    )


def parse_value_index_reply(packet: Packet) -> ValueIndexReply | None:
    """Parse the answer to :data:`Command.GET_VALUE_INDEX`.

    Controllers may also answer with a plain value reply. Either form only
    answers a lookup when its ``id_hash`` equals the hash that was asked for.
    """
    if not packet.is_datagram or packet.command not in (
        Command.VALUE_INDEX_REPLY,
        Command.VALUE_REPLY,
    ):
        return None
    return ValueIndexReply(
        address=packet.source, index=packet.param16, id_hash=packet.param32
    )


def parse_bus_offer(packet: Packet) -> BusOffer | None:
    if not packet.is_datagram or packet.command != Command.OFFER_BUS:
        return None
    return BusOffer(address=packet.source)


def parse_data_packet(packet: Packet) -> DataPacket | None:
    if packet.is_datagram or packet.command != Command.DATA:
        return None
    return DataPacket(
        destination=packet.destination, source=packet.source, payload=packet.payload
    )


def parse_response(packet: Packet):
    """Auto-dispatch a packet to the appropriate parser.

    Returns the parsed dataclass, or the packet itself if no specific
    parser matches.
    """
    if packet.is_datagram:
        parsers = {
            Command.VALUE_REPLY: parse_value_reply,
            Command.VALUE_INDEX_REPLY: parse_value_index_reply,
            Command.OFFER_BUS: parse_bus_offer,
        }
        parser = parsers.get(base_command(packet.command))
    else:
        parser = parse_data_packet
    if parser:
        result = parser(packet)
        if result is not None:
            return result
    return packet
