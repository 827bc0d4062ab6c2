"""Datagram command codes and request builders.

Requests to a controller are version 0x20 datagrams carrying a 16-bit
parameter (usually the value index) and a 32-bit parameter (the value).
Commands that address a sub-index carry it in their low byte.
"""

from __future__ import annotations

from enum import IntEnum

from .framing import PROTOCOL_DATAGRAM, Frame, encode

DEFAULT_SELF_ADDRESS = 0x0020
BROADCAST_ADDRESS = 0x0000


class Command(IntEnum):
    """Datagram command codes."""

    DATA = 0x0100
    VALUE_REPLY = 0x0100
    SET_VALUE = 0x0200
    GET_VALUE = 0x0300
    OFFER_BUS = 0x0500
    RELEASE_BUS = 0x0600
    GET_VALUE_ID_HASH = 0x1000
    VALUE_ID_HASH_REPLY = 0x1001
    GET_VALUE_INDEX = 0x1100
    VALUE_INDEX_REPLY = 0x1101
    GET_CAPS1 = 0x1300
    CAPS1_REPLY = 0x1301
    BEGIN_BULK_VALUE = 0x1400
    BEGIN_BULK_VALUE_REPLY = 0x1401
    COMMIT_BULK_VALUE = 0x1402
    COMMIT_BULK_VALUE_REPLY = 0x1403
    ROLLBACK_BULK_VALUE = 0x1404
    ROLLBACK_BULK_VALUE_REPLY = 0x1405
    SET_BULK_VALUE = 0x1500
    SET_BULK_VALUE_REPLY = 0x1600


# Commands whose low byte is a value sub-index.
SUBINDEXED_COMMANDS = frozenset(
    {Command.VALUE_REPLY, Command.SET_VALUE, Command.GET_VALUE,
     Command.SET_BULK_VALUE, Command.SET_BULK_VALUE_REPLY}
)


def base_command(command: int) -> int:
    """Strip the sub-index from a sub-indexed command code."""
    if command & 0xFF00 in SUBINDEXED_COMMANDS:
        return command & 0xFF00
    return command


def value_id_hash(identifier: str) -> int:
    """Hash a value identifier the way controllers index them by name."""
    h = 0
    for c in identifier:
        h = (h * 0x21 + ord(c)) & 0x7FFFFFFF
    return h


def datagram(
    destination: int,
    command: int,
    param16: int = 0,
    param32: int = 0,
    source: int = DEFAULT_SELF_ADDRESS,
) -> Frame:
    """Build a datagram frame."""
    payload = (param16 & 0xFFFF).to_bytes(2, "little") + (param32 & 0xFFFFFFFF).to_bytes(
        4, "little"
    )
    return Frame(
        destination=destination,
        source=source,
        protocol_version=PROTOCOL_DATAGRAM,
        command=command,
        payload=payload,
    )


def build_command(
    destination: int,
    command: int,
    param16: int = 0,
    param32: int = 0,
    source: int = DEFAULT_SELF_ADDRESS,
) -> bytes:
    """Build the wire bytes of a single request datagram."""
    return encode(datagram(destination, command, param16, param32, source))


def _check_subindex(subindex: int) -> None:
    if not 0 <= subindex <= 0xFF:
        raise ValueError(f"Sub-index must be 0-255, got {subindex}")


def _check_index(index: int) -> None:
    if not -0x8000 <= index <= 0xFFFF:
        raise ValueError(f"Value index must fit 16 bits, got {index}")


def build_get_value(
    address: int, index: int, subindex: int = 0, source: int = DEFAULT_SELF_ADDRESS
) -> bytes:
    """Request the value stored at ``index``."""
    _check_index(index)
    _check_subindex(subindex)
    return build_command(address, Command.GET_VALUE | subindex, index, 0, source)


def build_set_value(
    address: int,
    index: int,
    value: int,
    subindex: int = 0,
    source: int = DEFAULT_SELF_ADDRESS,
) -> bytes:
    """Write a raw 32-bit value to ``index``."""
    _check_index(index)
    _check_subindex(subindex)
    if not -0x80000000 <= value <= 0xFFFFFFFF:
        raise ValueError(f"Raw value must fit 32 bits, got {value}")
    return build_command(address, Command.SET_VALUE | subindex, index, value, source)


def build_get_value_index(
    address: int, id_hash: int, source: int = DEFAULT_SELF_ADDRESS
) -> bytes:
    """Ask for the index of the value whose identifier hashes to ``id_hash``."""
    return build_command(address, Command.GET_VALUE_INDEX, 0, id_hash, source)


def build_get_value_id_hash(
    address: int, index: int, source: int = DEFAULT_SELF_ADDRESS
) -> bytes:
    _check_index(index)
    return build_command(address, Command.GET_VALUE_ID_HASH, index, 0, source)


def build_get_caps1(address: int, source: int = DEFAULT_SELF_ADDRESS) -> bytes:
    return build_command(address, Command.GET_CAPS1, source=source)


def build_release_bus(address: int, source: int = DEFAULT_SELF_ADDRESS) -> bytes:
    """Hand bus control back to the regular VBus master."""
    return build_command(address, Command.RELEASE_BUS, source=source)


def build_begin_bulk_value(
    address: int, timeout: int, source: int = DEFAULT_SELF_ADDRESS
) -> bytes:
    return build_command(address, Command.BEGIN_BULK_VALUE, 0, timeout, source)


def build_commit_bulk_value(address: int, source: int = DEFAULT_SELF_ADDRESS) -> bytes:
    return build_command(address, Command.COMMIT_BULK_VALUE, source=source)


def build_rollback_bulk_value(address: int, source: int = DEFAULT_SELF_ADDRESS) -> bytes:
    return build_command(address, Command.ROLLBACK_BULK_VALUE, source=source)


def build_set_bulk_value(
    address: int,
    index: int,
    value: int,
    subindex: int = 0,
    source: int = DEFAULT_SELF_ADDRESS,
) -> bytes:
    _check_index(index)
    _check_subindex(subindex)
    return build_command(address, Command.SET_BULK_VALUE | subindex, index, value, source)
