"""VBus checksum and septet (bit-stuffing) helpers.

Every byte transmitted after the ``0xAA`` sync marker must have its most
significant bit cleared. Data bytes that carry an MSB are transmitted with
the bit removed; the removed bits are collected into a trailing *septet*
byte where bit ``i`` belongs to data byte ``i``.
"""

from __future__ import annotations


def checksum(data: bytes) -> int:
    """Compute the 7-bit VBus checksum over ``data``.

    The checksum starts at ``0x7F`` and subtracts every byte, keeping the
    lower seven bits.
    """
    crc = 0x7F
    for b in data:
        crc = (crc - b) & 0x7F
    return crc


def inject_septet(data: bytes) -> tuple[bytes, int]:
    """Strip the MSB from every byte and collect it into a septet byte.

    Returns:
        The 7-bit-clean bytes and the septet.
    """
    if len(data) > 7:
        raise ValueError(f"Septet groups hold at most 7 bytes, got {len(data)}")
    septet = 0
    out = bytearray(len(data))
    for i, b in enumerate(data):
        if b & 0x80:
            septet |= 1 << i
        out[i] = b & 0x7F
    return bytes(out), septet


def extract_septet(data: bytes, septet: int) -> bytes:
    """Restore the MSBs recorded in ``septet`` into ``data``."""
    out = bytearray(data)
    for i in range(len(out)):
        if septet & (1 << i):
            out[i] |= 0x80
    return bytes(out)


def has_msb(data: bytes) -> int:
    """Return the offset of the first byte with its MSB set, or -1."""
    for i, b in enumerate(data):
        if b & 0x80:
            return i
    return -1
