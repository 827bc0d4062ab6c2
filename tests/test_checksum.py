"""Tests for the VBus checksum and septet helpers."""

import pytest

from vbus_bridge.utils.checksum import checksum, extract_septet, has_msb, inject_septet


def test_checksum_empty():
    """Checksum of no bytes is the initial value."""
    assert checksum(b"") == 0x7F


def test_checksum_known_header():
    """Checksum of a captured GET_VALUE datagram body."""
    body = bytes.fromhex("117e200020560334120000000000")
    assert checksum(body) == 0x11


def test_checksum_stays_seven_bit():
    assert checksum(bytes(range(128))) <= 0x7F


def test_block_with_checksum_sums_to_seven_f():
    """Appending the checksum makes the whole block check to zero difference."""
    body = bytes.fromhex("1000117e10000100")
    crc = checksum(body)
    assert crc == 0x4F
    assert (sum(body) + crc) & 0x7F == 0x7F


def test_inject_septet_collects_msbs():
    body, septet = inject_septet(bytes([0x34, 0x12, 0xDE, 0xBC, 0x9A, 0x78]))
    assert body == bytes([0x34, 0x12, 0x5E, 0x3C, 0x1A, 0x78])
    assert septet == 0x1C


def test_extract_septet_restores_msbs():
    assert extract_septet(bytes([0x5E, 0x3C, 0x1A]), 0x07) == bytes([0xDE, 0xBC, 0x9A])


def test_inject_rejects_long_groups():
    with pytest.raises(ValueError):
        inject_septet(bytes(8))


def test_has_msb():
    assert has_msb(b"\x00\x7f") == -1
    assert has_msb(b"\x00\x80\xaa") == 1
