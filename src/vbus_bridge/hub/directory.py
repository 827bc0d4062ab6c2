"""Via-tag resolution for ``CONNECT`` requests."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol


class Directory(Protocol):
    def resolve(self, via_tag: str) -> int | None: ...


class StaticDirectory:
    """Fixed mapping of via tags to VBus addresses; tags are case-insensitive."""

    def __init__(self, entries: Mapping[str, int] | None = None) -> None:
        self._entries: dict[str, int] = {}
        for tag, address in (entries or {}).items():
            self.add(tag, address)

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, via_tag: str, address: int) -> None:
        if not 0 <= address <= 0x7F7F:
            raise ValueError(f"Address 0x{address:X} for {via_tag!r} out of range")
        self._entries[via_tag.lower()] = address

    def resolve(self, via_tag: str) -> int | None:
        return self._entries.get(via_tag.lower())
