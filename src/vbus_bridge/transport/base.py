"""Transport adapter contract and the asyncio stream implementation.

Every backend (serial port, TCP socket) exposes the same small surface: an
asynchronous ``read``/``write`` pair and ``close``. A closed or failed
stream is always reported as :class:`~vbus_bridge.errors.TransportError`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from ..errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_READ_SIZE = 4096


class TransportAdapter(Protocol):
    """An open, asynchronous byte stream."""

    async def read(self, max_bytes: int = DEFAULT_READ_SIZE) -> bytes: ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


class StreamTransport:
    """:class:`TransportAdapter` over an asyncio ``StreamReader``/``StreamWriter`` pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        name: str = "",
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False
        self.name = name or str(writer.get_extra_info("peername") or "stream")

    def __repr__(self) -> str:
        return f"StreamTransport({self.name!r})"

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, max_bytes: int = DEFAULT_READ_SIZE) -> bytes:
        """Read up to ``max_bytes``; never returns an empty result.

        Raises:
            TransportError: If the stream is closed or fails.
        """
        if self._closed:
            raise TransportError(f"{self.name} is closed")
        try:
            data = await self._reader.read(max_bytes)
        except (OSError, asyncio.IncompleteReadError) as e:
            self._closed = True
            raise TransportError(f"Read from {self.name} failed: {e}") from e
        if not data:
            self._closed = True
            raise TransportError(f"{self.name} closed by peer")
        return data

    async def readline(self) -> bytes:
        """Read one ``\\n`` terminated line (used during handshakes)."""
        if self._closed:
            raise TransportError(f"{self.name} is closed")
        try:
            line = await self._reader.readline()
        except (OSError, ValueError) as e:
            self._closed = True
            raise TransportError(f"Read from {self.name} failed: {e}") from e
        if not line.endswith(b"\n"):
            self._closed = True
            raise TransportError(f"{self.name} closed by peer")
        return line

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise TransportError(f"{self.name} is closed")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, RuntimeError) as e:
            self._closed = True
            raise TransportError(f"Write to {self.name} failed: {e}") from e

    async def close(self) -> None:
        if self._closed and self._writer.is_closing():
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as e:
            logger.debug("Error closing %s: %s", self.name, e)
