"""TCP connection to a VBus-over-TCP endpoint or a raw socket bridge."""

from __future__ import annotations

import asyncio
import logging

from ..errors import TransportError
from .base import DEFAULT_READ_SIZE, StreamTransport

logger = logging.getLogger(__name__)

DEFAULT_VBUS_PORT = 7053
CONNECT_TIMEOUT = 10.0


class TcpConnection:
    """Outgoing TCP stream.

    Args:
        host: Remote host name or address.
        port: Remote TCP port.
        connect_timeout: Seconds to wait for the connection to be established.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_VBUS_PORT,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self.host = host
        self.port = port
        self._connect_timeout = connect_timeout
        self._stream: StreamTransport | None = None

    def __repr__(self) -> str:
        return f"TcpConnection({self.host!r}, {self.port})"

    @property
    def connected(self) -> bool:
        return self._stream is not None and not self._stream.closed

    @property
    def stream(self) -> StreamTransport:
        if self._stream is None:
            raise TransportError(f"Not connected to {self.host}:{self.port}")
        return self._stream

    async def open(self) -> StreamTransport:
        """Connect to the remote endpoint.

        Raises:
            TransportError: If the connection is refused or times out.
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise TransportError(
                f"Could not connect to {self.host}:{self.port}: {e or 'timed out'}"
            ) from e
        self._stream = StreamTransport(reader, writer, name=f"{self.host}:{self.port}")
        logger.info("Connected to %s:%d", self.host, self.port)
        return self._stream

    async def read(self, max_bytes: int = DEFAULT_READ_SIZE) -> bytes:
        return await self.stream.read(max_bytes)

    async def readline(self) -> bytes:
        return await self.stream.readline()

    async def write(self, data: bytes) -> None:
        await self.stream.write(data)

    async def close(self) -> None:
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        await stream.close()
        logger.info("Disconnected from %s:%d", self.host, self.port)
