"""One downstream TCP client of the bridge.

A session first runs the login handshake (see
:mod:`vbus_bridge.transport.handshake`) and then becomes a raw duplex
pipe: packets fanned out by the hub are written to the client, and
packets the client sends are handed back to the hub.

States::

    AWAITING_LOGIN --PASS ok--> CHANNEL_SELECT --DATA--> STREAMING
          |                       |     ^                   |
          |                       +-----+ CHANNEL n         |
          +-----------------------+-------------------------+--> CLOSED

Any negative reply, ``QUIT``, a handshake timeout or a transport error
moves the session to CLOSED, which is final.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from enum import Enum
from typing import Protocol

from ..config import BridgeConfig
from ..errors import TransportError
from ..protocol.assembler import TelegramAssembler
from ..protocol.framing import Packet
from ..transport.base import StreamTransport
from ..transport.handshake import HELLO, OK, HandshakeCommand, error_reply, parse_command
from .directory import Directory

logger = logging.getLogger(__name__)


class SessionState(Enum):
    AWAITING_LOGIN = "awaiting_login"
    CHANNEL_SELECT = "channel_select"
    STREAMING = "streaming"
    CLOSED = "closed"


class SessionHost(Protocol):
    """The parts of the hub a session talks to."""

    async def submit(self, session: Session, packet: Packet) -> None: ...

    def unregister(self, session: Session) -> None: ...


class Session:
    """Handshake state machine and streaming pumps of one TCP client.

    Args:
        session_id: Opaque id assigned by the hub.
        transport: The accepted client connection.
        host: The hub (not owned by the session).
        config: Login and queue settings.
        directory: Resolves ``CONNECT`` via tags; ``None`` rejects them.
    """

    def __init__(
        self,
        session_id: int,
        transport: StreamTransport,
        host: SessionHost,
        config: BridgeConfig,
        directory: Directory | None = None,
    ) -> None:
        self.id = session_id
        self.state = SessionState.AWAITING_LOGIN
        self.channel = 0
        self.via_address: int | None = None
        self.queue: asyncio.Queue[Packet] = asyncio.Queue(maxsize=config.queue_size)
        self._transport = transport
        self._host = host
        self._config = config
        self._directory = directory
        self._tasks: list[asyncio.Task] = []
        self._closed = False

    def __repr__(self) -> str:
        return f"Session({self.id}, {self.state.value}, peer={self._transport.name})"

    @property
    def peer(self) -> str:
        return self._transport.name

    @property
    def streaming(self) -> bool:
        return self.state is SessionState.STREAMING

    # ── handshake transitions ────────────────────────────────────────

    def handle_line(self, line: bytes) -> bytes:
        """Apply one handshake line and return the reply to send."""
        if self.state in (SessionState.STREAMING, SessionState.CLOSED):
            raise RuntimeError(f"Session {self.id} is not in handshake ({self.state.value})")
        try:
            command = parse_command(line)
        except ValueError as e:
            return self._reject(str(e))
        handler = getattr(self, f"_on_{command.name.lower()}", None)
        if handler is None:
            return self._reject(f"Unknown command {command.name}")
        return handler(command)

    def _reject(self, message: str) -> bytes:
        logger.warning("Session %d (%s): rejected: %s", self.id, self.peer, message)
        self.state = SessionState.CLOSED
        return error_reply(message)

    def _on_connect(self, command: HandshakeCommand) -> bytes:
        if not command.argument:
            return self._reject("Expected argument")
        if self._directory is None:
            return self._reject("Via tags not supported")
        address = self._directory.resolve(command.argument)
        if address is None:
            return self._reject(f"Unknown via tag {command.argument}")
        self.via_address = address
        return OK

    def _on_pass(self, command: HandshakeCommand) -> bytes:
        if self.state is not SessionState.AWAITING_LOGIN:
            return self._reject("Already authenticated")
        if not command.argument:
            return self._reject("Expected argument")
        if not hmac.compare_digest(
            command.argument.encode("utf-8"), self._config.password.encode("utf-8")
        ):
            return self._reject("Invalid password")
        self.state = SessionState.CHANNEL_SELECT
        return OK

    def _on_channel(self, command: HandshakeCommand) -> bytes:
        if self.state is not SessionState.CHANNEL_SELECT:
            return self._reject("Not authenticated")
        try:
            channel = int(command.argument)
        except ValueError:
            return self._reject("Expected 8 bit number argument")
        if not 0 <= channel < self._config.channel_count:
            return self._reject(f"Unknown channel {channel}")
        self.channel = channel
        return OK

    def _on_data(self, command: HandshakeCommand) -> bytes:
        if self.state is not SessionState.CHANNEL_SELECT:
            return self._reject("Not authenticated")
        if command.argument:
            return self._reject("Unexpected argument")
        self.state = SessionState.STREAMING
        return OK

    def _on_quit(self, command: HandshakeCommand) -> bytes:
        self.state = SessionState.CLOSED
        return OK

    # ── fan-out ──────────────────────────────────────────────────────

    def accepts(self, packet: Packet) -> bool:
        """Whether ``packet`` belongs to this session's channel and device."""
        if packet.channel != self.channel:
            return False
        if self.via_address is None:
            return True
        return self.via_address in (packet.source, packet.destination)

    def offer(self, packet: Packet) -> bool:
        """Queue ``packet`` for the client without blocking.

        Returns:
            False if the queue is full and the session must be evicted.
        """
        if not self.streaming or not self.accepts(packet):
            return True
        try:
            self.queue.put_nowait(packet)
        except asyncio.QueueFull:
            return False
        return True

    def abort(self) -> None:
        """Stop streaming; :meth:`run` then closes the session."""
        self.state = SessionState.CLOSED
        for task in self._tasks:
            task.cancel()

    # ── lifecycle ────────────────────────────────────────────────────

    async def run(self) -> None:
        """Drive the session until it closes."""
        try:
            await self._transport.write(HELLO)
            await asyncio.wait_for(self._handshake(), timeout=self._config.handshake_timeout)
            if self.streaming:
                logger.info(
                    "Session %d (%s): streaming channel %d", self.id, self.peer, self.channel
                )
                await self._stream()
        except asyncio.TimeoutError:
            logger.warning("Session %d (%s): handshake timed out", self.id, self.peer)
        except TransportError as e:
            logger.info("Session %d (%s): %s", self.id, self.peer, e)
        finally:
            await self.close()

    async def _handshake(self) -> None:
        while self.state in (SessionState.AWAITING_LOGIN, SessionState.CHANNEL_SELECT):
            line = await self._transport.readline()
            await self._transport.write(self.handle_line(line))

    async def _stream(self) -> None:
        self._tasks = [
            asyncio.create_task(self._write_loop(), name=f"session-{self.id}-writer"),
            asyncio.create_task(self._read_loop(), name=f"session-{self.id}-reader"),
        ]
        done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def _write_loop(self) -> None:
        while True:
            packet = await self.queue.get()
            await self._transport.write(packet.to_bytes())

    async def _read_loop(self) -> None:
        assembler = TelegramAssembler(channel=self.channel)
        while True:
            assembler.feed(await self._transport.read(self._config.read_size))
            for packet in assembler:
                await self._host.submit(self, packet)

    async def close(self) -> None:
        """Cancel the pumps, drop queued packets and release the connection."""
        if self._closed:
            return
        self._closed = True
        self.state = SessionState.CLOSED
        current = asyncio.current_task()
        pumps = [t for t in self._tasks if t is not current]
        for task in pumps:
            task.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)
        while not self.queue.empty():
            self.queue.get_nowait()
        self._host.unregister(self)
        await self._transport.close()
        logger.info("Session %d (%s) closed", self.id, self.peer)
