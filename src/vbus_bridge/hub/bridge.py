"""Single-upstream, multi-client VBus bridge.

The hub owns the upstream transport (usually a serial adapter) and a
registry of TCP sessions. One decode loop reads upstream bytes, reassembles
packets and offers each packet to every streaming session without ever
waiting on a client: a session whose queue is full is evicted.

Value reads and writes sent by clients are serialized through the hub's
:class:`~vbus_bridge.transaction.TransactionLayer`, so concurrent clients
never have two requests for the same value on the bus at once. All other
client traffic is forwarded upstream unchanged.

When the upstream fails the hub reconnects with exponential backoff while
sessions stay open. Once ``reconnect_attempts`` are exhausted the error is
fatal: the listener and all sessions are closed and :meth:`BridgeHub.wait_closed`
raises it.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace

from ..config import BridgeConfig, TransactionConfig
from ..errors import TransactionCancelled, TransactionError, TransportError
from ..protocol.assembler import TelegramAssembler
from ..protocol.commands import Command, base_command
from ..protocol.framing import Packet
from ..transaction import TransactionLayer
from ..transport import open_transport
from ..transport.base import StreamTransport, TransportAdapter
from .directory import Directory
from .session import Session

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], Awaitable[TransportAdapter]]


class BridgeHub:
    """Fan packets from one upstream transport out to many TCP sessions.

    Args:
        transport_factory: Coroutine function opening the upstream transport;
            called again for every reconnect.
        config: Listener, login, queue and reconnect settings.
        transaction_config: Timing of client value requests.
        directory: Resolves via tags of ``CONNECT`` requests.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        config: BridgeConfig | None = None,
        transaction_config: TransactionConfig | None = None,
        directory: Directory | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self._factory = transport_factory
        self._directory = directory
        self._upstream: TransportAdapter | None = None
        self._sessions: dict[int, Session] = {}
        self._ids = itertools.count(1)
        self._assembler = TelegramAssembler(channel=0)
        self.transactions = TransactionLayer(self._write_upstream, transaction_config)
        self._server: asyncio.Server | None = None
        self._loop_task: asyncio.Task | None = None
        self._stopping = False
        self._closed = asyncio.Event()
        self._fatal: TransportError | None = None
        self.evictions = 0
        self.reconnects = 0

    # ── registry ─────────────────────────────────────────────────────

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def session(self, session_id: int) -> Session | None:
        return self._sessions.get(session_id)

    @property
    def port(self) -> int:
        """The TCP port actually bound (useful when configured as 0)."""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Bridge is not listening")
        return self._server.sockets[0].getsockname()[1]

    @property
    def upstream_connected(self) -> bool:
        return self._upstream is not None

    def unregister(self, session: Session) -> None:
        if self._sessions.pop(session.id, None) is not None:
            self.transactions.cancel_owner(session.id)
            logger.debug("Session %d unregistered (%d left)", session.id, len(self._sessions))

    def stats(self) -> dict:
        return {
            "sessions": len(self._sessions),
            "streaming": sum(1 for s in self._sessions.values() if s.streaming),
            "upstream_connected": self.upstream_connected,
            "packets": self._assembler.packets,
            "framing_errors": self._assembler.framing_errors,
            "evictions": self.evictions,
            "reconnects": self.reconnects,
            "pending_transactions": self.transactions.pending_count,
        }

    # ── lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Open the upstream, start listening and start the decode loop.

        Raises:
            TransportError: If the upstream cannot be opened.
            OSError: If the listening socket cannot be bound.
        """
        self._upstream = await self._factory()
        try:
            self._server = await asyncio.start_server(
                self._accept, self.config.host, self.config.port
            )
        except OSError:
            await self._close_upstream()
            raise
        self._loop_task = asyncio.create_task(self._run(), name="bridge-decode-loop")
        logger.info("Bridge listening on %s:%d", self.config.host, self.port)

    async def stop(self) -> None:
        """Shut the bridge down gracefully."""
        if self._stopping:
            await self._closed.wait()
            return
        if self._loop_task is not None and self._loop_task is not asyncio.current_task():
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
        await self._shutdown()

    async def wait_closed(self) -> None:
        """Wait until the bridge has stopped.

        Raises:
            TransportError: If the bridge stopped because the upstream was lost for good.
        """
        await self._closed.wait()
        if self._fatal is not None:
            raise self._fatal

    async def __aenter__(self) -> BridgeHub:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _shutdown(self) -> None:
        if self._stopping:
            await self._closed.wait()
            return
        self._stopping = True
        if self._server is not None:
            self._server.close()
        if self._fatal is not None:
            self.transactions.cancel_all(TransactionError(f"Bridge stopped: {self._fatal}"))
        else:
            self.transactions.cancel_all(TransactionCancelled("Bridge stopped"))
        await self.transactions.close()
        await asyncio.gather(*(s.close() for s in self.sessions), return_exceptions=True)
        await self._close_upstream()
        if self._server is not None:
            await self._server.wait_closed()
        self._closed.set()
        logger.info("Bridge stopped")

    # ── downstream ───────────────────────────────────────────────────

    async def _accept(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        session = Session(
            next(self._ids),
            StreamTransport(reader, writer),
            self,
            self.config,
            self._directory,
        )
        if self._stopping:
            await session.close()
            return
        self._sessions[session.id] = session
        logger.info("Session %d accepted from %s", session.id, session.peer)
        await session.run()

    async def submit(self, session: Session, packet: Packet) -> None:
        """Handle a packet sent by a client."""
        if packet.is_datagram and base_command(packet.command) in (
            Command.GET_VALUE,
            Command.SET_VALUE,
        ):
            self._route_transaction(session, packet)
            return
        try:
            await self._write_upstream(packet.to_bytes())
        except TransportError as e:
            logger.warning("Dropped %r from session %d: %s", packet, session.id, e)

    def _route_transaction(self, session: Session, packet: Packet) -> None:
        subindex = packet.command & 0xFF
        if base_command(packet.command) == Command.GET_VALUE:
            future = self.transactions.issue_get(
                packet.destination, packet.param16, subindex,
                owner=session.id, source=packet.source,
            )
        else:
            future = self.transactions.issue_set(
                packet.destination, packet.param16, packet.param32, subindex,
                owner=session.id, source=packet.source,
            )
        future.add_done_callback(self._log_transaction_result)

    @staticmethod
    def _log_transaction_result(future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None and not isinstance(exc, TransactionCancelled):
            logger.warning("Client request failed: %s", exc)

    # ── upstream ─────────────────────────────────────────────────────

    async def _write_upstream(self, data: bytes) -> None:
        if self._upstream is None:
            raise TransportError("Upstream not connected")
        await self._upstream.write(data)

    def dispatch(self, data: bytes) -> None:
        """Decode upstream bytes and fan the resulting packets out."""
        self._assembler.feed(data)
        for packet in self._assembler:
            self.transactions.handle_packet(packet)
            self._fan_out(packet)

    def _fan_out(self, packet: Packet) -> None:
        for session in list(self._sessions.values()):
            if not session.offer(packet):
                self._evict(session)

    def _evict(self, session: Session) -> None:
        self.evictions += 1
        logger.warning(
            "Evicting session %d (%s): queue full (%d packets)",
            session.id,
            session.peer,
            session.queue.maxsize,
        )
        session.abort()

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await self._pump()
                except TransportError as e:
                    logger.warning("Upstream lost: %s", e)
                    await self._close_upstream()
                    await self._reconnect()
        except TransportError as e:
            self._fatal = e
            logger.error("Bridge giving up: %s", e)
            await self._shutdown()

    async def _pump(self) -> None:
        while True:
            data = await self._upstream.read(self.config.read_size)
            self.dispatch(data)

    async def _reconnect(self) -> None:
        self._assembler.reset()
        attempts = self.config.reconnect_attempts
        for attempt in range(attempts):
            delay = self.config.reconnect_delay(attempt)
            logger.info(
                "Reconnecting upstream in %.1fs (attempt %d/%d)", delay, attempt + 1, attempts
            )
            await asyncio.sleep(delay)
            try:
                self._upstream = await self._factory()
            except TransportError as e:
                logger.warning("Reconnect attempt %d failed: %s", attempt + 1, e)
                continue
            self.reconnects += 1
            logger.info("Upstream reconnected")
            return
        raise TransportError(f"Upstream unavailable after {attempts} reconnect attempts")

    async def _close_upstream(self) -> None:
        upstream, self._upstream = self._upstream, None
        if upstream is None:
            return
        try:
            await upstream.close()
        except TransportError as e:
            logger.debug("Error closing upstream: %s", e)


async def start_bridge(
    transport_spec: str,
    tcp_port: int,
    credential: str,
    config: BridgeConfig | None = None,
    transaction_config: TransactionConfig | None = None,
    directory: Directory | None = None,
) -> BridgeHub:
    """Open ``transport_spec`` and serve it on ``tcp_port``.

    Args:
        transport_spec: ``serial:<path>[?baudrate=N]``, a device path or ``tcp://host:port``.
        tcp_port: Listening port (0 picks a free one).
        credential: Password clients must send with ``PASS``.
        config: Further bridge settings; ``port`` and ``password`` are overridden.

    Returns:
        The running hub.
    """
    config = replace(config or BridgeConfig(), port=tcp_port, password=credential)

    async def factory() -> TransportAdapter:
        return await open_transport(transport_spec)

    hub = BridgeHub(factory, config, transaction_config, directory)
    await hub.start()
    return hub
