"""Asynchronous VBus-over-TCP client.

Connects to a bridge (or a DL2/DL3/KM2 data logger), logs in and then
offers packet waiters and value transactions on top of the live stream.

Usage::

    async with VBusClient("192.168.1.10", password="vbus") as client:
        address = await client.wait_for_free_bus()
        changeset = await client.read_changeset(address)
        value = await client.get_value(address, 0x1234)
        await client.release_bus(address)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .config import TransactionConfig
from .errors import TransactionError, TransactionTimeout, TransportError
from .protocol.assembler import TelegramAssembler
from .protocol.commands import build_release_bus
from .protocol.framing import Packet
from .protocol.parser import parse_bus_offer, parse_response
from .transaction import TransactionLayer
from .transport.handshake import client_handshake
from .transport.tcp_connection import DEFAULT_VBUS_PORT, TcpConnection

logger = logging.getLogger(__name__)

FREE_BUS_TIMEOUT = 20.0

PacketPredicate = Callable[[Packet], bool]


class VBusClient:
    """Logged-in connection to a VBus-over-TCP endpoint.

    Args:
        host: Host name or address of the bridge.
        port: TCP port of the bridge.
        password: Login password.
        via_tag: Optional via tag for relayed devices.
        channel: Optional channel on multi-channel bridges.
        config: Timing of value transactions; its ``self_address`` is the
            source address of every request.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_VBUS_PORT,
        password: str = "vbus",
        via_tag: str | None = None,
        channel: int | None = None,
        config: TransactionConfig | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self._password = password
        self._via_tag = via_tag
        self._channel = channel
        self.config = config or TransactionConfig()
        self._conn: TcpConnection | None = None
        self._assembler = TelegramAssembler(channel=channel or 0)
        self._waiters: list[tuple[PacketPredicate, asyncio.Future]] = []
        self._reader: asyncio.Task | None = None
        self._error: TransportError | None = None
        self.transactions: TransactionLayer | None = None

    def __repr__(self) -> str:
        return f"VBusClient({self.host!r}, {self.port})"

    @property
    def connected(self) -> bool:
        return self._reader is not None and not self._reader.done()

    async def __aenter__(self) -> VBusClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the connection, log in and start reading.

        Raises:
            TransportError: If the connection fails.
            AuthError: If the login is rejected.
        """
        conn = TcpConnection(self.host, self.port)
        await conn.open()
        try:
            await client_handshake(conn, self._password, self._via_tag, self._channel)
        except BaseException:
            await conn.close()
            raise
        self._conn = conn
        self._error = None
        self.transactions = TransactionLayer(conn.write, self.config)
        self._reader = asyncio.create_task(self._read_loop(), name=f"vbus-client-{self.host}")

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        if self.transactions is not None:
            await self.transactions.close()
        self._fail_waiters(TransactionError("Client closed"))
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # ── stream ───────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        try:
            while True:
                self._assembler.feed(await self._conn.read())
                for packet in self._assembler:
                    self._dispatch(packet)
        except TransportError as e:
            logger.info("Connection to %s lost: %s", self.host, e)
            self._error = e
            self.transactions.cancel_all(TransactionError(f"Connection lost: {e}"))
            self._fail_waiters(TransactionError(f"Connection lost: {e}"))

    def _dispatch(self, packet: Packet) -> None:
        logger.debug("< %r", parse_response(packet))
        self.transactions.handle_packet(packet)
        for predicate, future in list(self._waiters):
            if not future.done() and predicate(packet):
                future.set_result(packet)

    def _fail_waiters(self, exc: Exception) -> None:
        for _, future in self._waiters:
            if not future.done():
                future.set_exception(exc)
        self._waiters.clear()

    def _require_connection(self) -> TransactionLayer:
        if self._error is not None:
            raise TransactionError(f"Connection lost: {self._error}")
        if self.transactions is None or self._conn is None:
            raise TransactionError("Not connected")
        return self.transactions

    # ── waiting ──────────────────────────────────────────────────────

    async def wait_for_packet(self, predicate: PacketPredicate, timeout: float) -> Packet:
        """Wait for the next packet matching ``predicate``.

        Raises:
            TransactionTimeout: If no such packet arrives within ``timeout`` seconds.
        """
        self._require_connection()
        future = asyncio.get_running_loop().create_future()
        waiter = (predicate, future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise TransactionTimeout(f"No matching packet within {timeout}s") from None
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    async def wait_for_free_bus(self, timeout: float = FREE_BUS_TIMEOUT) -> int:
        """Wait for a controller to offer the bus and return its address."""
        packet = await self.wait_for_packet(
            lambda p: parse_bus_offer(p) is not None, timeout
        )
        logger.info("Bus offered by 0x%04X", packet.source)
        return packet.source

    async def release_bus(self, address: int) -> Packet:
        """Hand the bus back and wait for the next live data packet.

        Raises:
            TransactionTimeout: If the bus stays silent after all retries.
        """
        self._require_connection()
        request = build_release_bus(address, self.config.self_address)
        for attempt in range(self.config.max_retries + 1):
            await self._conn.write(request)
            timeout = self.config.timeout + attempt * self.config.timeout_increment
            try:
                return await self.wait_for_packet(lambda p: not p.is_datagram, timeout)
            except TransactionTimeout:
                logger.warning("No traffic after releasing bus of 0x%04X, retrying", address)
        raise TransactionTimeout(f"Bus of 0x{address:04X} stayed silent after release")

    # ── values ───────────────────────────────────────────────────────

    async def get_value(self, address: int, index: int, subindex: int = 0) -> int:
        return await self._require_connection().issue_get(address, index, subindex)

    async def set_value(
        self, address: int, index: int, raw_value: int, subindex: int = 0
    ) -> int:
        return await self._require_connection().issue_set(address, index, raw_value, subindex)

    async def lookup_index(self, address: int, id_hash: int) -> int:
        """Resolve a value id hash to its index on the controller."""
        return await self._require_connection().issue_lookup(address, id_hash)

    async def read_changeset(self, address: int) -> int:
        """Read the parameter changeset id (value index 0)."""
        return await self.get_value(address, 0)

    async def get_value_id_hash(self, address: int, index: int) -> int:
        """Return the id hash of the value at ``index``."""
        return await self._require_connection().issue_id_hash(address, index)

    async def get_caps1(self, address: int) -> int:
        return await self._require_connection().issue_caps1(address)

    # ── bulk values ──────────────────────────────────────────────────

    async def begin_bulk_value(self, address: int, timeout: int) -> int:
        """Start a bulk value transaction.

        Values written with :meth:`set_bulk_value` only take effect on
        :meth:`commit_bulk_value`; the controller rolls them back on its own
        once ``timeout`` expires.
        """
        return await self._require_connection().issue_begin_bulk(address, timeout)

    async def commit_bulk_value(self, address: int) -> int:
        return await self._require_connection().issue_commit_bulk(address)

    async def rollback_bulk_value(self, address: int) -> int:
        return await self._require_connection().issue_rollback_bulk(address)

    async def set_bulk_value(
        self, address: int, index: int, raw_value: int, subindex: int = 0
    ) -> int:
        return await self._require_connection().issue_set_bulk(
            address, index, raw_value, subindex
        )
