"""Correlated request/response transactions with controllers.

Every request is identified by a key of ``(address, index)``; requests
that do not address a value (index lookups, capability queries and bulk
value control) use ``(address, None)``. At most one request per key is on
the wire at any time; later requests for the same key wait in FIFO order
and are only transmitted once the previous one has completed, failed or
been cancelled. Requests for different keys run concurrently.

A reply only matches when it comes from the addressed controller and is
addressed to the request's own source address.

A request that gets no reply is retransmitted unchanged. Attempt ``n``
waits ``timeout + n * timeout_increment`` seconds; after ``max_retries``
retransmissions the transaction fails with :class:`TransactionTimeout`.

Usage::

    layer = TransactionLayer(transport.write)
    value = await layer.issue_get(0x7E11, 0x1234)
    ...
    layer.handle_packet(packet)  # for every packet read from the bus
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from enum import Enum

from .config import TransactionConfig
from .errors import TransactionCancelled, TransactionError, TransactionTimeout
from .protocol import commands
from .protocol.commands import Command
from .protocol.framing import Packet
from .protocol.parser import parse_value_index_reply, parse_value_reply

logger = logging.getLogger(__name__)

Key = tuple[int, int | None]


class TransactionKind(Enum):
    GET = "get"
    SET = "set"
    LOOKUP = "lookup"
    ID_HASH = "id_hash"
    CAPS1 = "caps1"
    BEGIN_BULK = "begin_bulk"
    COMMIT_BULK = "commit_bulk"
    ROLLBACK_BULK = "rollback_bulk"
    SET_BULK = "set_bulk"


# Kinds answered by one fixed reply command carrying the result in param32.
_FIXED_REPLIES = {
    TransactionKind.CAPS1: Command.CAPS1_REPLY,
    TransactionKind.BEGIN_BULK: Command.BEGIN_BULK_VALUE_REPLY,
    TransactionKind.COMMIT_BULK: Command.COMMIT_BULK_VALUE_REPLY,
    TransactionKind.ROLLBACK_BULK: Command.ROLLBACK_BULK_VALUE_REPLY,
}


@dataclass(eq=False)
class PendingTransaction:
    """One outstanding request and the future its caller waits on."""

    kind: TransactionKind
    address: int
    index: int | None
    request: bytes
    future: asyncio.Future
    source: int = commands.DEFAULT_SELF_ADDRESS
    subindex: int = 0
    id_hash: int | None = None
    owner: Hashable | None = None
    sent_at: float | None = None
    retries: int = 0

    @property
    def key(self) -> Key:
        return (self.address, self.index)

    def describe(self) -> str:
        if self.kind is TransactionKind.LOOKUP:
            return f"lookup 0x{self.id_hash:08X} @0x{self.address:04X}"
        if self.index is None:
            return f"{self.kind.value} @0x{self.address:04X}"
        return f"{self.kind.value} #{self.index}.{self.subindex} @0x{self.address:04X}"

    def reply_value(self, packet: Packet) -> int | None:
        """Return the value ``packet`` resolves this transaction with, if it matches."""
        if (
            not packet.is_datagram
            or packet.source != self.address
            or packet.destination != self.source
        ):
            return None
        kind = self.kind
        if kind in (TransactionKind.GET, TransactionKind.SET):
            reply = parse_value_reply(packet)
            if reply is not None and reply.subindex == self.subindex and reply.index == self.index:
                return reply.value
        elif kind is TransactionKind.LOOKUP:
            # Controllers without hash support answer with a plain value reply.
            lookup = parse_value_index_reply(packet)
            if lookup is not None and lookup.id_hash == self.id_hash:
                return lookup.index
        elif kind is TransactionKind.ID_HASH:
            if (
                packet.command in (Command.VALUE_REPLY, Command.VALUE_ID_HASH_REPLY)
                and packet.param16 == self.index
            ):
                return packet.param32
        elif kind is TransactionKind.SET_BULK:
            if (
                packet.command == Command.SET_BULK_VALUE_REPLY | self.subindex
                and packet.param16 == self.index
            ):
                return packet.param32
        elif packet.command == _FIXED_REPLIES[kind]:
            return packet.param32
        return None


class TransactionLayer:
    """Issue value and bus-control requests and match replies to them.

    Args:
        send: Coroutine function writing request bytes to the bus.
        config: Timeout and retry settings.
    """

    def __init__(
        self,
        send: Callable[[bytes], Awaitable[None]],
        config: TransactionConfig | None = None,
    ) -> None:
        self._send = send
        self.config = config or TransactionConfig()
        self._queues: dict[Key, deque[PendingTransaction]] = {}
        self._drivers: dict[Key, asyncio.Task] = {}

    @property
    def pending_count(self) -> int:
        return sum(len(q) for q in self._queues.values())

    def pending(self, key: Key) -> list[PendingTransaction]:
        return list(self._queues.get(key, ()))

    # ── issuing ──────────────────────────────────────────────────────

    def issue_get(
        self,
        address: int,
        index: int,
        subindex: int = 0,
        owner: Hashable | None = None,
        source: int | None = None,
    ) -> asyncio.Future[int]:
        """Queue a value read; the future resolves with the raw value."""
        source = self._source(source)
        request = commands.build_get_value(address, index, subindex, source)
        return self._enqueue(
            TransactionKind.GET, address, index, request, source, subindex, owner
        )

    def issue_set(
        self,
        address: int,
        index: int,
        raw_value: int,
        subindex: int = 0,
        owner: Hashable | None = None,
        source: int | None = None,
    ) -> asyncio.Future[int]:
        """Queue a value write; the future resolves with the value the controller stored."""
        source = self._source(source)
        request = commands.build_set_value(address, index, raw_value, subindex, source)
        return self._enqueue(
            TransactionKind.SET, address, index, request, source, subindex, owner
        )

    def issue_lookup(
        self,
        address: int,
        id_hash: int,
        owner: Hashable | None = None,
        source: int | None = None,
    ) -> asyncio.Future[int]:
        """Queue an index-by-id-hash lookup; the future resolves with the value index."""
        source = self._source(source)
        request = commands.build_get_value_index(address, id_hash, source)
        return self._enqueue(
            TransactionKind.LOOKUP, address, None, request, source,
            owner=owner, id_hash=id_hash,
        )

    def issue_id_hash(
        self,
        address: int,
        index: int,
        owner: Hashable | None = None,
        source: int | None = None,
    ) -> asyncio.Future[int]:
        """Queue an id-hash-by-index query; the future resolves with the id hash."""
        source = self._source(source)
        request = commands.build_get_value_id_hash(address, index, source)
        return self._enqueue(
            TransactionKind.ID_HASH, address, index, request, source, owner=owner
        )

    def issue_caps1(
        self, address: int, owner: Hashable | None = None, source: int | None = None
    ) -> asyncio.Future[int]:
        """Queue a capabilities query; the future resolves with the caps bit field."""
        source = self._source(source)
        request = commands.build_get_caps1(address, source)
        return self._enqueue(TransactionKind.CAPS1, address, None, request, source, owner=owner)

    def issue_begin_bulk(
        self,
        address: int,
        timeout: int,
        owner: Hashable | None = None,
        source: int | None = None,
    ) -> asyncio.Future[int]:
        """Open a bulk value transaction that the controller rolls back after ``timeout``."""
        source = self._source(source)
        request = commands.build_begin_bulk_value(address, timeout, source)
        return self._enqueue(
            TransactionKind.BEGIN_BULK, address, None, request, source, owner=owner
        )

    def issue_commit_bulk(
        self, address: int, owner: Hashable | None = None, source: int | None = None
    ) -> asyncio.Future[int]:
        source = self._source(source)
        request = commands.build_commit_bulk_value(address, source)
        return self._enqueue(
            TransactionKind.COMMIT_BULK, address, None, request, source, owner=owner
        )

    def issue_rollback_bulk(
        self, address: int, owner: Hashable | None = None, source: int | None = None
    ) -> asyncio.Future[int]:
        source = self._source(source)
        request = commands.build_rollback_bulk_value(address, source)
        return self._enqueue(
            TransactionKind.ROLLBACK_BULK, address, None, request, source, owner=owner
        )

    def issue_set_bulk(
        self,
        address: int,
        index: int,
        raw_value: int,
        subindex: int = 0,
        owner: Hashable | None = None,
        source: int | None = None,
    ) -> asyncio.Future[int]:
        """Queue a value write inside an open bulk value transaction."""
        source = self._source(source)
        request = commands.build_set_bulk_value(address, index, raw_value, subindex, source)
        return self._enqueue(
            TransactionKind.SET_BULK, address, index, request, source, subindex, owner
        )

    def _source(self, source: int | None) -> int:
        return self.config.self_address if source is None else source

    def _enqueue(
        self,
        kind: TransactionKind,
        address: int,
        index: int | None,
        request: bytes,
        source: int,
        subindex: int = 0,
        owner: Hashable | None = None,
        id_hash: int | None = None,
    ) -> asyncio.Future[int]:
        future = asyncio.get_running_loop().create_future()
        if index is not None and index >= 0x8000:
            # replies carry the index as a signed 16-bit parameter
            index -= 0x10000
        tx = PendingTransaction(
            kind=kind,
            address=address,
            index=index,
            request=request,
            future=future,
            source=source,
            subindex=subindex,
            id_hash=id_hash,
            owner=owner,
        )
        self._start(tx)
        return future

    def _start(self, tx: PendingTransaction) -> None:
        queue = self._queues.setdefault(tx.key, deque())
        queue.append(tx)
        if tx.key not in self._drivers:
            self._drivers[tx.key] = asyncio.create_task(
                self._drive(tx.key), name=f"transaction-{tx.key}"
            )
        elif len(queue) > 1:
            logger.debug("Queued %s behind %d request(s)", tx.describe(), len(queue) - 1)

    # ── driving ──────────────────────────────────────────────────────

    async def _drive(self, key: Key) -> None:
        queue = self._queues[key]
        try:
            while queue:
                tx = queue[0]
                if not tx.future.done():
                    try:
                        await self._run(tx)
                    except Exception as e:
                        if not tx.future.done():
                            tx.future.set_exception(e)
                queue.popleft()
        finally:
            if self._queues.get(key) is queue:
                del self._queues[key]
            for tx in queue:
                if not tx.future.done():
                    tx.future.set_exception(TransactionCancelled(f"{tx.describe()} cancelled"))
            self._drivers.pop(key, None)

    async def _run(self, tx: PendingTransaction) -> None:
        loop = asyncio.get_running_loop()
        for attempt in range(self.config.max_retries + 1):
            if tx.future.done():
                return
            tx.retries = attempt
            tx.sent_at = loop.time()
            await self._send(tx.request)
            timeout = self.config.timeout + attempt * self.config.timeout_increment
            done, _ = await asyncio.wait({tx.future}, timeout=timeout)
            if done:
                return
            if attempt < self.config.max_retries:
                logger.warning(
                    "No reply to %s after %.2fs, retrying", tx.describe(), timeout
                )
        tx.future.set_exception(
            TransactionTimeout(
                f"No reply to {tx.describe()} after {self.config.max_retries + 1} attempts"
            )
        )

    # ── replies ──────────────────────────────────────────────────────

    def handle_packet(self, packet: Packet) -> bool:
        """Complete the transaction ``packet`` answers.

        Only the head of each key's queue that has been transmitted can
        match. Packets answering nothing are ignored.

        Returns:
            True if a transaction was completed.
        """
        if not packet.is_datagram:
            return False
        for key in ((packet.source, packet.param16), (packet.source, None)):
            queue = self._queues.get(key)
            if not queue:
                continue
            tx = queue[0]
            if tx.sent_at is None or tx.future.done():
                continue
            value = tx.reply_value(packet)
            if value is None:
                continue
            logger.debug("%s -> %d", tx.describe(), value)
            tx.future.set_result(value)
            return True
        return False

    # ── cancellation ─────────────────────────────────────────────────

    def cancel_owner(self, owner: Hashable) -> int:
        """Fail every transaction of ``owner`` with :class:`TransactionCancelled`.

        Returns:
            Number of transactions cancelled.
        """
        count = 0
        for queue in self._queues.values():
            for tx in queue:
                if tx.owner == owner and not tx.future.done():
                    tx.future.set_exception(
                        TransactionCancelled(f"{tx.describe()} cancelled")
                    )
                    count += 1
        if count:
            logger.debug("Cancelled %d transaction(s) of %r", count, owner)
        return count

    def cancel_all(self, exc: TransactionError | None = None) -> int:
        """Fail every pending transaction with ``exc`` (default: TransactionCancelled)."""
        count = 0
        for queue in self._queues.values():
            for tx in queue:
                if not tx.future.done():
                    tx.future.set_exception(
                        exc or TransactionCancelled(f"{tx.describe()} cancelled")
                    )
                    count += 1
        return count

    async def close(self) -> None:
        """Cancel everything and wait for the driver tasks to finish."""
        self.cancel_all()
        drivers = list(self._drivers.values())
        for task in drivers:
            task.cancel()
        await asyncio.gather(*drivers, return_exceptions=True)
        self._queues.clear()
