"""Shared fakes for transport-level tests."""

from __future__ import annotations

import asyncio

import pytest

from vbus_bridge.errors import TransportError
from vbus_bridge.protocol import commands
from vbus_bridge.protocol.commands import Command
from vbus_bridge.protocol.framing import Frame, decode, encode

CONTROLLER_ADDRESS = 0x7E11


class FakeTransport:
    """In-memory upstream: tests push bytes in, writes are recorded."""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.written: list[bytes] = []
        self.closed = False

    async def read(self, max_bytes: int = 4096) -> bytes:
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise TransportError("fake transport closed")
        self.written.append(bytes(data))
        self.on_write(bytes(data))

    async def close(self) -> None:
        self.closed = True

    def on_write(self, data: bytes) -> None:
        pass

    def feed(self, data: bytes) -> None:
        self.incoming.put_nowait(data)

    def fail(self, message: str = "adapter unplugged") -> None:
        self.incoming.put_nowait(TransportError(message))


class FakeController(FakeTransport):
    """Upstream that answers value requests like a controller would."""

    def __init__(self, address: int = CONTROLLER_ADDRESS, changeset: int = 0x1234ABCD) -> None:
        super().__init__()
        self.address = address
        self.values: dict[int, int] = {0: changeset}
        self.hashes: dict[int, int] = {}
        self.caps1 = 0x00000003
        self.bulk: dict[int, int] | None = None

    def _reply(self, destination: int, command: int, param16: int, param32: int) -> None:
        self.feed(
            commands.build_command(destination, command, param16, param32, source=self.address)
        )

    def on_write(self, data: bytes) -> None:
        frame = decode(data)
        if frame.destination != self.address:
            return
        index = int.from_bytes(frame.payload[0:2], "little", signed=True)
        value = int.from_bytes(frame.payload[2:6], "little", signed=True)
        base = frame.command & 0xFF00
        subindex = frame.command & 0xFF
        if base == Command.GET_VALUE:
            self._reply(frame.source, Command.VALUE_REPLY | subindex, index, self.values.get(index, 0))
        elif base == Command.SET_VALUE:
            self.values[index] = value
            self._reply(frame.source, Command.VALUE_REPLY | subindex, index, value)
        elif frame.command == Command.GET_VALUE_INDEX and value in self.hashes:
            self._reply(frame.source, Command.VALUE_INDEX_REPLY, self.hashes[value], value)
        elif frame.command == Command.GET_VALUE_ID_HASH:
            id_hash = next((h for h, i in self.hashes.items() if i == index), 0)
            self._reply(frame.source, Command.VALUE_ID_HASH_REPLY, index, id_hash)
        elif frame.command == Command.GET_CAPS1:
            self._reply(frame.source, Command.CAPS1_REPLY, 0, self.caps1)
        elif frame.command == Command.BEGIN_BULK_VALUE:
            self.bulk = {}
            self._reply(frame.source, Command.BEGIN_BULK_VALUE_REPLY, 0, value)
        elif base == Command.SET_BULK_VALUE and self.bulk is not None:
            self.bulk[index] = value
            self._reply(frame.source, Command.SET_BULK_VALUE_REPLY | subindex, index, value)
        elif frame.command == Command.COMMIT_BULK_VALUE:
            self.values.update(self.bulk or {})
            self.bulk = None
            self._reply(frame.source, Command.COMMIT_BULK_VALUE_REPLY, 0, 0)
        elif frame.command == Command.ROLLBACK_BULK_VALUE:
            self.bulk = None
            self._reply(frame.source, Command.ROLLBACK_BULK_VALUE_REPLY, 0, 0)
        elif frame.command == Command.RELEASE_BUS:
            self.feed(data_packet(self.address))

    def offer_bus(self) -> None:
        self.feed(commands.build_command(0x0000, Command.OFFER_BUS, source=self.address))


class FakeStream:
    """Stand-in for a client connection in synchronous session tests."""

    name = "fake-peer"
    closed = False

    async def close(self) -> None:
        self.closed = True


class FakeHost:
    def __init__(self) -> None:
        self.submitted = []
        self.unregistered = []

    async def submit(self, session, packet) -> None:
        self.submitted.append(packet)

    def unregister(self, session) -> None:
        self.unregistered.append(session.id)


def data_packet(source: int = CONTROLLER_ADDRESS, payload: bytes = bytes(8)) -> bytes:
    """Encoded live data packet (protocol 0x10) from ``source``."""
    return encode(
        Frame(destination=0x0010, source=source, protocol_version=0x10,
              command=0x0100, payload=payload)
    )


def transport_factory(*transports):
    """Factory handing out ``transports`` in order, then failing."""
    remaining = iter(transports)

    async def factory():
        transport = next(remaining, None)
        if transport is None:
            raise TransportError("no adapter")
        return transport

    return factory


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def fake_host():
    return FakeHost()
