"""End-to-end tests of the hub over loopback TCP with a fake upstream."""

import asyncio

import pytest

from conftest import (
    CONTROLLER_ADDRESS,
    FakeController,
    FakeStream,
    FakeTransport,
    data_packet,
    transport_factory,
    wait_until,
)
from vbus_bridge.config import BridgeConfig, TransactionConfig
from vbus_bridge.errors import TransactionCancelled, TransportError
from vbus_bridge.hub import BridgeHub
from vbus_bridge.hub.session import Session, SessionState
from vbus_bridge.protocol import commands
from vbus_bridge.protocol.framing import decode


def _config(**overrides) -> BridgeConfig:
    options = {
        "host": "127.0.0.1",
        "port": 0,
        "reconnect_initial_delay": 0.01,
        "reconnect_max_delay": 0.02,
        **overrides,
    }
    return BridgeConfig(**options)


async def _connect(hub: BridgeHub):
    reader, writer = await asyncio.open_connection("127.0.0.1", hub.port)
    assert await reader.readline() == b"+HELLO\r\n"
    return reader, writer


async def _send(writer: asyncio.StreamWriter, reader: asyncio.StreamReader, line: bytes) -> bytes:
    writer.write(line)
    await writer.drain()
    return await reader.readline()


async def _login(hub: BridgeHub, password: str = "vbus"):
    reader, writer = await _connect(hub)
    assert await _send(writer, reader, f"PASS {password}\r\n".encode()) == b"+OK\r\n"
    assert await _send(writer, reader, b"DATA\r\n") == b"+OK\r\n"
    return reader, writer


def _streaming(hub: BridgeHub) -> int:
    return sum(1 for s in hub.sessions if s.streaming)


async def test_fan_out_to_all_clients():
    upstream = FakeTransport()
    async with BridgeHub(transport_factory(upstream), _config()) as hub:
        clients = [await _login(hub), await _login(hub)]
        await wait_until(lambda: _streaming(hub) == 2)

        packet = data_packet(payload=bytes(range(8)))
        upstream.feed(packet[:5])
        upstream.feed(packet[5:])
        for reader, writer in clients:
            assert await asyncio.wait_for(reader.readexactly(len(packet)), 2) == packet
            writer.close()
        assert hub.stats()["packets"] == 1


async def test_garbage_upstream_is_skipped():
    upstream = FakeTransport()
    async with BridgeHub(transport_factory(upstream), _config()) as hub:
        reader, writer = await _login(hub)
        await wait_until(lambda: _streaming(hub) == 1)
        packet = data_packet()
        upstream.feed(b"\x01\x02\xaa\x7f" + packet)
        assert await asyncio.wait_for(reader.readexactly(len(packet)), 2) == packet
        writer.close()


async def test_wrong_password_closes_connection():
    async with BridgeHub(transport_factory(FakeTransport()), _config()) as hub:
        reader, writer = await _connect(hub)
        reply = await _send(writer, reader, b"PASS wrong\r\n")
        assert reply == b"-ERROR Invalid password\r\n"
        assert await asyncio.wait_for(reader.read(), 2) == b""
        await wait_until(lambda: not hub.sessions)
        writer.close()


async def test_handshake_timeout_closes_connection():
    async with BridgeHub(transport_factory(FakeTransport()), _config(handshake_timeout=0.1)) as hub:
        reader, writer = await _connect(hub)
        assert await asyncio.wait_for(reader.read(), 2) == b""
        writer.close()


async def test_channel_selection():
    upstream = FakeTransport()
    async with BridgeHub(transport_factory(upstream), _config(channel_count=2)) as hub:
        reader, writer = await _connect(hub)
        assert await _send(writer, reader, b"PASS vbus\r\n") == b"+OK\r\n"
        assert await _send(writer, reader, b"CHANNEL 1\r\n") == b"+OK\r\n"
        assert await _send(writer, reader, b"DATA\r\n") == b"+OK\r\n"
        await wait_until(lambda: _streaming(hub) == 1)
        assert hub.sessions[0].channel == 1
        writer.close()


async def test_slow_client_is_evicted():
    hub = BridgeHub(transport_factory(), BridgeConfig(queue_size=1))
    session = Session(1, FakeStream(), hub, hub.config)
    hub._sessions[session.id] = session
    session.handle_line(b"PASS vbus\r\n")
    session.handle_line(b"DATA\r\n")

    hub.dispatch(data_packet())
    assert session.state is SessionState.STREAMING
    hub.dispatch(data_packet())
    assert session.state is SessionState.CLOSED
    assert hub.evictions == 1



async def test_eviction_does_not_hold_back_other_sessions():
    hub = BridgeHub(transport_factory(), BridgeConfig(queue_size=1))
    slow = Session(1, FakeStream(), hub, hub.config)
    fast = Session(2, FakeStream(), hub, BridgeConfig(queue_size=10))
    for session in (slow, fast):
        hub._sessions[session.id] = session
        session.handle_line(b"PASS vbus\r\n")
        session.handle_line(b"DATA\r\n")

    for _ in range(3):
        hub.dispatch(data_packet())
    assert slow.state is SessionState.CLOSED
    assert fast.state is SessionState.STREAMING
    assert fast.queue.qsize() == 3
    assert hub.evictions == 1


async def test_client_get_is_routed_through_transactions():
    controller = FakeController()
    controller.values[5] = 77
    async with BridgeHub(transport_factory(controller), _config()) as hub:
        reader, writer = await _login(hub)
        await wait_until(lambda: _streaming(hub) == 1)
        request = commands.build_get_value(CONTROLLER_ADDRESS, 5)
        writer.write(request)
        await writer.drain()

        reply = decode(await asyncio.wait_for(reader.readexactly(16), 2))
        assert reply.source == CONTROLLER_ADDRESS
        assert reply.destination == commands.DEFAULT_SELF_ADDRESS
        assert int.from_bytes(reply.payload[2:6], "little", signed=True) == 77
        assert controller.written == [request]
        await wait_until(lambda: hub.transactions.pending_count == 0)
        writer.close()


async def test_other_client_frames_are_forwarded():
    upstream = FakeTransport()
    async with BridgeHub(transport_factory(upstream), _config()) as hub:
        reader, writer = await _login(hub)
        await wait_until(lambda: _streaming(hub) == 1)
        release = commands.build_release_bus(CONTROLLER_ADDRESS)
        writer.write(release)
        await writer.drain()
        await wait_until(lambda: upstream.written == [release])
        writer.close()


async def test_disconnect_cancels_client_transactions():
    upstream = FakeTransport()
    slow = TransactionConfig(timeout=10.0)
    async with BridgeHub(transport_factory(upstream), _config(), slow) as hub:
        reader, writer = await _login(hub)
        await wait_until(lambda: _streaming(hub) == 1)
        writer.write(commands.build_get_value(CONTROLLER_ADDRESS, 9))
        await writer.drain()
        await wait_until(lambda: hub.transactions.pending_count == 1)
        writer.close()
        await wait_until(lambda: hub.transactions.pending_count == 0)
        assert not hub.sessions


async def test_upstream_reconnect_keeps_sessions():
    first, second = FakeTransport(), FakeTransport()
    async with BridgeHub(transport_factory(first, second), _config()) as hub:
        reader, writer = await _login(hub)
        await wait_until(lambda: _streaming(hub) == 1)
        first.fail()
        await wait_until(lambda: hub.reconnects == 1)
        assert first.closed
        assert _streaming(hub) == 1

        packet = data_packet()
        second.feed(packet)
        assert await asyncio.wait_for(reader.readexactly(len(packet)), 2) == packet
        writer.close()


async def test_reconnect_exhaustion_is_fatal():
    upstream = FakeTransport()
    hub = BridgeHub(transport_factory(upstream), _config(reconnect_attempts=2))
    await hub.start()
    reader, writer = await _login(hub)
    upstream.fail()
    with pytest.raises(TransportError, match="2 reconnect attempts"):
        await asyncio.wait_for(hub.wait_closed(), 2)
    assert await asyncio.wait_for(reader.read(), 2) == b""
    assert not hub.sessions
    writer.close()


async def test_start_fails_without_upstream():
    hub = BridgeHub(transport_factory(), _config())
    with pytest.raises(TransportError):
        await hub.start()


async def test_stop_closes_sessions_and_cancels_requests():
    hub = BridgeHub(transport_factory(FakeTransport()), _config())
    await hub.start()
    reader, writer = await _login(hub)
    future = hub.transactions.issue_get(CONTROLLER_ADDRESS, 1)
    await hub.stop()
    with pytest.raises(TransactionCancelled):
        await future
    assert await asyncio.wait_for(reader.read(), 2) == b""
    await hub.wait_closed()
    await hub.stop()
    writer.close()
