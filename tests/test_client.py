"""Tests for VBusClient operations against a bridge with a fake controller."""

import asyncio

import pytest

from conftest import CONTROLLER_ADDRESS, FakeController, transport_factory
from vbus_bridge.client import VBusClient
from vbus_bridge.config import BridgeConfig, TransactionConfig
from vbus_bridge.errors import TransactionTimeout
from vbus_bridge.hub import BridgeHub
from vbus_bridge.protocol import commands
from vbus_bridge.protocol.commands import Command


@pytest.fixture
async def bridge():
    controller = FakeController()
    hub = BridgeHub(transport_factory(controller), BridgeConfig(host="127.0.0.1", port=0))
    await hub.start()
    yield hub, controller
    await hub.stop()


@pytest.fixture
async def client(bridge):
    hub, _ = bridge
    config = TransactionConfig(timeout=0.2, timeout_increment=0.0, max_retries=1)
    async with VBusClient("127.0.0.1", hub.port, config=config) as client:
        yield client


async def test_get_value_id_hash(bridge, client):
    _, controller = bridge
    controller.hashes[0x789ABCDE] = 12
    assert await client.get_value_id_hash(CONTROLLER_ADDRESS, 12) == 0x789ABCDE


async def test_get_caps1(bridge, client):
    _, controller = bridge
    controller.caps1 = 0x5
    assert await client.get_caps1(CONTROLLER_ADDRESS) == 0x5


async def test_bulk_value_commit(bridge, client):
    _, controller = bridge
    assert await client.begin_bulk_value(CONTROLLER_ADDRESS, 30) == 30
    assert await client.set_bulk_value(CONTROLLER_ADDRESS, 12, 150) == 150
    assert 12 not in controller.values
    await client.commit_bulk_value(CONTROLLER_ADDRESS)
    assert controller.values[12] == 150


async def test_bulk_value_rollback(bridge, client):
    _, controller = bridge
    await client.begin_bulk_value(CONTROLLER_ADDRESS, 30)
    await client.set_bulk_value(CONTROLLER_ADDRESS, 12, 150)
    await client.rollback_bulk_value(CONTROLLER_ADDRESS)
    assert 12 not in controller.values
    assert controller.bulk is None


async def test_release_bus_waits_for_data_packet(bridge, client):
    """Datagrams on the bus do not count as regular traffic after a release."""
    _, controller = bridge
    controller.on_write = lambda data: controller.offer_bus()
    with pytest.raises(TransactionTimeout):
        await client.release_bus(CONTROLLER_ADDRESS)
    assert controller.written.count(commands.build_release_bus(CONTROLLER_ADDRESS)) == 2


async def test_release_bus_returns_data_packet(client):
    packet = await client.release_bus(CONTROLLER_ADDRESS)
    assert not packet.is_datagram
    assert packet.command == Command.DATA
    assert packet.source == CONTROLLER_ADDRESS


async def test_wait_for_free_bus(bridge, client):
    _, controller = bridge
    waiter = asyncio.create_task(client.wait_for_free_bus(timeout=2.0))
    await asyncio.sleep(0.05)
    controller.offer_bus()
    assert await waiter == CONTROLLER_ADDRESS
