"""Discovery of VBus-over-TCP devices on the local network.

Devices listen for a UDP broadcast query on port 7053 and answer the
sender with a fixed reply. Each responding device is then asked for its
identification over HTTP.
"""

from __future__ import annotations

import asyncio
import logging

import requests

from .errors import TransportError
from .models.device import DeviceInformation

logger = logging.getLogger(__name__)

QUERY = b"---RESOL-BROADCAST-QUERY---"
REPLY = b"---RESOL-BROADCAST-REPLY---"
DISCOVERY_PORT = 7053
BROADCAST_ADDRESS = "255.255.255.255"
INFO_PATH = "/cgi-bin/get_resol_device_information"


class _ReplyCollector(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.addresses: set[str] = set()

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        if data == REPLY:
            self.addresses.add(addr[0])

    def error_received(self, exc: Exception) -> None:
        logger.debug("Discovery socket error: %s", exc)


async def discover_addresses(
    broadcast_address: str = BROADCAST_ADDRESS,
    port: int = DISCOVERY_PORT,
    rounds: int = 3,
    timeout: float = 0.5,
) -> list[str]:
    """Broadcast the query ``rounds`` times and collect responding hosts.

    Returns:
        Sorted IP addresses of all devices that replied.
    """
    loop = asyncio.get_running_loop()
    transport, collector = await loop.create_datagram_endpoint(
        _ReplyCollector, local_addr=("0.0.0.0", 0), allow_broadcast=True
    )
    try:
        for _ in range(rounds):
            transport.sendto(QUERY, (broadcast_address, port))
            await asyncio.sleep(timeout)
    finally:
        transport.close()
    logger.info("Discovery found %d device(s)", len(collector.addresses))
    return sorted(collector.addresses)


def fetch_device_information(
    address: str, port: int = 80, timeout: float = 2.0
) -> DeviceInformation:
    """Fetch and parse the identification of the device at ``address``.

    Raises:
        TransportError: If the request fails.
    """
    url = f"http://{address}:{port}{INFO_PATH}"
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise TransportError(f"Could not fetch {url}: {e}") from e
    return DeviceInformation.parse(address, response.text)


async def discover_devices(
    broadcast_address: str = BROADCAST_ADDRESS,
    port: int = DISCOVERY_PORT,
    rounds: int = 3,
    timeout: float = 0.5,
    fetch_port: int = 80,
    fetch_timeout: float = 2.0,
) -> list[DeviceInformation]:
    """Discover devices and fetch their identification.

    Devices whose identification cannot be fetched are left out.
    """
    devices = []
    for address in await discover_addresses(broadcast_address, port, rounds, timeout):
        try:
            info = await asyncio.to_thread(
                fetch_device_information, address, fetch_port, fetch_timeout
            )
        except TransportError as e:
            logger.warning("Skipping %s: %s", address, e)
            continue
        devices.append(info)
    return devices
