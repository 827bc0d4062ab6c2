"""Serial connection to a VBus interface adapter.

RESOL USB and RS-232 adapters present a plain serial port running at
9600 baud, 8N1. The port is opened through ``pyserial-asyncio`` so the
bridge can read it from the event loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import serial
import serial_asyncio
from serial.tools import list_ports

from ..errors import TransportError
from .base import DEFAULT_READ_SIZE, StreamTransport

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 9600


@dataclass
class SerialPortInfo:
    """Identification of the serial port, as far as the OS reports it."""

    device: str
    baudrate: int = DEFAULT_BAUDRATE
    description: str = ""
    manufacturer: str = ""
    serial_number: str = ""


def describe_port(device: str, baudrate: int = DEFAULT_BAUDRATE) -> SerialPortInfo:
    """Look ``device`` up in the OS port list; unknown ports get a bare record."""
    for port in list_ports.comports():
        if port.device == device:
            return SerialPortInfo(
                device=device,
                baudrate=baudrate,
                description=port.description or "",
                manufacturer=port.manufacturer or "",
                serial_number=port.serial_number or "",
            )
    return SerialPortInfo(device=device, baudrate=baudrate)


class SerialConnection:
    """Manages the serial connection to a VBus adapter.

    Usage::

        conn = SerialConnection("/dev/ttyACM0")
        await conn.open()
        chunk = await conn.read()
        await conn.close()
    """

    def __init__(self, port: str, baudrate: int = DEFAULT_BAUDRATE) -> None:
        self._port = port
        self._baudrate = baudrate
        self._stream: StreamTransport | None = None
        self._port_info = SerialPortInfo(device=port, baudrate=baudrate)

    def __repr__(self) -> str:
        return f"SerialConnection({self._port!r}, baudrate={self._baudrate})"

    @property
    def connected(self) -> bool:
        return self._stream is not None and not self._stream.closed

    @property
    def port_info(self) -> SerialPortInfo:
        return self._port_info

    async def open(self) -> SerialPortInfo:
        """Open the serial port.

        Returns:
            SerialPortInfo describing the opened port.

        Raises:
            TransportError: If the port cannot be opened.
        """
        try:
            reader, writer = await serial_asyncio.open_serial_connection(
                url=self._port,
                baudrate=self._baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
            )
        except (serial.SerialException, OSError) as e:
            raise TransportError(
                f"Could not open serial port {self._port} at {self._baudrate} baud. "
                f"Ensure the adapter is connected and you have permissions. "
                f"Last error: {e}"
            ) from e

        self._stream = StreamTransport(reader, writer, name=self._port)
        self._port_info = describe_port(self._port, self._baudrate)
        logger.info(
            "Opened %s at %d baud (%s)",
            self._port,
            self._baudrate,
            self._port_info.description or "unknown adapter",
        )
        return self._port_info

    def _require_stream(self) -> StreamTransport:
        if self._stream is None:
            raise TransportError(f"Serial port {self._port} is not open")
        return self._stream

    async def read(self, max_bytes: int = DEFAULT_READ_SIZE) -> bytes:
        return await self._require_stream().read(max_bytes)

    async def write(self, data: bytes) -> None:
        await self._require_stream().write(data)

    async def close(self) -> None:
        """Close the serial port."""
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        await stream.close()
        logger.info("Closed %s", self._port)
