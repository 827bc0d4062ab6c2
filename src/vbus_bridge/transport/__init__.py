"""Upstream and downstream transports."""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

from .base import StreamTransport, TransportAdapter
from .serial_connection import DEFAULT_BAUDRATE, SerialConnection
from .tcp_connection import DEFAULT_VBUS_PORT, TcpConnection


def create_transport(spec: str) -> SerialConnection | TcpConnection:
    """Build an unopened transport from a spec string.

    Accepted forms: ``serial:<path>[?baudrate=N]``, a bare device path, and
    ``tcp://host[:port]``.

    Raises:
        ValueError: If the spec cannot be interpreted.
    """
    if not spec:
        raise ValueError("Empty transport spec")
    if spec.startswith("tcp://"):
        parts = urlsplit(spec)
        if not parts.hostname:
            raise ValueError(f"Missing host in {spec!r}")
        return TcpConnection(parts.hostname, parts.port or DEFAULT_VBUS_PORT)

    path = spec
    baudrate = DEFAULT_BAUDRATE
    if spec.startswith("serial:"):
        path, _, query = spec[len("serial:"):].partition("?")
        if query:
            values = parse_qs(query).get("baudrate")
            if values:
                try:
                    baudrate = int(values[0])
                except ValueError as e:
                    raise ValueError(f"Invalid baudrate in {spec!r}") from e
    if not path:
        raise ValueError(f"Missing device path in {spec!r}")
    return SerialConnection(path, baudrate)


async def open_transport(spec: str) -> TransportAdapter:
    """Create and open the transport described by ``spec``."""
    transport = create_transport(spec)
    await transport.open()
    return transport


__all__ = [
    "SerialConnection",
    "StreamTransport",
    "TcpConnection",
    "TransportAdapter",
    "create_transport",
    "open_transport",
]
