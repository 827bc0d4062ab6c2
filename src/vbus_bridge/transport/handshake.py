"""VBus-over-TCP login handshake.

The handshake is a line protocol that precedes the raw VBus stream::

    S: +HELLO
    C: CONNECT <via-tag>        (optional)
    S: +OK
    C: PASS <password>
    S: +OK
    C: CHANNEL <n>              (optional)
    S: +OK
    C: DATA
    S: +OK
    ... raw VBus bytes in both directions ...

Replies start with ``+`` (positive) or ``-`` (negative). Lines end with
CRLF; a bare LF is accepted when reading.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from ..errors import AuthError, TransportError

logger = logging.getLogger(__name__)

HELLO = b"+HELLO\r\n"
OK = b"+OK\r\n"
MAX_LINE_LENGTH = 256


class LineStream(Protocol):
    async def readline(self) -> bytes: ...

    async def write(self, data: bytes) -> None: ...


@dataclass(frozen=True)
class HandshakeCommand:
    """A parsed client line: upper-cased command word and its argument."""

    name: str
    argument: str = ""


def parse_command(line: bytes) -> HandshakeCommand:
    """Split a client line into command word and argument.

    Raises:
        ValueError: If the line is empty, too long or not ASCII.
    """
    if len(line) > MAX_LINE_LENGTH:
        raise ValueError("Line too long")
    try:
        text = line.decode("ascii").strip()
    except UnicodeDecodeError as e:
        raise ValueError("Line is not ASCII") from e
    if not text:
        raise ValueError("Empty command")
    name, _, argument = text.partition(" ")
    return HandshakeCommand(name.upper(), argument.strip())


def error_reply(message: str) -> bytes:
    return f"-ERROR {message}\r\n".encode("ascii", "replace")


def format_command(name: str, argument: str | int | None = None) -> bytes:
    if argument is None:
        return f"{name}\r\n".encode("ascii")
    return f"{name} {argument}\r\n".encode("ascii")


async def read_reply(stream: LineStream) -> str:
    """Read one server reply.

    Returns:
        The reply text without its status prefix.

    Raises:
        AuthError: If the server answered negatively.
        TransportError: If the reply is malformed or the stream closed.
    """
    line = (await stream.readline()).decode("ascii", "replace").strip()
    if line.startswith("+"):
        return line[1:]
    if line.startswith("-"):
        raise AuthError(f"Server rejected request: {line[1:]}")
    raise TransportError(f"Unexpected handshake reply: {line!r}")


async def request(stream: LineStream, name: str, argument: str | int | None = None) -> str:
    """Send one handshake command and wait for its positive reply."""
    logger.debug("Handshake > %s", name)
    await stream.write(format_command(name, argument))
    return await read_reply(stream)


async def client_handshake(
    stream: LineStream,
    password: str,
    via_tag: str | None = None,
    channel: int | None = None,
) -> None:
    """Log in to a VBus-over-TCP server and switch it to data mode.

    Args:
        stream: A freshly opened connection.
        password: Login password.
        via_tag: Optional tag selecting a device behind a relay.
        channel: Optional channel on multi-channel bridges.

    Raises:
        AuthError: If the server rejects any step.
        TransportError: If the server does not greet or the stream fails.
    """
    greeting = await read_reply(stream)
    if greeting != "HELLO":
        raise TransportError(f"Unexpected greeting: {greeting!r}")
    if via_tag:
        await request(stream, "CONNECT", via_tag)
    await request(stream, "PASS", password)
    if channel is not None:
        await request(stream, "CHANNEL", channel)
    await request(stream, "DATA")
    logger.info("Handshake complete, streaming")
