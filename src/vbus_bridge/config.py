"""Runtime configuration for the bridge and the transaction layer.

Both configurations can be built from a plain mapping or from a section of
a TOML file::

    [bridge]
    port = 7053
    password = "vbus"
    channel_count = 1

    [transaction]
    timeout = 0.5
    max_retries = 2
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields
from pathlib import Path

from .protocol.commands import DEFAULT_SELF_ADDRESS
from .transport.base import DEFAULT_READ_SIZE


def _from_mapping(cls, data: dict):
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(
            f"Unknown {cls.__name__} option(s): {', '.join(sorted(unknown))}"
        )
    return cls(**data)


@dataclass
class TransactionConfig:
    """Timing of request/response transactions.

    A request is retransmitted ``max_retries`` times. Attempt ``n`` (counting
    from zero) waits ``timeout + n * timeout_increment`` seconds for its reply.
    """

    self_address: int = DEFAULT_SELF_ADDRESS
    timeout: float = 0.5
    timeout_increment: float = 0.5
    max_retries: int = 2

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.timeout_increment < 0 or self.max_retries < 0:
            raise ValueError("timeout_increment and max_retries must not be negative")

    @classmethod
    def from_dict(cls, data: dict) -> TransactionConfig:
        return _from_mapping(cls, data)


@dataclass
class BridgeConfig:
    """Listening socket, login and upstream recovery settings of the bridge."""

    host: str = "0.0.0.0"
    port: int = 7053
    password: str = "vbus"
    channel_count: int = 1
    queue_size: int = 256
    handshake_timeout: float = 30.0
    read_size: int = DEFAULT_READ_SIZE
    reconnect_attempts: int = 10
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.channel_count < 1:
            raise ValueError("channel_count must be at least 1")
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        if self.handshake_timeout <= 0:
            raise ValueError("handshake_timeout must be positive")
        if self.reconnect_attempts < 0:
            raise ValueError("reconnect_attempts must not be negative")

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff before reconnect ``attempt`` (counting from zero)."""
        delay = self.reconnect_initial_delay * self.backoff_multiplier ** attempt
        return min(delay, self.reconnect_max_delay)

    @classmethod
    def from_dict(cls, data: dict) -> BridgeConfig:
        return _from_mapping(cls, data)


def load_config(path: str | Path) -> tuple[BridgeConfig, TransactionConfig]:
    """Read the ``[bridge]`` and ``[transaction]`` sections of a TOML file.

    Missing sections fall back to defaults.

    Raises:
        ValueError: If the file is not valid TOML or holds unknown options.
    """
    path = Path(path)
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid config file {path}: {e}") from e
    return (
        BridgeConfig.from_dict(data.get("bridge", {})),
        TransactionConfig.from_dict(data.get("transaction", {})),
    )
