"""Batch reading and writing of controller parameters.

An action is written ``<id-or-index>=<value>`` to write a value or
``<id-or-index>=?`` to read it. Indices are decimal or ``0x`` prefixed
hexadecimal; anything else is a value identifier, resolved through the
parameter table or, failing that, by asking the controller for the index
belonging to the identifier's hash.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .client import FREE_BUS_TIMEOUT, VBusClient
from .config import TransactionConfig
from .errors import ResolutionError, TransactionError
from .models.parameters import ParameterEntry, ParameterResolver, ParameterTable
from .protocol.commands import value_id_hash
from .transport.tcp_connection import DEFAULT_VBUS_PORT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Action:
    id_or_index: str
    value: float | None = None

    @property
    def is_read(self) -> bool:
        return self.value is None

    def __str__(self) -> str:
        return f"{self.id_or_index}={'?' if self.is_read else self.value}"


def parse_action(text: str) -> Action:
    """Parse ``id=value`` or ``id=?``.

    Raises:
        ValueError: If the action is malformed.
    """
    id_or_index, sep, value = text.partition("=")
    id_or_index = id_or_index.strip()
    value = value.strip()
    if not sep or not id_or_index or not value:
        raise ValueError(f"Malformed action {text!r}, expected <id>=<value> or <id>=?")
    if value == "?":
        return Action(id_or_index)
    try:
        return Action(id_or_index, float(value))
    except ValueError as e:
        raise ValueError(f"Invalid value in action {text!r}") from e


@dataclass
class ActionResult:
    """Outcome of one action: the resulting value or the reason it failed."""

    action: Action
    index: int | None = None
    raw_value: int | None = None
    value: float | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "action": str(self.action),
            "index": self.index,
            "raw_value": self.raw_value,
            "value": self.value,
            "error": self.error,
        }


@dataclass
class ConnectionParams:
    host: str
    port: int = DEFAULT_VBUS_PORT
    password: str = "vbus"
    via_tag: str | None = None
    channel: int | None = None
    free_bus_timeout: float = FREE_BUS_TIMEOUT
    transaction: TransactionConfig = field(default_factory=TransactionConfig)

    def create_client(self) -> VBusClient:
        return VBusClient(
            self.host,
            self.port,
            password=self.password,
            via_tag=self.via_tag,
            channel=self.channel,
            config=self.transaction,
        )


def resolve_entry(action: Action, resolver: ParameterResolver | None) -> ParameterEntry:
    """Find the table entry for ``action``.

    Raises:
        ResolutionError: If a resolver is given but does not know the parameter.
    """
    if resolver is None:
        return ParameterEntry.unscaled(action.id_or_index)
    entry = resolver.lookup(action.id_or_index)
    if entry is None:
        raise ResolutionError(f"Unable to find parameter for action {action}")
    return entry


def verify_table(table: ParameterTable, address: int, changeset: int) -> None:
    """Check that ``table`` was written for the controller on the bus.

    Raises:
        ResolutionError: On an address or changeset mismatch.
    """
    if table.address is not None and table.address != address:
        raise ResolutionError(
            f"Expected peer address 0x{table.address:04X}, but got 0x{address:04X}"
        )
    if table.changeset is not None and table.changeset != changeset:
        raise ResolutionError(
            f"Expected changeset 0x{table.changeset:08X}, but got 0x{changeset:08X}"
        )


async def run_action(
    client: VBusClient,
    address: int,
    action: Action,
    resolver: ParameterResolver | None = None,
) -> ActionResult:
    """Perform one action; failures are reported in the result."""
    try:
        entry = resolve_entry(action, resolver)
        raw = None if action.is_read else entry.to_raw(action.value)
        if entry.index is not None:
            index = entry.index
        else:
            index = await client.lookup_index(address, value_id_hash(entry.identifier))
            logger.debug("Resolved %s to index %d", entry.identifier, index)
        if raw is None:
            raw = await client.get_value(address, index)
        else:
            raw = await client.set_value(address, index, raw)
    except (TransactionError, ValueError) as e:
        logger.warning("Action %s failed: %s", action, e)
        return ActionResult(action, error=str(e))
    return ActionResult(action, index=index, raw_value=raw, value=entry.from_raw(raw))


async def run_actions(
    connection_params: ConnectionParams,
    actions: Iterable[Action | str],
    resolver: ParameterResolver | None = None,
) -> list[ActionResult]:
    """Connect, take the bus, perform ``actions`` in order and release the bus.

    Args:
        connection_params: Where and how to connect.
        actions: :class:`Action` objects or their textual form.
        resolver: Parameter table; a :class:`ParameterTable` is also verified
            against the controller's address and changeset.

    Returns:
        One result per action, in order.

    Raises:
        ValueError: If an action string is malformed.
        TransportError: If the connection fails.
        AuthError: If the login is rejected.
        TransactionError: If the bus is never offered or the changeset check fails.
    """
    actions = [a if isinstance(a, Action) else parse_action(a) for a in actions]

    async with connection_params.create_client() as client:
        address = await client.wait_for_free_bus(connection_params.free_bus_timeout)
        try:
            changeset = await client.read_changeset(address)
            logger.info("Controller 0x%04X, changeset 0x%08X", address, changeset & 0xFFFFFFFF)
            if isinstance(resolver, ParameterTable):
                verify_table(resolver, address, changeset & 0xFFFFFFFF)
            results = [await run_action(client, address, a, resolver) for a in actions]
        finally:
            try:
                await client.release_bus(address)
            except TransactionError as e:
                logger.warning("Failed to release bus of 0x%04X: %s", address, e)
    return results
