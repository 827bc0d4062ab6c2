"""MCP server entry point for VBus controller parameters.

Exposes tools and resources via the Model Context Protocol using the
official Python MCP SDK with stdio transport. Every parameter tool takes
the bus for the duration of its request and releases it afterwards.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from .actions import Action, ConnectionParams, run_actions
from .discovery import discover_devices as _discover_devices
from .models.parameters import ParameterTable
from .transport.tcp_connection import DEFAULT_VBUS_PORT

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "vbus-bridge",
    instructions="Read and write RESOL VBus controller parameters over VBus-over-TCP",
)

# Global connection state
_connection: ConnectionParams | None = None
_table: ParameterTable | None = None


def _get_connection() -> ConnectionParams:
    """Get the active connection parameters, raising if not connected."""
    if _connection is None:
        raise RuntimeError("Not connected to a bridge. Use the 'connect' tool first.")
    return _connection


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
async def connect(
    host: str,
    port: int = DEFAULT_VBUS_PORT,
    password: str = "vbus",
    via_tag: str | None = None,
    channel: int | None = None,
) -> dict[str, Any]:
    """Log in to a VBus-over-TCP bridge or data logger.

    The login is verified once; parameter tools reconnect for every request.

    Args:
        host: Host name or IP address.
        port: TCP port (7053 by default).
        password: Login password.
        via_tag: Optional via tag of a relayed device.
        channel: Optional channel on multi-channel bridges.
    """
    global _connection
    params = ConnectionParams(
        host=host, port=port, password=password, via_tag=via_tag, channel=channel
    )
    async with params.create_client():
        pass
    _connection = params
    return {"connected": True, "host": host, "port": port}


@mcp.tool()
def disconnect() -> dict[str, bool]:
    """Forget the current connection."""
    global _connection
    _connection = None
    return {"disconnected": True}


# ─── PARAMETER TOOLS ──────────────────────────────────────────────────

@mcp.tool()
def load_parameters(path: str) -> dict[str, Any]:
    """Load a TOML parameter table used to resolve and scale values.

    Args:
        path: Path to the parameter file.
    """
    global _table
    if not Path(path).exists():
        return {"error": f"File not found: {path}"}
    _table = ParameterTable.load(path)
    return {
        "loaded": True,
        "parameter_count": len(_table),
        "address": _table.address,
        "changeset": _table.changeset,
    }


async def _run(actions: list[Action]) -> list[dict[str, Any]]:
    results = await run_actions(_get_connection(), actions, _table)
    return [r.to_dict() for r in results]


@mcp.tool()
async def read_parameter(id_or_index: str) -> dict[str, Any]:
    """Read one controller value.

    Args:
        id_or_index: Value identifier, decimal index or 0x-prefixed index.
    """
    (result,) = await _run([Action(id_or_index)])
    return result


@mcp.tool()
async def write_parameter(id_or_index: str, value: float) -> dict[str, Any]:
    """Write one controller value (scaled and bounds-checked via the parameter table).

    Args:
        id_or_index: Value identifier, decimal index or 0x-prefixed index.
        value: Physical value to write.
    """
    (result,) = await _run([Action(id_or_index, value)])
    return result


@mcp.tool()
async def run_parameter_actions(actions: list[str]) -> dict[str, Any]:
    """Run several actions while holding the bus once.

    Args:
        actions: Actions of the form ``id=value`` (write) or ``id=?`` (read).
    """
    results = await run_actions(_get_connection(), actions, _table)
    return {"results": [r.to_dict() for r in results]}


@mcp.tool()
async def discover_devices(rounds: int = 3) -> dict[str, Any]:
    """Find VBus-over-TCP devices on the local network.

    Args:
        rounds: Number of broadcast rounds.
    """
    devices = await _discover_devices(rounds=rounds)
    return {"devices": [d.to_dict() for d in devices]}


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("vbus://parameters")
def resource_parameters() -> str:
    """The loaded parameter table."""
    if _table is None:
        return json.dumps({"loaded": False})
    return json.dumps({"loaded": True, **_table.to_dict()})


@mcp.resource("vbus://connection")
def resource_connection() -> str:
    """Current connection target."""
    if _connection is None:
        return json.dumps({"connected": False})
    return json.dumps({
        "connected": True,
        "host": _connection.host,
        "port": _connection.port,
        "via_tag": _connection.via_tag,
        "channel": _connection.channel,
    })


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
