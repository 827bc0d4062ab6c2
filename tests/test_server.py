"""Tests for the MCP tool functions, with FastMCP mocked out."""

import json
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from vbus_bridge.actions import Action, ActionResult, ConnectionParams

TABLE_TOML = """
address = 0x7E11
changeset = 1

[[params]]
id = "Temp"
index = 12
factor = 10.0
"""


def _get_server_module():
    """Import server module with FastMCP mocked to avoid init issues."""
    mock_fastmcp_cls = MagicMock()
    mock_fastmcp_instance = MagicMock()
    # Make the decorators no-ops that return the function unchanged
    mock_fastmcp_instance.tool.return_value = lambda fn: fn
    mock_fastmcp_instance.resource.return_value = lambda fn: fn
    mock_fastmcp_cls.return_value = mock_fastmcp_instance

    with patch("mcp.server.fastmcp.FastMCP", mock_fastmcp_cls):
        sys.modules.pop("vbus_bridge.server", None)
        import vbus_bridge.server as server_mod

    return server_mod


def test_load_parameters_missing_file(tmp_path):
    server = _get_server_module()
    result = server.load_parameters(str(tmp_path / "missing.toml"))
    assert "error" in result


def test_load_parameters_and_resource(tmp_path):
    server = _get_server_module()
    path = tmp_path / "params.toml"
    path.write_text(TABLE_TOML)

    assert json.loads(server.resource_parameters()) == {"loaded": False}
    result = server.load_parameters(str(path))
    assert result["parameter_count"] == 1
    assert result["address"] == 0x7E11

    resource = json.loads(server.resource_parameters())
    assert resource["loaded"] is True
    assert resource["params"][0]["id"] == "Temp"


async def test_tools_require_connection():
    server = _get_server_module()
    with pytest.raises(RuntimeError, match="connect"):
        await server.read_parameter("Temp")


async def test_write_parameter_runs_one_action():
    server = _get_server_module()
    params = ConnectionParams("10.0.0.2")
    action = Action("Temp", 15.5)
    run = AsyncMock(return_value=[ActionResult(action, index=12, raw_value=155, value=15.5)])

    with patch.object(server, "_get_connection", return_value=params), \
            patch.object(server, "run_actions", run):
        result = await server.write_parameter("Temp", 15.5)

    run.assert_awaited_once_with(params, [action], None)
    assert result == {
        "action": "Temp=15.5",
        "index": 12,
        "raw_value": 155,
        "value": 15.5,
        "error": None,
    }


def test_connection_resource_and_disconnect():
    server = _get_server_module()
    assert json.loads(server.resource_connection()) == {"connected": False}
    server._connection = ConnectionParams("10.0.0.2", channel=1)
    resource = json.loads(server.resource_connection())
    assert resource["host"] == "10.0.0.2"
    assert resource["channel"] == 1
    assert server.disconnect() == {"disconnected": True}
    assert server._connection is None
