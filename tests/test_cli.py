"""Tests for the command line front end."""

import json

from vbus_bridge import cli
from vbus_bridge.actions import Action, ActionResult
from vbus_bridge.models.device import DeviceInformation


def test_argparser_serve_defaults():
    args = cli.build_argparser().parse_args(["serve", "/dev/ttyACM0"])
    assert args.cmd == "serve"
    assert args.transport == "/dev/ttyACM0"
    assert args.port is None
    assert args.via == []


def test_argparser_customize():
    args = cli.build_argparser().parse_args(
        ["customize", "--host", "10.0.0.2", "--via-tag", "d1.vbus.io", "Temp=?", "0x10=5"]
    )
    assert args.via_tag == "d1.vbus.io"
    assert args.actions == ["Temp=?", "0x10=5"]


def test_malformed_action_exits_2(capsys):
    assert cli.main(["customize", "--host", "127.0.0.1", "Temp"]) == 2
    assert "Malformed action" in capsys.readouterr().err


def test_bad_via_mapping_exits_2():
    assert cli.main(["serve", "/dev/ttyACM0", "--via", "missing-address"]) == 2


def test_serve_missing_adapter_exits_1(capsys):
    assert cli.main(["serve", "serial:/nonexistent/ttyVBUS", "--port", "0"]) == 1
    assert "ERROR" in capsys.readouterr().err


def test_customize_prints_results(monkeypatch, capsys):
    async def fake_run_actions(params, actions, table):
        assert params.host == "10.0.0.2"
        return [
            ActionResult(Action("Temp"), index=12, raw_value=200, value=20.0),
            ActionResult(Action("Nope"), error="Unable to find parameter"),
        ]

    monkeypatch.setattr(cli, "run_actions", fake_run_actions)
    assert cli.main(["customize", "--host", "10.0.0.2", "Temp=?", "Nope=?"]) == 1
    out = capsys.readouterr().out.splitlines()
    assert out == ["Temp = 20 (index 12, raw 200)", "Nope: ERROR Unable to find parameter"]


def test_discover_json(monkeypatch, capsys):
    async def fake_discover(broadcast_address, rounds):
        return [DeviceInformation("10.0.0.2", vendor="RESOL", product="DL3")]

    monkeypatch.setattr(cli, "discover_devices", fake_discover)
    assert cli.main(["discover", "--json"]) == 0
    assert json.loads(capsys.readouterr().out)["product"] == "DL3"
