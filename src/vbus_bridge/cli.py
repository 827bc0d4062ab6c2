"""Command line front end.

Sub-commands: ``serve`` runs a bridge in front of a serial or TCP adapter,
``customize`` reads or writes controller parameters through a bridge, and
``discover`` lists data loggers answering on the local network.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Optional

from .actions import ConnectionParams, run_actions
from .config import BridgeConfig, TransactionConfig, load_config
from .discovery import BROADCAST_ADDRESS, discover_devices
from .errors import VBusError
from .hub.bridge import start_bridge
from .hub.directory import StaticDirectory
from .models.parameters import ParameterTable
from .transport.tcp_connection import DEFAULT_VBUS_PORT

logger = logging.getLogger(__name__)


def _parse_via(entries: list[str]) -> StaticDirectory | None:
    if not entries:
        return None
    directory = StaticDirectory()
    for entry in entries:
        tag, sep, address = entry.partition("=")
        if not sep or not tag:
            raise ValueError(f"Expected TAG=ADDRESS, got {entry!r}")
        directory.add(tag, int(address, 0))
    return directory


def cmd_serve(args: argparse.Namespace) -> int:
    if args.config:
        config, transaction_config = load_config(args.config)
    else:
        config, transaction_config = BridgeConfig(), TransactionConfig()
    if args.channels is not None:
        config = replace(config, channel_count=args.channels)
    if args.host is not None:
        config = replace(config, host=args.host)
    port = args.port if args.port is not None else config.port
    password = args.password if args.password is not None else config.password
    directory = _parse_via(args.via)

    async def serve() -> None:
        hub = await start_bridge(
            args.transport, port, password, config, transaction_config, directory
        )
        try:
            await hub.wait_closed()
        finally:
            await hub.stop()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except (VBusError, OSError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


def cmd_customize(args: argparse.Namespace) -> int:
    table = ParameterTable.load(args.params) if args.params else None
    params = ConnectionParams(
        host=args.host,
        port=args.port,
        password=args.password,
        via_tag=args.via_tag,
        channel=args.channel,
    )
    try:
        results = asyncio.run(run_actions(params, args.actions, table))
    except VBusError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    for result in results:
        if args.json:
            print(json.dumps(result.to_dict()))
        elif result.ok:
            print(f"{result.action.id_or_index} = {result.value:g} (index {result.index}, raw {result.raw_value})")
        else:
            print(f"{result.action.id_or_index}: ERROR {result.error}")
    return 0 if all(r.ok for r in results) else 1


def cmd_discover(args: argparse.Namespace) -> int:
    devices = asyncio.run(
        discover_devices(broadcast_address=args.broadcast, rounds=args.rounds)
    )
    for device in devices:
        if args.json:
            print(json.dumps(device.to_dict()))
        else:
            print(f"{device.address}: {device.vendor or '?'} {device.product or '?'} {device.name or ''}".rstrip())
    return 0


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="vbus-bridge", description="RESOL VBus bridge and parameter tool")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Share a VBus connection with VBus-over-TCP clients")
    serve.add_argument("transport", help="serial:/dev/ttyACM0[?baudrate=9600], /dev/ttyACM0 or tcp://host:port")
    serve.add_argument("--host", default=None, help="Listen address (default: 0.0.0.0)")
    serve.add_argument("--port", type=int, default=None, help=f"Listen port (default: {DEFAULT_VBUS_PORT})")
    serve.add_argument("--password", default=None, help="Client login password (default: vbus)")
    serve.add_argument("--channels", type=int, default=None, help="Number of channels clients may select")
    serve.add_argument("--via", action="append", default=[], metavar="TAG=ADDRESS", help="Accept CONNECT TAG, filtering to ADDRESS")
    serve.add_argument("--config", default=None, help="TOML file with [bridge] and [transaction] sections")

    customize = sub.add_parser("customize", help="Read or write controller parameters")
    customize.add_argument("--host", required=True, help="Bridge or data logger host")
    customize.add_argument("--port", type=int, default=DEFAULT_VBUS_PORT)
    customize.add_argument("--password", default="vbus")
    customize.add_argument("--via-tag", default=None)
    customize.add_argument("--channel", type=int, default=None)
    customize.add_argument("--params", default=None, help="TOML parameter table")
    customize.add_argument("--json", action="store_true", help="Print one JSON object per action")
    customize.add_argument("actions", nargs="+", help="<id-or-index>=<value> to write, <id-or-index>=? to read")

    discover = sub.add_parser("discover", help="Find VBus-over-TCP devices on the local network")
    discover.add_argument("--broadcast", default=BROADCAST_ADDRESS)
    discover.add_argument("--rounds", type=int, default=3)
    discover.add_argument("--json", action="store_true")

    return p


def main(argv: Optional[list[str]] = None) -> int:
    args = build_argparser().parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        if args.cmd == "serve":
            return cmd_serve(args)
        if args.cmd == "customize":
            return cmd_customize(args)
        if args.cmd == "discover":
            return cmd_discover(args)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
