"""Bridging hub: one upstream VBus connection shared by many TCP clients."""

from .bridge import BridgeHub, start_bridge
from .directory import Directory, StaticDirectory
from .session import Session, SessionState
