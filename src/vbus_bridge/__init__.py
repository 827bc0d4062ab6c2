"""Share one RESOL VBus connection with many TCP clients.

The package decodes the VBus live wire format, fans decoded data out to
VBus-over-TCP clients and offers a correlated get/set transaction layer
for controller parameters.
"""

from .protocol.framing import Frame, Packet, decode, encode
from .hub.bridge import BridgeHub, start_bridge
from .actions import Action, ActionResult, run_actions

__version__ = "0.1.0"
