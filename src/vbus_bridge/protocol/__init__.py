"""Protocol layer: wire framing, stream reassembly, command builders and reply parsing."""

from .framing import Frame, Packet, decode, decode_next, encode
from .assembler import TelegramAssembler
from .commands import Command, build_command
