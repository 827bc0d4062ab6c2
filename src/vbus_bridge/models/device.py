"""Identification of a VBus-over-TCP device (DL2, DL3, KM2, VBus/LAN)."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass

_LINE_RE = re.compile(r'^(\w+)\s*=\s*"([^"]*)"\s*$')

FIELDS = ("vendor", "product", "serial", "version", "build", "name", "features")


@dataclass
class DeviceInformation:
    """Contents of ``/cgi-bin/get_resol_device_information``."""

    address: str
    vendor: str | None = None
    product: str | None = None
    serial: str | None = None
    version: str | None = None
    build: str | None = None
    name: str | None = None
    features: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def parse(cls, address: str, text: str) -> DeviceInformation:
        """Parse ``key = "value"`` lines; unknown keys and malformed lines are skipped."""
        values = {}
        for line in text.splitlines():
            m = _LINE_RE.match(line.strip())
            if m is None:
                continue
            key = m.group(1).lower()
            if key in FIELDS:
                values[key] = m.group(2)
        return cls(address=address, **values)
