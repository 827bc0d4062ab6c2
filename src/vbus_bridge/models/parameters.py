"""Controller parameter tables.

A parameter table maps human readable value identifiers to controller
value indices and describes how raw 32-bit values scale to physical
values. Tables are stored as TOML::

    address = 0x7E11
    changeset = 0x1234ABCD

    [[params]]
    id = "Relais1.Modus"
    index = 42
    factor = 10.0
    minimum = 0
    maximum = 100
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..errors import ResolutionError

INT32_MIN = -0x80000000
INT32_MAX = 0x7FFFFFFF


class ParameterResolver(Protocol):
    def lookup(self, id_or_index: str | int) -> ParameterEntry | None: ...


def parse_index(text: str) -> int | None:
    """Interpret ``text`` as a literal value index.

    Returns ``None`` when ``text`` does not start with a digit (i.e. it is an
    identifier). Hexadecimal indices use the ``0x`` prefix.

    Raises:
        ValueError: If ``text`` looks numeric but is not a valid 16-bit index.
    """
    text = text.strip()
    if not text or not text[0].isdigit():
        return None
    try:
        index = int(text[2:], 16) if text.lower().startswith("0x") else int(text, 10)
    except ValueError as e:
        raise ValueError(f"Invalid value index {text!r}") from e
    if not 0 <= index <= 0x7FFF:
        raise ValueError(f"Value index {text!r} out of range")
    return index


@dataclass(frozen=True)
class ParameterEntry:
    """One controller value: where to find it and how to scale it.

    ``factor`` is the number of raw units per physical unit, so a reading is
    ``raw / factor`` and a write transmits ``round(value * factor)``.
    """

    identifier: str | None = None
    index: int | None = None
    factor: float = 1.0
    minimum: float = INT32_MIN
    maximum: float = INT32_MAX

    def __post_init__(self) -> None:
        if self.identifier is None and self.index is None:
            raise ValueError("Parameter needs an identifier or an index")
        if not self.factor:
            raise ValueError(f"Parameter {self.name} has a zero factor")
        if self.minimum > self.maximum:
            raise ValueError(
                f"Parameter {self.name}: minimum {self.minimum} > maximum {self.maximum}"
            )

    @property
    def name(self) -> str:
        return self.identifier if self.identifier is not None else str(self.index)

    def to_raw(self, value: float) -> int:
        """Convert a physical value to the raw value to transmit.

        Raises:
            ResolutionError: If ``value`` lies outside ``[minimum, maximum]``.
        """
        if value < self.minimum:
            raise ResolutionError(
                f"Value {value} for {self.name} is below minimum {self.minimum}"
            )
        if value > self.maximum:
            raise ResolutionError(
                f"Value {value} for {self.name} is above maximum {self.maximum}"
            )
        raw = round(value * self.factor)
        if not INT32_MIN <= raw <= INT32_MAX:
            raise ResolutionError(f"Raw value {raw} for {self.name} exceeds 32 bits")
        return raw

    def from_raw(self, raw: int) -> float:
        """Convert a raw value read from the controller to a physical value."""
        return raw / self.factor

    @classmethod
    def from_dict(cls, data: dict) -> ParameterEntry:
        index = data.get("index")
        return cls(
            identifier=data.get("id"),
            index=int(index) if index is not None else None,
            factor=float(data.get("factor", 1.0)),
            minimum=float(data.get("minimum", INT32_MIN)),
            maximum=float(data.get("maximum", INT32_MAX)),
        )

    @classmethod
    def unscaled(cls, id_or_index: str | int) -> ParameterEntry:
        """Entry for a value that is not described by any table."""
        if isinstance(id_or_index, int):
            return cls(index=id_or_index)
        index = parse_index(id_or_index)
        if index is not None:
            return cls(index=index)
        return cls(identifier=id_or_index)


@dataclass
class ParameterTable:
    """A parameter file for one controller firmware (changeset)."""

    address: int | None = None
    changeset: int | None = None
    entries: list[ParameterEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def lookup(self, id_or_index: str | int) -> ParameterEntry | None:
        """Find an entry by literal index or by identifier."""
        index = id_or_index if isinstance(id_or_index, int) else parse_index(id_or_index)
        if index is not None:
            return next((e for e in self.entries if e.index == index), None)
        return next((e for e in self.entries if e.identifier == id_or_index), None)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "changeset": self.changeset,
            "params": [
                {
                    "id": e.identifier,
                    "index": e.index,
                    "factor": e.factor,
                    "minimum": e.minimum,
                    "maximum": e.maximum,
                }
                for e in self.entries
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> ParameterTable:
        address = data.get("address")
        changeset = data.get("changeset")
        return cls(
            address=int(address) if address is not None else None,
            changeset=int(changeset) if changeset is not None else None,
            entries=[ParameterEntry.from_dict(p) for p in data.get("params", [])],
        )

    @classmethod
    def load(cls, path: str | Path) -> ParameterTable:
        """Load a table from a TOML parameter file.

        Raises:
            ValueError: If the file is not valid TOML or an entry is invalid.
        """
        path = Path(path)
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid parameter file {path}: {e}") from e
        return cls.from_dict(data)
