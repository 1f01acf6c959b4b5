"""Topology dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from darknet_yolo.errors import ConfigError

Scalar = int | float | str
SettingValue = Scalar | list[Scalar]


class BlockKind(Enum):
    """Section types understood by the graph builder."""

    NET = "net"
    CONVOLUTIONAL = "convolutional"
    UPSAMPLE = "upsample"
    REORG = "reorg"
    MAXPOOL = "maxpool"
    ROUTE = "route"
    SHORTCUT = "shortcut"
    YOLO = "yolo"
    REGION = "region"

    @classmethod
    def from_header(cls, name: str) -> BlockKind:
        """Resolve a ``[section]`` name, accepting ``[network]`` for ``[net]``."""
        key = name.strip().lower()
        if key == "network":
            key = "net"
        try:
            return cls(key)
        except ValueError:
            valid = [k.value for k in cls]
            raise ConfigError(f"Unknown block kind: [{name}]. Supported: {valid}") from None

    @property
    def is_head(self) -> bool:
        return self in (BlockKind.YOLO, BlockKind.REGION)


@dataclass
class TopologyBlock:
    """One ``[section]`` of a topology file.

    Attributes:
        kind: Section type.
        settings: ``key=value`` pairs, values coerced to int/float/str or lists of them.
        line: Line number of the section header (1-based), for error messages.
    """

    kind: BlockKind
    settings: dict[str, SettingValue] = field(default_factory=dict)
    line: int = 0

    def get(self, key: str, default: SettingValue | None = None) -> SettingValue | None:
        return self.settings.get(key, default)

    def require(self, key: str) -> SettingValue:
        """Return a setting, raising ConfigError if it is missing."""
        if key not in self.settings:
            raise ConfigError(
                f"[{self.kind.value}] block at line {self.line} is missing '{key}'"
            )
        return self.settings[key]

    def get_int(self, key: str, default: int | None = None) -> int:
        value = self.require(key) if default is None else self.settings.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(
                f"[{self.kind.value}] block at line {self.line}: '{key}' must be an integer, "
                f"got {value!r}"
            )
        return value

    def get_list(self, key: str) -> list[Scalar]:
        """Return a setting as a list, wrapping scalars."""
        value = self.require(key)
        return list(value) if isinstance(value, list) else [value]


@dataclass
class NetworkSettings:
    """Global ``[net]`` settings.

    Attributes:
        width: Input image width in pixels.
        height: Input image height in pixels.
        channels: Input image channels.
        batch: Batch size declared by the topology.
    """

    width: int
    height: int
    channels: int
    batch: int = 1

    @classmethod
    def from_block(cls, block: TopologyBlock) -> NetworkSettings:
        if block.kind is not BlockKind.NET:
            raise ConfigError(f"Expected [net] block, got [{block.kind.value}]")
        return cls(
            width=block.get_int("width"),
            height=block.get_int("height"),
            channels=block.get_int("channels"),
            batch=block.get_int("batch", 1),
        )
