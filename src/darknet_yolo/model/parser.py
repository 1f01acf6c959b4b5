"""Darknet ``.cfg`` topology parser."""

from __future__ import annotations

from pathlib import Path

from darknet_yolo.errors import ConfigError
from darknet_yolo.model.config import BlockKind, Scalar, SettingValue, TopologyBlock

_COMMENT_PREFIXES = ("#", ";")


def parse_value(token: str) -> Scalar:
    """Coerce a single config token.

    All-alphabetic tokens stay strings. Anything else is numeric: a float if
    it contains a decimal point or exponent, an integer otherwise.

    Raises:
        ConfigError: If the token is neither alphabetic nor a number.
    """
    token = token.strip()
    if not token:
        raise ConfigError("Empty value")
    if token.isalpha():
        return token
    try:
        if "." in token or "e" in token.lower():
            return float(token)
        return int(token)
    except ValueError:
        raise ConfigError(f"Cannot parse value: {token!r}") from None


def parse_setting(line: str) -> tuple[str, SettingValue]:
    """Split a ``key=value[,value...]`` line into a key and coerced value(s)."""
    if "=" not in line:
        raise ConfigError(f"Expected key=value, got {line!r}")
    key, _, raw = line.partition("=")
    key = key.strip()
    if not key:
        raise ConfigError(f"Missing key in {line!r}")
    tokens = raw.split(",")
    if len(tokens) == 1:
        return key, parse_value(tokens[0])
    return key, [parse_value(t) for t in tokens]


def parse_cfg(text: str) -> list[TopologyBlock]:
    """Parse topology text into an ordered list of blocks.

    The first block holds global network settings; the rest are layers.

    Args:
        text: Contents of a Darknet ``.cfg`` file.

    Returns:
        Blocks in file order.

    Raises:
        ConfigError: On malformed lines, unknown sections, or a missing ``[net]`` block.
    """
    blocks: list[TopologyBlock] = []

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith(_COMMENT_PREFIXES):
            continue

        if line.startswith("["):
            if not line.endswith("]") or len(line) < 3:
                raise ConfigError(f"Line {lineno}: unterminated block header {line!r}")
            try:
                kind = BlockKind.from_header(line[1:-1])
            except ConfigError as e:
                raise ConfigError(f"Line {lineno}: {e}") from None
            blocks.append(TopologyBlock(kind=kind, line=lineno))
            continue

        if not blocks:
            raise ConfigError(f"Line {lineno}: setting outside of any block: {line!r}")
        try:
            key, value = parse_setting(line)
        except ConfigError as e:
            raise ConfigError(f"Line {lineno}: {e}") from None
        blocks[-1].settings[key] = value

    if not blocks:
        raise ConfigError("Topology contains no blocks")
    if blocks[0].kind is not BlockKind.NET:
        raise ConfigError(
            f"First block must be [net], got [{blocks[0].kind.value}] at line {blocks[0].line}"
        )
    if len(blocks) == 1:
        raise ConfigError("Topology declares no layers")
    return blocks


def read_cfg(path: str | Path) -> list[TopologyBlock]:
    """Read and parse a topology file."""
    with open(path) as f:
        return parse_cfg(f.read())
