"""Exceptions raised while building or running a Darknet model."""


class DarknetError(Exception):
    """Base class for all errors raised by darknet_yolo."""


class ConfigError(DarknetError, ValueError):
    """Malformed topology file or unsupported setting."""


class WeightFormatError(DarknetError, ValueError):
    """Weight blob does not match the topology (usually truncated)."""


class GraphError(DarknetError, ValueError):
    """Unresolvable skip reference or inconsistent layer shapes."""


class ShapeError(DarknetError, ValueError):
    """Inference input does not match the model's declared input size."""
