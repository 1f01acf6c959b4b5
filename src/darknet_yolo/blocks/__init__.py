"""Building blocks for Darknet graphs."""

from darknet_yolo.blocks.common import MaxPool, Reorg, Route, Shortcut, SkipStep, Upsample
from darknet_yolo.blocks.conv import Conv, get_activation

__all__ = [
    # Convolutions
    "Conv",
    "get_activation",
    # Shape changes
    "Upsample",
    "Reorg",
    "MaxPool",
    # Skip connections
    "SkipStep",
    "Route",
    "Shortcut",
]
