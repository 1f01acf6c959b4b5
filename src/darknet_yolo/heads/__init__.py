"""Detection heads for Darknet models."""

from darknet_yolo.heads.anchor import make_grid_tensors
from darknet_yolo.heads.detect import DetectionHead, HeadSpec

__all__ = [
    "DetectionHead",
    "HeadSpec",
    "make_grid_tensors",
]
