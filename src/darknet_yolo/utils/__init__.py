"""Utilities for Darknet inference."""

from darknet_yolo.utils.device import get_device
from darknet_yolo.utils.nms import box_iou, class_nms
from darknet_yolo.utils.postprocess import DetectionOps, ParallelOps, PostProcessor, SequentialOps

__all__ = [
    "get_device",
    "box_iou",
    "class_nms",
    "DetectionOps",
    "SequentialOps",
    "ParallelOps",
    "PostProcessor",
]
