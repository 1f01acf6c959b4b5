"""darknet_yolo: Darknet YOLO topologies compiled to PyTorch for inference."""

from darknet_yolo.config import InferenceConfig
from darknet_yolo.errors import ConfigError, DarknetError, GraphError, ShapeError, WeightFormatError
from darknet_yolo.model.model import YOLO
from darknet_yolo.model.parser import parse_cfg, read_cfg
from darknet_yolo.utils.device import get_device
from darknet_yolo.utils.postprocess import ParallelOps, PostProcessor, SequentialOps

__version__ = "0.1.0"

__all__ = [
    "YOLO",
    "InferenceConfig",
    "parse_cfg",
    "read_cfg",
    "get_device",
    "PostProcessor",
    "ParallelOps",
    "SequentialOps",
    "DarknetError",
    "ConfigError",
    "WeightFormatError",
    "GraphError",
    "ShapeError",
]
