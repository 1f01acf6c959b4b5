"""Model construction and parsing."""

from darknet_yolo.model.builder import CompiledGraph, GraphBuilder, build_graph, resolve_index
from darknet_yolo.model.config import BlockKind, NetworkSettings, TopologyBlock
from darknet_yolo.model.executor import BufferStore, Chain, Executor
from darknet_yolo.model.model import YOLO
from darknet_yolo.model.parser import parse_cfg, read_cfg
from darknet_yolo.model.weights import LayerParams, WeightReader, flip_kernel

__all__ = [
    "YOLO",
    "BlockKind",
    "NetworkSettings",
    "TopologyBlock",
    "parse_cfg",
    "read_cfg",
    "WeightReader",
    "LayerParams",
    "flip_kernel",
    "GraphBuilder",
    "CompiledGraph",
    "build_graph",
    "resolve_index",
    "BufferStore",
    "Chain",
    "Executor",
]
