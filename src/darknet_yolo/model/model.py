"""YOLO model class."""

from __future__ import annotations

import logging
from pathlib import Path

import torch
import torch.nn as nn
from torch import Tensor

from darknet_yolo.config import InferenceConfig
from darknet_yolo.errors import GraphError
from darknet_yolo.model.builder import CompiledGraph, build_graph
from darknet_yolo.model.config import TopologyBlock
from darknet_yolo.model.executor import BufferStore, Executor
from darknet_yolo.model.parser import parse_cfg, read_cfg
from darknet_yolo.model.weights import WeightReader
from darknet_yolo.utils.device import get_device
from darknet_yolo.utils.postprocess import ParallelOps, PostProcessor, SequentialOps

logger = logging.getLogger(__name__)


class YOLO(nn.Module):
    """Darknet YOLO detection model.

    Example:
        model = YOLO.from_files("yolov3.cfg", "yolov3.weights")
        detections = model(images)  # (5 + classes + 4, K)
    """

    def __init__(self, graph: CompiledGraph, config: InferenceConfig | None = None):
        """Initialize YOLO model.

        Args:
            graph: Output of ``build_graph``.
            config: Runtime overrides; defaults to InferenceConfig().
        """
        super().__init__()
        if len(graph.heads) == 0:
            raise GraphError("topology declares no [yolo] or [region] head")

        self.config = config or InferenceConfig()
        self.net = graph.net
        self.chains = graph.chains
        self.heads = graph.heads
        self.channels = graph.channels
        self.layer_to_buffer = graph.layer_to_buffer
        self.version = graph.version
        self._input_size = graph.input_size
        self._grid_size = graph.grid_size

        for head in self.heads:
            if self.config.conf_threshold is not None:
                head.confidence_threshold = self.config.conf_threshold
            if self.config.iou_threshold is not None:
                head.overlap_threshold = self.config.iou_threshold

        ops = ParallelOps() if self.config.parallel else SequentialOps()
        self.postprocessor = PostProcessor(ops, (self.net.width, self.net.height))
        self.eval()

    @property
    def input_size(self) -> tuple[int, int, int, int]:
        """Exact input shape (batch, channels, height, width)."""
        return self._input_size

    @property
    def grid_size(self) -> int:
        """Smallest head grid dimension."""
        assert self._grid_size is not None
        return self._grid_size

    @property
    def num_classes(self) -> int:
        return self.heads[0].num_classes

    def run_chains(self, images: Tensor) -> BufferStore:
        """Execute the graph and return this call's buffer store."""
        return Executor(self.chains, self._input_size).run(images)

    def decode(self, images: Tensor) -> Tensor:
        """Run the network and decode every head, without post-processing.

        Args:
            images: Input batch [B, C, H, W] matching ``input_size``.

        Returns:
            Concatenated detection matrix over all heads.
        """
        with torch.no_grad():
            store = self.run_chains(images)
            return torch.cat([h.decode(store[h.source]) for h in self.heads], dim=1)

    def forward(self, images: Tensor) -> Tensor:
        """Detect objects.

        Args:
            images: Input batch [B, C, H, W] matching ``input_size``.

        Returns:
            Detection matrix (5 + classes + 4, K) with rows
            [x1, y1, x2, y2, conf, class scores..., best_score, best_class,
            head_id, batch_id]; K may be 0.

        Raises:
            ShapeError: If ``images`` does not match ``input_size``.
        """
        with torch.no_grad():
            store = self.run_chains(images)
            matrices = [h.decode(store[h.source]) for h in self.heads]
            return self.postprocessor.process(matrices, self.heads)

    def summary(self) -> str:
        head = self.heads[0]
        return (
            f"DarkNet {'.'.join(str(v) for v in self.version)}\n"
            f"WxH: {self.net.width}x{self.net.height}   channels: {self.net.channels}   "
            f"batchsize: {self._input_size[0]}\n"
            f"gridsize: {self._grid_size}   classes: {self.num_classes}   "
            f"thresholds: Detect {head.confidence_threshold}. Overlap {head.overlap_threshold}"
        )

    def __repr__(self) -> str:
        return self.summary()

    @classmethod
    def from_config(
        cls,
        text: str,
        weights: bytes,
        config: InferenceConfig | None = None,
    ) -> YOLO:
        """Build model from topology text and weight bytes.

        Args:
            text: Topology file contents.
            weights: Weight file contents.
            config: Runtime overrides.

        Returns:
            YOLO model in eval mode.
        """
        return cls._build(parse_cfg(text), WeightReader(weights), config)

    @classmethod
    def from_files(
        cls,
        cfg_path: str | Path,
        weights_path: str | Path,
        config: InferenceConfig | None = None,
    ) -> YOLO:
        """Build model from a ``.cfg`` topology and ``.weights`` file.

        Args:
            cfg_path: Path to the topology file.
            weights_path: Path to the weight file.
            config: Runtime overrides.

        Returns:
            YOLO model in eval mode, on ``config.device``.
        """
        return cls._build(read_cfg(cfg_path), WeightReader.from_path(weights_path), config)

    @classmethod
    def _build(
        cls, blocks: list[TopologyBlock], reader: WeightReader, config: InferenceConfig | None
    ) -> YOLO:
        config = config or InferenceConfig()
        graph = build_graph(blocks, reader, config.batch_size)
        model = cls(graph, config).to(get_device(config.device))
        logger.info(f"Model: {len(model.chains)} chains, {len(model.heads)} heads")
        logger.info(model.summary())
        return model
