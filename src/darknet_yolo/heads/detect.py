"""Detection heads: settings, precomputed grids and output decoding."""

from __future__ import annotations

from dataclasses import dataclass

import torch
import torch.nn as nn
from torch import Tensor

from darknet_yolo.errors import ConfigError, GraphError
from darknet_yolo.heads.anchor import make_grid_tensors
from darknet_yolo.model.config import BlockKind, TopologyBlock

# Rows of a decoded detection matrix
X1, Y1, X2, Y2 = 0, 1, 2, 3
CONF = 4
CLASS_START = 5
BEST_SCORE = -4
BEST_CLASS = -3
HEAD_ID = -2
BATCH_ID = -1
EXTRA_ATTRIBUTES = 4


def num_rows(num_classes: int) -> int:
    """Height of a detection matrix for ``num_classes`` classes."""
    return CLASS_START + num_classes + EXTRA_ATTRIBUTES


@dataclass
class HeadSpec:
    """Detection head settings read from a ``[yolo]`` or ``[region]`` block.

    Attributes:
        variant: BlockKind.YOLO (anchors in pixels) or BlockKind.REGION
            (anchors in grid cells).
        num_classes: Number of object classes.
        anchors: Selected (width, height) pairs as written in the file.
        confidence_threshold: Detections at or below this objectness are dropped.
        overlap_threshold: NMS drops boxes whose IoU exceeds this.
    """

    variant: BlockKind
    num_classes: int
    anchors: list[tuple[float, float]]
    confidence_threshold: float = 0.0
    overlap_threshold: float = 1.0

    @property
    def attributes(self) -> int:
        return CLASS_START + self.num_classes

    @property
    def num_anchors(self) -> int:
        return len(self.anchors)

    def pixel_anchors(self, stride_w: int, stride_h: int) -> list[tuple[float, float]]:
        """Anchor sizes in input pixels."""
        if self.variant is BlockKind.REGION:
            units = self.anchors
        else:
            units = [(w / stride_w, h / stride_h) for w, h in self.anchors]
        return [(w * stride_w, h * stride_h) for w, h in units]

    @classmethod
    def from_block(cls, block: TopologyBlock) -> HeadSpec:
        """Parse head settings.

        ``mask`` (0-based) picks anchor pairs; without a mask every pair is
        used in declaration order.
        """
        if not block.kind.is_head:
            raise ConfigError(f"[{block.kind.value}] is not a detection head")

        num_classes = block.get_int("classes")
        if num_classes < 1:
            raise ConfigError(f"Head at line {block.line}: classes must be >= 1")

        flat = [float(v) for v in block.get_list("anchors")]
        if len(flat) % 2:
            raise ConfigError(f"Head at line {block.line}: anchors must come in pairs")
        pairs = list(zip(flat[0::2], flat[1::2]))

        if "mask" in block.settings:
            mask = [int(m) for m in block.get_list("mask")]
            if any(m < 0 or m >= len(pairs) for m in mask):
                raise ConfigError(
                    f"Head at line {block.line}: mask {mask} out of range for {len(pairs)} anchors"
                )
            pairs = [pairs[m] for m in mask]
        if not pairs:
            raise ConfigError(f"Head at line {block.line}: no anchors")

        conf = block.get("truth_thresh", block.get("thresh", 0.0))
        overlap = block.get("ignore_thresh", block.get("nms_thresh", 1.0))
        return cls(
            variant=block.kind,
            num_classes=num_classes,
            anchors=pairs,
            confidence_threshold=float(conf),
            overlap_threshold=float(overlap),
        )


class DetectionHead(nn.Module):
    """Decodes one head's raw buffer into image-relative boxes.

    The offset/scale/anchor tensors are registered buffers so they follow
    the model across devices.
    """

    def __init__(
        self,
        index: int,
        source: int,
        spec: HeadSpec,
        feature_shape: tuple[int, int, int, int],
        image_size: tuple[int, int],
    ):
        """Initialize detection head.

        Args:
            index: 1-based head id written into every candidate it produces.
            source: Buffer id holding this head's input.
            spec: Settings parsed from the topology.
            feature_shape: Shape [B, C, H, W] of the source buffer.
            image_size: Network input (width, height) in pixels.
        """
        super().__init__()
        batch, channels, grid_h, grid_w = feature_shape
        if channels != spec.num_anchors * spec.attributes:
            raise GraphError(
                f"Head {index} expects {spec.num_anchors} x {spec.attributes} = "
                f"{spec.num_anchors * spec.attributes} channels, buffer {source} has {channels}"
            )

        self.index = index
        self.source = source
        self.spec = spec
        self.batch = batch
        self.grid_w = grid_w
        self.grid_h = grid_h
        self.image_w, self.image_h = image_size
        self.stride_w = self.image_w // grid_w
        self.stride_h = self.image_h // grid_h
        self.confidence_threshold = spec.confidence_threshold
        self.overlap_threshold = spec.overlap_threshold

        offset, scale, anchor = make_grid_tensors(
            grid_w,
            grid_h,
            self.stride_w,
            self.stride_h,
            spec.pixel_anchors(self.stride_w, self.stride_h),
            batch,
        )
        self.register_buffer("offset", offset, persistent=False)
        self.register_buffer("scale", scale, persistent=False)
        self.register_buffer("anchor", anchor, persistent=False)
        self.register_buffer(
            "image_scale",
            torch.tensor([self.image_w, self.image_h], dtype=torch.float32).view(1, 1, 2, 1, 1),
            persistent=False,
        )

    @property
    def num_classes(self) -> int:
        return self.spec.num_classes

    @property
    def num_anchors(self) -> int:
        return self.spec.num_anchors

    def decode(self, features: Tensor) -> Tensor:
        """Turn a raw head buffer into a flat detection matrix.

        Args:
            features: Source buffer [B, A * (5 + classes), H, W]. Not modified.

        Returns:
            Matrix [5 + classes + 4, B * A * H * W]. Columns run over width
            fastest, then height, anchor and batch.
        """
        attrs = self.spec.attributes
        p = features.reshape(self.batch, self.num_anchors, attrs, self.grid_h, self.grid_w)

        xy = (p[:, :, 0:2].sigmoid() + self.offset) * self.scale
        wh = p[:, :, 2:4].exp() * self.anchor
        scores = p[:, :, 4:].sigmoid()

        x1y1 = (xy - wh * 0.5) / self.image_scale
        x2y2 = x1y1 + wh / self.image_scale

        extra = features.new_zeros(
            self.batch, self.num_anchors, EXTRA_ATTRIBUTES, self.grid_h, self.grid_w
        )
        extra[:, :, HEAD_ID] = self.index
        batch_ids = torch.arange(1, self.batch + 1, dtype=extra.dtype, device=extra.device)
        extra[:, :, BATCH_ID] = batch_ids.view(-1, 1, 1, 1)

        out = torch.cat((x1y1, x2y2, scores, extra), dim=2)
        return out.permute(2, 0, 1, 3, 4).reshape(attrs + EXTRA_ATTRIBUTES, -1)

    def extra_repr(self) -> str:
        return (
            f"index={self.index}, source={self.source}, grid={self.grid_w}x{self.grid_h}, "
            f"anchors={self.num_anchors}, classes={self.num_classes}"
        )
