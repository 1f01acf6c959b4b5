"""Reduce decoded head outputs to a final detection set.

The three column-wise primitives (threshold clip, best-class reduction,
compaction) come in two implementations with identical results:
``SequentialOps`` walks columns one at a time and serves as the reference,
``ParallelOps`` expresses each step as a vectorized tensor op that runs one
logical thread per column on whatever device the tensors live on.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

import torch
from torch import Tensor

from darknet_yolo.heads.detect import (
    BEST_CLASS,
    BEST_SCORE,
    CLASS_START,
    CONF,
    HEAD_ID,
    DetectionHead,
)
from darknet_yolo.utils.nms import class_nms

logger = logging.getLogger(__name__)


class DetectionOps(ABC):
    """Column-wise primitives over a detection matrix (attributes, N)."""

    @abstractmethod
    def clip(self, detections: Tensor, thresholds: Tensor) -> Tensor:
        """Zero the confidence of every column not strictly above its threshold.

        Modifies ``detections`` in place and returns it.
        """

    @abstractmethod
    def best_class(self, detections: Tensor, num_classes: int) -> Tensor:
        """Write each column's max class score and 1-based class index.

        The first maximum wins on ties. Modifies ``detections`` in place.
        """

    @abstractmethod
    def compact(self, detections: Tensor) -> Tensor:
        """Return only the columns with non-zero confidence, order preserved."""


class SequentialOps(DetectionOps):
    """Reference implementation: explicit loops over columns."""

    def clip(self, detections: Tensor, thresholds: Tensor) -> Tensor:
        conf = detections[CONF].tolist()
        limits = thresholds.tolist()
        for i, (c, t) in enumerate(zip(conf, limits)):
            if not c > t:
                conf[i] = 0.0
        detections[CONF] = detections.new_tensor(conf)
        return detections

    def best_class(self, detections: Tensor, num_classes: int) -> Tensor:
        scores = detections[CLASS_START : CLASS_START + num_classes].T.tolist()
        best_scores = []
        best_classes = []
        for row in scores:
            best, idx = row[0], 0
            for k in range(1, num_classes):
                if row[k] > best:
                    best, idx = row[k], k
            best_scores.append(best)
            best_classes.append(idx + 1)
        detections[BEST_SCORE] = detections.new_tensor(best_scores)
        detections[BEST_CLASS] = detections.new_tensor(best_classes)
        return detections

    def compact(self, detections: Tensor) -> Tensor:
        keep = [i for i, c in enumerate(detections[CONF].tolist()) if c > 0]
        index = torch.tensor(keep, dtype=torch.long, device=detections.device)
        return detections[:, index]


class ParallelOps(DetectionOps):
    """Vectorized implementation: one logical thread per column."""

    def clip(self, detections: Tensor, thresholds: Tensor) -> Tensor:
        conf = detections[CONF]
        detections[CONF] = torch.where(conf > thresholds, conf, torch.zeros_like(conf))
        return detections

    def best_class(self, detections: Tensor, num_classes: int) -> Tensor:
        scores = detections[CLASS_START : CLASS_START + num_classes]
        values, indices = scores.max(dim=0)
        detections[BEST_SCORE] = values
        detections[BEST_CLASS] = (indices + 1).to(detections.dtype)
        return detections

    def compact(self, detections: Tensor) -> Tensor:
        # Stream compaction: survival bitmap, prefix sum for target columns, scatter.
        keep = detections[CONF] > 0
        bitmap = keep.to(torch.long)
        targets = torch.cumsum(bitmap, dim=0) - 1
        count = int(bitmap.sum())

        out = detections.new_empty(detections.shape[0], count)
        out[:, targets[keep]] = detections[:, keep]
        return out


class PostProcessor:
    """Threshold, reduce, compact and suppress decoded candidates.

    Example:
        post = PostProcessor(ParallelOps(), image_size=(416, 416))
        detections = post.process([h.decode(store[h.source]) for h in heads], heads)
    """

    def __init__(self, ops: DetectionOps, image_size: tuple[int, int]):
        """Initialize post-processor.

        Args:
            ops: Primitive implementation (sequential or parallel).
            image_size: Network input (width, height) in pixels.
        """
        self.ops = ops
        self.image_size = image_size

    @staticmethod
    def _per_column(detections: Tensor, values: list[float]) -> Tensor:
        """Look up a per-head value for every column via its head id row."""
        table = detections.new_tensor(values)
        return table[detections[HEAD_ID].long() - 1]

    def reduce(self, detections: Tensor, heads: Sequence[DetectionHead]) -> Tensor:
        """Clip, best-class and compact a concatenated detection matrix.

        Returns:
            Surviving columns before NMS.
        """
        num_classes = heads[0].num_classes
        thresholds = self._per_column(detections, [h.confidence_threshold for h in heads])
        self.ops.clip(detections, thresholds)
        self.ops.best_class(detections, num_classes)
        return self.ops.compact(detections)

    def process(self, matrices: Sequence[Tensor], heads: Sequence[DetectionHead]) -> Tensor:
        """Produce the final detection set.

        Args:
            matrices: One decoded matrix per head, as returned by ``DetectionHead.decode``.
            heads: The heads that produced them, in the same order.

        Returns:
            Detection matrix (attributes, K). K is 0 when nothing clears the
            confidence threshold.
        """
        detections = torch.cat(list(matrices), dim=1)
        survivors = self.reduce(detections, heads)

        if survivors.shape[1] == 0:
            logger.debug("no candidates above confidence threshold")
            return survivors

        overlap = self._per_column(survivors, [h.overlap_threshold for h in heads])
        result = class_nms(survivors, overlap, self.image_size)
        logger.debug(f"{survivors.shape[1]} candidates, {result.shape[1]} after NMS")
        return result
