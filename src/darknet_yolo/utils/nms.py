"""Class-wise greedy Non-Maximum Suppression."""

from __future__ import annotations

import torch
from torch import Tensor

from darknet_yolo.heads.detect import BEST_CLASS, CONF


def box_iou(box: Tensor, boxes: Tensor) -> Tensor:
    """IoU of one box against many, with pixel-inclusive edges.

    A box spanning pixels x1..x2 is ``x2 - x1 + 1`` wide.

    Args:
        box: (4,) as x1, y1, x2, y2 in pixels.
        boxes: (4, M) in the same format.

    Returns:
        IoU per column, shape (M,).
    """
    ix1 = torch.maximum(box[0], boxes[0])
    iy1 = torch.maximum(box[1], boxes[1])
    ix2 = torch.minimum(box[2], boxes[2])
    iy2 = torch.minimum(box[3], boxes[3])

    inter = (ix2 - ix1 + 1).clamp(min=0) * (iy2 - iy1 + 1).clamp(min=0)
    area1 = (box[2] - box[0] + 1) * (box[3] - box[1] + 1)
    area2 = (boxes[2] - boxes[0] + 1) * (boxes[3] - boxes[1] + 1)
    return inter / (area1 + area2 - inter)


def _greedy_nms(boxes: Tensor, order: Tensor, overlap: Tensor) -> Tensor:
    """Keep the best remaining box, drop everything overlapping it, repeat.

    Args:
        boxes: (4, N) pixel boxes for all candidates.
        order: Candidate columns sorted by confidence, best first.
        overlap: Per-column IoU threshold; the kept box's value applies.

    Returns:
        Kept columns in confidence order.
    """
    keep = []
    while order.numel() > 0:
        idx = order[0]
        keep.append(idx)

        rest = order[1:]
        if rest.numel() == 0:
            break
        ious = box_iou(boxes[:, idx], boxes[:, rest])
        order = rest[ious <= overlap[idx]]

    return torch.stack(keep)


def class_nms(
    detections: Tensor,
    overlap: Tensor,
    image_size: tuple[int, int],
) -> Tensor:
    """Apply greedy NMS separately within each best-class group.

    Args:
        detections: Detection matrix (attributes, N) with best-class row filled.
        overlap: IoU threshold per column.
        image_size: (width, height) used to scale image-relative boxes to pixels.

    Returns:
        Surviving columns, grouped by ascending class id and sorted by
        confidence within each group.
    """
    if detections.shape[1] == 0:
        return detections

    width, height = image_size
    scale = detections.new_tensor([width, height, width, height]).view(4, 1)
    boxes = detections[:4] * scale

    classes = detections[BEST_CLASS]
    kept: list[Tensor] = []
    # Groups never interact, so each could run on its own worker.
    for cls in torch.unique(classes):
        cols = torch.nonzero(classes == cls).flatten()
        order = cols[torch.argsort(detections[CONF, cols], descending=True, stable=True)]
        kept.append(_greedy_nms(boxes, order, overlap))

    return detections[:, torch.cat(kept)]
