"""Precomputed grid tensors for anchor-based decoding."""

import torch
from torch import Tensor


def make_grid_tensors(
    grid_w: int,
    grid_h: int,
    stride_w: int,
    stride_h: int,
    anchors: list[tuple[float, float]],
    batch: int,
    dtype: torch.dtype = torch.float32,
) -> tuple[Tensor, Tensor, Tensor]:
    """Build the offset, scale and anchor tensors for one detection head.

    All three have shape [batch, num_anchors, 2, grid_h, grid_w]; index 0
    on the third axis is x/width, index 1 is y/height.

    Args:
        grid_w: Head grid width in cells.
        grid_h: Head grid height in cells.
        stride_w: Input pixels per cell horizontally.
        stride_h: Input pixels per cell vertically.
        anchors: (width, height) per anchor, in pixels.
        batch: Batch size.
        dtype: Tensor dtype.

    Returns:
        offset: Zero-based cell coordinates (column for x, row for y).
        scale: Stride per axis, broadcast over the grid.
        anchor: Anchor width/height per anchor, broadcast over the grid.
    """
    num_anchors = len(anchors)
    shape = (batch, num_anchors, 2, grid_h, grid_w)

    sy, sx = torch.meshgrid(
        torch.arange(grid_h, dtype=dtype),
        torch.arange(grid_w, dtype=dtype),
        indexing="ij",
    )
    offset = torch.stack((sx, sy)).expand(shape).contiguous()

    strides = torch.tensor([stride_w, stride_h], dtype=dtype)
    scale = strides.view(1, 1, 2, 1, 1).expand(shape).contiguous()

    sizes = torch.tensor(anchors, dtype=dtype).view(1, num_anchors, 2, 1, 1)
    anchor = sizes.expand(shape).contiguous()

    return offset, scale, anchor
