"""Shape-changing and skip-connection blocks."""

from __future__ import annotations

from typing import TYPE_CHECKING

import torch
import torch.nn as nn
import torch.nn.functional as F
from torch import Tensor

from darknet_yolo.blocks.conv import get_activation
from darknet_yolo.errors import GraphError

if TYPE_CHECKING:
    from darknet_yolo.model.executor import BufferStore


class Upsample(nn.Module):
    """Nearest-neighbour upsampling by an integer factor.

    Broadcasts against a ones tensor and reshapes instead of indexing, so
    the whole expansion is a single elementwise kernel.
    """

    def __init__(self, stride: int = 2):
        super().__init__()
        self.stride = stride

    def forward(self, x: Tensor) -> Tensor:
        b, c, h, w = x.shape
        s = self.stride
        ones = torch.ones(1, 1, 1, s, 1, s, dtype=x.dtype, device=x.device)
        return (x.view(b, c, h, 1, w, 1) * ones).reshape(b, c, h * s, w * s)


class Reorg(nn.Module):
    """Fold spatial positions into channels without moving data.

    (C, H, W) becomes (C * s^2, H / s, W / s); element count is unchanged.
    """

    def __init__(self, stride: int = 2):
        super().__init__()
        self.stride = stride

    def forward(self, x: Tensor) -> Tensor:
        b, c, h, w = x.shape
        s = self.stride
        if h % s or w % s:
            raise GraphError(f"reorg stride {s} does not divide spatial size {h}x{w}")
        return x.reshape(b, c * s * s, h // s, w // s)


class MaxPool(nn.Module):
    """Max pooling.

    With stride 1 the input is first padded by replicating its last
    ``size - 1`` rows and columns so the output keeps the input's spatial size.
    """

    def __init__(self, size: int = 2, stride: int = 2):
        super().__init__()
        self.size = size
        self.stride = stride

    def forward(self, x: Tensor) -> Tensor:
        if self.stride == 1:
            p = self.size - 1
            if p:
                x = F.pad(x, (0, p, 0, p), mode="replicate")
            return F.max_pool2d(x, self.size, stride=1)
        return F.max_pool2d(x, self.size, stride=self.stride)


class SkipStep(nn.Module):
    """A step that reads earlier chain outputs from the buffer store."""

    def forward(self, x: Tensor, store: BufferStore) -> Tensor:
        raise NotImplementedError


class Route(SkipStep):
    """Pull one earlier buffer, or concatenate several along channels.

    Args:
        sources: Buffer ids to read, in concatenation order.
        groups: Split a single source into this many channel groups.
        group_id: Which channel group to keep.
    """

    def __init__(self, sources: list[int], groups: int = 1, group_id: int = 0):
        super().__init__()
        self.sources = tuple(sources)
        self.groups = groups
        self.group_id = group_id

    def forward(self, x: Tensor, store: BufferStore) -> Tensor:
        tensors = [store[i] for i in self.sources]
        if len(tensors) == 1:
            out = tensors[0]
            if self.groups > 1:
                out = out.chunk(self.groups, dim=1)[self.group_id]
            return out
        try:
            return torch.cat(tensors, dim=1)
        except RuntimeError as e:
            shapes = [tuple(t.shape) for t in tensors]
            raise GraphError(f"route cannot concatenate buffers {self.sources}: {shapes}") from e

    def extra_repr(self) -> str:
        return f"sources={self.sources}, groups={self.groups}, group_id={self.group_id}"


class Shortcut(SkipStep):
    """Elementwise add of the running tensor and an earlier buffer, then activation."""

    def __init__(self, source: int, activation: str = "linear"):
        super().__init__()
        self.source = source
        self.act = get_activation(activation)

    def forward(self, x: Tensor, store: BufferStore) -> Tensor:
        other = store[self.source]
        if other.shape != x.shape:
            raise GraphError(
                f"shortcut from buffer {self.source} has shape {tuple(other.shape)}, "
                f"expected {tuple(x.shape)}"
            )
        return self.act(x + other)

    def extra_repr(self) -> str:
        return f"source={self.source}"
