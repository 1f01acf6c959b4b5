"""Chain execution over a per-call buffer arena."""

from __future__ import annotations

import torch.nn as nn
from torch import Tensor

from darknet_yolo.blocks.common import SkipStep
from darknet_yolo.errors import GraphError, ShapeError


class BufferStore:
    """Fixed-size arena of chain outputs for one inference call.

    Slot 0 holds the input batch and slot k the output of chain k. Every
    slot is written once; a chain may only read slots written before it.
    """

    def __init__(self, size: int):
        self._slots: list[Tensor | None] = [None] * size

    def __len__(self) -> int:
        return len(self._slots)

    def __getitem__(self, idx: int) -> Tensor:
        value = self._slots[idx]
        if value is None:
            raise GraphError(f"buffer {idx} read before it was written")
        return value

    def __setitem__(self, idx: int, value: Tensor) -> None:
        if self._slots[idx] is not None:
            raise GraphError(f"buffer {idx} written twice")
        self._slots[idx] = value

    def __contains__(self, idx: int) -> bool:
        return 0 <= idx < len(self._slots) and self._slots[idx] is not None


class Chain(nn.Module):
    """A run of feed-forward steps between two buffer boundaries.

    Args:
        index: Buffer id this chain writes.
        steps: Plain modules (x -> x) and skip steps (x, store -> x).
        layers: Layer positions covered, for debugging.
    """

    def __init__(self, index: int, steps: list[nn.Module], layers: tuple[int, int]):
        super().__init__()
        self.index = index
        self.steps = nn.ModuleList(steps)
        self.layers = layers

    def forward(self, x: Tensor, store: BufferStore) -> Tensor:
        for step in self.steps:
            x = step(x, store) if isinstance(step, SkipStep) else step(x)
        return x

    def extra_repr(self) -> str:
        return f"index={self.index}, layers={self.layers[0]}..{self.layers[1]}"


class Executor:
    """Runs compiled chains in order.

    Example:
        store = Executor(chains, (1, 3, 416, 416)).run(images)
        features = store[head.source]
    """

    def __init__(self, chains: nn.ModuleList, input_size: tuple[int, int, int, int]):
        self.chains = chains
        self.input_size = tuple(input_size)

    def check_input(self, x: Tensor) -> None:
        """Raise ShapeError unless ``x`` matches the declared input size exactly."""
        if x.dim() != 4:
            raise ShapeError(f"Expected 4-D input (B, C, H, W), got {x.dim()}-D")
        if tuple(x.shape) != self.input_size:
            raise ShapeError(f"Expected input of shape {self.input_size}, got {tuple(x.shape)}")

    def run(self, x: Tensor) -> BufferStore:
        """Execute all chains on ``x``.

        Args:
            x: Input batch [B, C, H, W].

        Returns:
            A fresh BufferStore holding the input and every chain output.
        """
        self.check_input(x)
        store = BufferStore(len(self.chains) + 1)
        store[0] = x
        for chain in self.chains:
            store[chain.index] = chain(store[chain.index - 1], store)
        return store
