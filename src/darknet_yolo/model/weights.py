"""Darknet ``.weights`` reader."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import torch
from torch import Tensor

from darknet_yolo.errors import WeightFormatError

logger = logging.getLogger(__name__)

_HEADER = np.dtype("<i4")
_FLOAT = np.dtype("<f4")
_HEADER_WORDS = 5


def flip_kernel(weight: Tensor) -> Tensor:
    """Flip a kernel along both spatial axes.

    Converts between cross-correlation and true-convolution kernels. Applying
    it twice returns the original tensor.
    """
    return torch.flip(weight, dims=(-2, -1))


@dataclass
class WeightsHeader:
    """Leading words of a weight file.

    Attributes:
        major: Format major version.
        minor: Format minor version.
        revision: Format revision.
        seen: The two trailing words (image counter written by the trainer).
    """

    major: int
    minor: int
    revision: int
    seen: tuple[int, int] = (0, 0)

    @property
    def version(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.revision)


@dataclass
class LayerParams:
    """Parameters of one convolutional layer.

    ``weight`` is stored as a true-convolution kernel, i.e. flipped relative
    to the cross-correlation kernel in the file.

    Attributes:
        weight: Kernel of shape (filters, in_channels, k, k).
        bias: Convolution bias (zeros when batch norm is present).
        bn_scale: Batch-norm gamma, or None.
        bn_shift: Batch-norm beta, or None.
        bn_mean: Batch-norm running mean, or None.
        bn_var: Batch-norm running variance, or None.
    """

    weight: Tensor
    bias: Tensor
    bn_scale: Tensor | None = None
    bn_shift: Tensor | None = None
    bn_mean: Tensor | None = None
    bn_var: Tensor | None = None

    @property
    def has_batch_norm(self) -> bool:
        return self.bn_scale is not None


class WeightReader:
    """Sequential cursor over a weight blob.

    Example:
        reader = WeightReader.from_path("yolov3.weights")
        header = reader.read_header()
        params = reader.read_conv(3, 3, 32, batch_normalize=True)
    """

    def __init__(self, data: bytes):
        self._data = memoryview(data)
        self._pos = 0

    @classmethod
    def from_path(cls, path: str | Path) -> WeightReader:
        with open(path, "rb") as f:
            return cls(f.read())

    @property
    def remaining(self) -> int:
        """Number of unread bytes."""
        return len(self._data) - self._pos

    def _take(self, count: int, dtype: np.dtype) -> np.ndarray:
        nbytes = count * dtype.itemsize
        if nbytes > self.remaining:
            raise WeightFormatError(
                f"Weight file truncated at byte {self._pos}: need {nbytes} bytes, "
                f"{self.remaining} remaining"
            )
        arr = np.frombuffer(self._data, dtype=dtype, count=count, offset=self._pos)
        self._pos += nbytes
        return arr

    def _floats(self, count: int) -> Tensor:
        return torch.from_numpy(self._take(count, _FLOAT).astype(np.float32))

    def read_header(self) -> WeightsHeader:
        """Consume the five int32 header words."""
        major, minor, revision, seen_lo, seen_hi = (
            int(v) for v in self._take(_HEADER_WORDS, _HEADER)
        )
        return WeightsHeader(major, minor, revision, (seen_lo, seen_hi))

    def read_conv(
        self,
        kernel: int,
        in_channels: int,
        filters: int,
        batch_normalize: bool,
    ) -> LayerParams:
        """Read parameters for one convolutional layer.

        Args:
            kernel: Square kernel size.
            in_channels: Input depth.
            filters: Output depth.
            batch_normalize: Whether the layer carries batch-norm statistics.

        Returns:
            LayerParams with the kernel already flipped.

        Raises:
            WeightFormatError: If the blob ends before all values are read.
        """
        num_weights = kernel * kernel * in_channels * filters

        if batch_normalize:
            shift = self._floats(filters)
            scale = self._floats(filters)
            mean = self._floats(filters)
            var = self._floats(filters)
            bias = torch.zeros(filters, dtype=torch.float32)
        else:
            bias = self._floats(filters)
            shift = scale = mean = var = None

        weight = self._floats(num_weights).view(filters, in_channels, kernel, kernel)
        return LayerParams(
            weight=flip_kernel(weight),
            bias=bias,
            bn_scale=scale,
            bn_shift=shift,
            bn_mean=mean,
            bn_var=var,
        )

    def finish(self) -> None:
        """Log any bytes left over after the last layer."""
        if self.remaining:
            logger.warning(f"{self.remaining} unread bytes at end of weight file")
