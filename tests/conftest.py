"""Shared fixtures: synthetic topologies and weight blobs."""

from __future__ import annotations

import struct

import numpy as np
import pytest

from darknet_yolo.config import InferenceConfig

HEADER = struct.pack("<5i", 0, 2, 0, 0, 0)


def conv_floats(
    kernel: int, in_channels: int, filters: int, batch_normalize: bool, rng: np.random.Generator
) -> np.ndarray:
    """Random parameters for one convolution, in file order."""
    parts = []
    if batch_normalize:
        parts.append(rng.normal(0, 0.1, filters))  # shift
        parts.append(rng.uniform(0.5, 1.5, filters))  # scale
        parts.append(rng.normal(0, 0.1, filters))  # mean
        parts.append(rng.uniform(0.5, 1.5, filters))  # variance
    else:
        parts.append(rng.normal(0, 0.1, filters))  # bias
    parts.append(rng.normal(0, 0.1, kernel * kernel * in_channels * filters))
    return np.concatenate(parts)


@pytest.fixture
def make_weights():
    """Build a weight blob for a list of (kernel, in_channels, filters, batch_normalize)."""

    def make(convs: list[tuple[int, int, int, bool]], seed: int = 0) -> bytes:
        rng = np.random.default_rng(seed)
        floats = [conv_floats(*conv, rng) for conv in convs]
        body = np.concatenate(floats) if floats else np.zeros(0)
        return HEADER + body.astype("<f4").tobytes()

    return make


@pytest.fixture
def cpu_config() -> InferenceConfig:
    return InferenceConfig(device="cpu")


# Two heads at different scales, with a route concat and an upsample.
TWO_HEAD_CFG = """
[net]
width=16
height=16
channels=3
batch=1

# 1
[convolutional]
batch_normalize=1
size=3
stride=1
pad=1
filters=8
activation=leaky

# 2
[maxpool]
size=2
stride=2

# 3
[convolutional]
size=1
stride=1
pad=1
filters=12
activation=linear

# 4
[yolo]
mask=0,1
anchors=2,3, 4,5, 6,7, 8,9
classes=1
num=4
ignore_thresh=.7
truth_thresh=1

# 5
[route]
layers=-3

# 6
[upsample]
stride=2

# 7
[route]
layers=-1,0

# 8
[convolutional]
size=1
stride=1
pad=1
filters=12
activation=linear

# 9
[yolo]
mask=2,3
anchors=2,3, 4,5, 6,7, 8,9
classes=1
num=4
ignore_thresh=.7
truth_thresh=1
"""

TWO_HEAD_CONVS = [(3, 3, 8, True), (1, 8, 12, False), (1, 8, 12, False), (1, 16, 12, False)]


@pytest.fixture
def two_head_cfg() -> str:
    return TWO_HEAD_CFG


@pytest.fixture
def two_head_weights(make_weights) -> bytes:
    return make_weights(TWO_HEAD_CONVS)
