"""Convolution blocks loaded from Darknet weights."""

from dataclasses import asdict, dataclass

import torch.nn as nn
from torch import Tensor

from darknet_yolo.errors import ConfigError
from darknet_yolo.model.weights import LayerParams, flip_kernel

BN_EPS = 1e-5


def get_activation(name: str) -> nn.Module:
    """Get activation module by Darknet name."""
    match name:
        case "leaky":
            return nn.LeakyReLU(0.1)
        case "linear":
            return nn.Identity()
        case "relu":
            return nn.ReLU()
        case "logistic":
            return nn.Sigmoid()
        case "mish":
            return nn.Mish()
        case _:
            raise ConfigError(f"Unknown activation: {name}")


def autopad(kernel_size: int, pad: bool, padding: int = 0) -> int:
    """Darknet padding rule: ``pad=1`` means half the kernel, else explicit padding."""
    return (kernel_size - 1) // 2 if pad else padding


@dataclass
class ConvConfig:
    """Configuration for Conv block."""

    in_channels: int
    out_channels: int
    kernel_size: int = 1
    stride: int = 1
    padding: int = 0
    batch_normalize: bool = False
    activation: str = "linear"


class Conv(nn.Module):
    """Convolution, optional inference-mode batch norm, activation."""

    Config = ConvConfig

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        kernel_size: int = 1,
        stride: int = 1,
        padding: int = 0,
        batch_normalize: bool = False,
        activation: str = "linear",
    ):
        super().__init__()
        self.conv = nn.Conv2d(
            in_channels,
            out_channels,
            kernel_size,
            stride,
            padding,
            bias=True,
        )
        self.bn = nn.BatchNorm2d(out_channels, eps=BN_EPS) if batch_normalize else None
        self.act = get_activation(activation)

    def forward(self, x: Tensor) -> Tensor:
        x = self.conv(x)
        if self.bn is not None:
            x = self.bn(x)
        return self.act(x)

    def load_params(self, params: LayerParams) -> None:
        """Copy weights read from a weight file into this block.

        ``params.weight`` is a true-convolution kernel while ``nn.Conv2d``
        computes cross-correlation, so the kernel is flipped back here once.
        """
        if params.weight.shape != self.conv.weight.shape:
            raise ConfigError(
                f"Kernel shape {tuple(params.weight.shape)} does not match "
                f"layer shape {tuple(self.conv.weight.shape)}"
            )
        self.conv.weight.data.copy_(flip_kernel(params.weight))
        self.conv.bias.data.copy_(params.bias)

        if self.bn is not None:
            if not params.has_batch_norm:
                raise ConfigError("Layer expects batch-norm parameters")
            self.bn.weight.data.copy_(params.bn_scale)
            self.bn.bias.data.copy_(params.bn_shift)
            self.bn.running_mean.copy_(params.bn_mean)
            self.bn.running_var.copy_(params.bn_var)

    @classmethod
    def from_config(cls, cfg: ConvConfig) -> "Conv":
        return cls(**asdict(cfg))
