"""Inference configuration."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


@dataclass
class InferenceConfig:
    """Runtime settings layered over what the topology declares."""

    # Batch (None means use the [net] block's batch)
    batch_size: int | None = None

    # Device
    device: str = "auto"  # auto, cuda, mps, cpu

    # Thresholds (None means use each head's own setting)
    conf_threshold: float | None = None
    iou_threshold: float | None = None

    # Post-processing backend: vectorized ops, or the per-column reference loops
    parallel: bool = True

    def __post_init__(self) -> None:
        if self.batch_size is not None and self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        for name in ("conf_threshold", "iou_threshold"):
            value = getattr(self, name)
            if value is not None and not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value}")

    @classmethod
    def from_yaml(cls, path: str | Path) -> InferenceConfig:
        """Load config from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)
