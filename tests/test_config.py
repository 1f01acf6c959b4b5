"""Tests for inference configuration."""

import pytest
import torch

from darknet_yolo.config import InferenceConfig
from darknet_yolo.utils.device import get_device


class TestInferenceConfig:
    def test_defaults(self):
        config = InferenceConfig()
        assert config.batch_size is None
        assert config.device == "auto"
        assert config.parallel

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert InferenceConfig.from_yaml(path) == InferenceConfig()

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("confidence: 0.5\n")
        with pytest.raises(TypeError):
            InferenceConfig.from_yaml(path)

    @pytest.mark.parametrize(
        "kwargs", [{"batch_size": 0}, {"conf_threshold": 1.5}, {"iou_threshold": -0.1}]
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            InferenceConfig(**kwargs)


class TestGetDevice:
    def test_explicit(self):
        assert get_device("cpu") == torch.device("cpu")

    def test_passthrough(self):
        device = torch.device("cpu")
        assert get_device(device) is device

    def test_auto(self):
        assert isinstance(get_device("auto"), torch.device)
