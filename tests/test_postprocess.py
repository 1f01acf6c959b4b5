"""Tests for detection post-processing and NMS."""

from types import SimpleNamespace

import pytest
import torch

from darknet_yolo.heads.detect import BATCH_ID, BEST_CLASS, BEST_SCORE, CONF, HEAD_ID, num_rows
from darknet_yolo.utils.nms import box_iou, class_nms
from darknet_yolo.utils.postprocess import ParallelOps, PostProcessor, SequentialOps

OPS = [SequentialOps(), ParallelOps()]
IMAGE_SIZE = (100, 100)


def _detections(columns: list[dict], num_classes: int = 2) -> torch.Tensor:
    """Build a detection matrix from per-column dicts (boxes in pixels)."""
    out = torch.zeros(num_rows(num_classes), len(columns))
    for i, col in enumerate(columns):
        out[:4, i] = torch.tensor(col.get("box", [0.0, 0.0, 10.0, 10.0])) / 100
        out[CONF, i] = col.get("conf", 0.9)
        scores = col.get("scores", [1.0] + [0.0] * (num_classes - 1))
        out[5 : 5 + num_classes, i] = torch.tensor(scores)
        out[HEAD_ID, i] = col.get("head", 1)
        out[BATCH_ID, i] = col.get("batch", 1)
    return out


def _head(conf: float = 0.5, overlap: float = 0.5, num_classes: int = 2):
    return SimpleNamespace(
        num_classes=num_classes, confidence_threshold=conf, overlap_threshold=overlap
    )


@pytest.mark.parametrize("ops", OPS, ids=["sequential", "parallel"])
class TestDetectionOps:
    def test_clip_is_strict(self, ops):
        det = _detections([{"conf": 0.5}, {"conf": 0.51}, {"conf": 0.2}])
        ops.clip(det, torch.full((3,), 0.5))
        assert det[CONF].tolist() == pytest.approx([0.0, 0.51, 0.0])

    def test_best_class_is_one_based(self, ops):
        det = _detections([{"scores": [0.1, 0.8, 0.3]}, {"scores": [0.6, 0.2, 0.3]}], 3)
        ops.best_class(det, 3)
        assert det[BEST_CLASS].tolist() == [2.0, 1.0]
        assert det[BEST_SCORE].tolist() == pytest.approx([0.8, 0.6])

    def test_best_class_first_maximum_wins(self, ops):
        det = _detections([{"scores": [0.2, 0.7, 0.7]}], 3)
        ops.best_class(det, 3)
        assert det[BEST_CLASS].item() == 2.0

    def test_compact_preserves_order(self, ops):
        det = _detections([{"conf": 0.3}, {"conf": 0.0}, {"conf": 0.7}, {"conf": 0.0}])
        det[BATCH_ID] = torch.tensor([1.0, 2.0, 3.0, 4.0])
        out = ops.compact(det)
        assert out.shape == (det.shape[0], 2)
        assert out[BATCH_ID].tolist() == [1.0, 3.0]
        assert torch.equal(out[:, 0], det[:, 0])
        assert torch.equal(out[:, 1], det[:, 2])

    def test_compact_empty(self, ops):
        det = _detections([{"conf": 0.0}, {"conf": 0.0}])
        assert ops.compact(det).shape == (det.shape[0], 0)


class TestOpsAgree:
    def test_random_corpus(self):
        gen = torch.Generator().manual_seed(3)
        num_classes = 4
        det = torch.rand(num_rows(num_classes), 200, generator=gen)
        det[HEAD_ID] = torch.randint(1, 3, (200,), generator=gen).float()
        thresholds = torch.tensor([0.4, 0.6])[det[HEAD_ID].long() - 1]

        results = []
        for ops in OPS:
            d = det.clone()
            ops.clip(d, thresholds)
            ops.best_class(d, num_classes)
            results.append(ops.compact(d))

        assert results[0].shape[1] > 0
        assert torch.equal(results[0], results[1])


class TestBoxIou:
    def test_pixel_inclusive(self):
        box = torch.tensor([0.0, 0.0, 9.0, 9.0])
        boxes = torch.tensor([[0.0, 0.0, 9.0, 8.0], [0.0, 0.0, 3.0, 9.0], [20.0, 20.0, 29.0, 29.0]]).T
        ious = box_iou(box, boxes)
        assert ious.tolist() == pytest.approx([0.9, 0.4, 0.0])

    def test_identical(self):
        box = torch.tensor([5.0, 5.0, 14.0, 24.0])
        assert box_iou(box, box.view(4, 1)).item() == pytest.approx(1.0)


class TestClassNms:
    def _reduce(self, columns, num_classes=2):
        det = _detections(columns, num_classes)
        SequentialOps().best_class(det, num_classes)
        return det

    def test_overlap_above_threshold_dropped(self):
        det = self._reduce(
            [
                {"box": [0, 0, 9, 9], "conf": 0.9},
                {"box": [0, 0, 9, 8], "conf": 0.8},  # IoU 0.9
                {"box": [0, 0, 3, 9], "conf": 0.7},  # IoU 0.4
            ]
        )
        out = class_nms(det, torch.full((3,), 0.5), IMAGE_SIZE)
        assert out[CONF].tolist() == pytest.approx([0.9, 0.7])

    def test_classes_do_not_suppress_each_other(self):
        det = self._reduce(
            [
                {"box": [0, 0, 9, 9], "conf": 0.9, "scores": [1.0, 0.0]},
                {"box": [0, 0, 9, 9], "conf": 0.8, "scores": [0.0, 1.0]},
            ]
        )
        out = class_nms(det, torch.full((2,), 0.5), IMAGE_SIZE)
        assert out.shape[1] == 2

    def test_groups_by_class_then_confidence(self):
        det = self._reduce(
            [
                {"box": [50, 50, 59, 59], "conf": 0.6, "scores": [0.0, 1.0]},
                {"box": [0, 0, 9, 9], "conf": 0.7, "scores": [1.0, 0.0]},
                {"box": [20, 20, 29, 29], "conf": 0.9, "scores": [0.0, 1.0]},
                {"box": [70, 70, 79, 79], "conf": 0.8, "scores": [1.0, 0.0]},
            ]
        )
        out = class_nms(det, torch.full((4,), 0.5), IMAGE_SIZE)
        assert out[BEST_CLASS].tolist() == [1.0, 1.0, 2.0, 2.0]
        assert out[CONF].tolist() == pytest.approx([0.8, 0.7, 0.9, 0.6])

    def test_kept_box_threshold_applies(self):
        det = self._reduce(
            [
                {"box": [0, 0, 9, 9], "conf": 0.9},
                {"box": [0, 0, 9, 8], "conf": 0.8},
            ]
        )
        out = class_nms(det, torch.tensor([0.95, 0.1]), IMAGE_SIZE)
        assert out.shape[1] == 2

    def test_empty(self):
        det = torch.zeros(num_rows(2), 0)
        assert class_nms(det, torch.zeros(0), IMAGE_SIZE).shape == (num_rows(2), 0)


@pytest.mark.parametrize("ops", OPS, ids=["sequential", "parallel"])
class TestPostProcessor:
    def test_nothing_above_threshold(self, ops):
        post = PostProcessor(ops, IMAGE_SIZE)
        det = _detections([{"conf": 0.1}, {"conf": 0.5}])
        out = post.process([det], [_head(conf=0.5)])
        assert out.shape == (det.shape[0], 0)

    def test_per_head_confidence(self, ops):
        post = PostProcessor(ops, IMAGE_SIZE)
        first = _detections([{"box": [0, 0, 9, 9], "conf": 0.7, "head": 1}])
        second = _detections([{"box": [50, 50, 59, 59], "conf": 0.7, "head": 2}])
        out = post.process([first, second], [_head(conf=0.5), _head(conf=0.9)])
        assert out.shape[1] == 1
        assert out[HEAD_ID].item() == 1.0

    def test_suppression(self, ops):
        post = PostProcessor(ops, IMAGE_SIZE)
        det = _detections(
            [
                {"box": [0, 0, 9, 8], "conf": 0.8, "batch": 2},
                {"box": [0, 0, 9, 9], "conf": 0.9, "batch": 1},
            ]
        )
        out = post.process([det], [_head()])
        assert out.shape[1] == 1
        assert out[BATCH_ID].item() == 1.0
        assert out[BEST_CLASS].item() == 1.0
