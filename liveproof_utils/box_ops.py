"""
Liveproof -- Box Operations
===========================
Distance decoding and greedy non-maximum suppression for SCRFD outputs.

IoU uses the inclusive pixel convention: a box spanning x1..x2 is
(x2 - x1 + 1) pixels wide.
"""

from __future__ import annotations

from typing import List, Sequence

import numpy as np


def distance2bbox(points: np.ndarray, distance: np.ndarray) -> np.ndarray:
    """Decode (left, top, right, bottom) distances into (x1, y1, x2, y2)."""
    x1 = points[:, 0] - distance[:, 0]
    y1 = points[:, 1] - distance[:, 1]
    x2 = points[:, 0] + distance[:, 2]
    y2 = points[:, 1] + distance[:, 3]
    return np.stack([x1, y1, x2, y2], axis=-1)


def distance2kps(points: np.ndarray, distance: np.ndarray) -> np.ndarray:
    """Decode per-anchor keypoint offsets into an (N, K, 2) array."""
    num = points.shape[0]
    offsets = distance.reshape(num, -1, 2)
    return offsets + points[:, None, :]


def iou(box_a: Sequence[float], box_b: Sequence[float]) -> float:
    x1 = max(box_a[0], box_b[0])
    y1 = max(box_a[1], box_b[1])
    x2 = min(box_a[2], box_b[2])
    y2 = min(box_a[3], box_b[3])
    w = max(0.0, x2 - x1 + 1)
    h = max(0.0, y2 - y1 + 1)
    inter = w * h
    area_a = (box_a[2] - box_a[0] + 1) * (box_a[3] - box_a[1] + 1)
    area_b = (box_b[2] - box_b[0] + 1) * (box_b[3] - box_b[1] + 1)
    union = area_a + area_b - inter
    return 0.0 if union <= 0 else float(inter / union)


def _iou_one_to_many(box: np.ndarray, others: np.ndarray) -> np.ndarray:
    xx1 = np.maximum(box[0], others[:, 0])
    yy1 = np.maximum(box[1], others[:, 1])
    xx2 = np.minimum(box[2], others[:, 2])
    yy2 = np.minimum(box[3], others[:, 3])
    w = np.maximum(0.0, xx2 - xx1 + 1)
    h = np.maximum(0.0, yy2 - yy1 + 1)
    inter = w * h
    area = (box[2] - box[0] + 1) * (box[3] - box[1] + 1)
    areas = (others[:, 2] - others[:, 0] + 1) * (others[:, 3] - others[:, 1] + 1)
    union = area + areas - inter
    with np.errstate(divide='ignore', invalid='ignore'):
        result = np.where(union > 0, inter / union, 0.0)
    return result


def nms(boxes: np.ndarray, scores: np.ndarray, threshold: float = 0.4) -> List[int]:
    """Greedy NMS. Returns kept indices, highest score first.

    A remaining box is discarded when its IoU with a kept box is
    strictly greater than ``threshold``. Ties in score keep input order.
    """
    boxes = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)
    scores = np.asarray(scores, dtype=np.float64).reshape(-1)
    if boxes.shape[0] == 0:
        return []

    order = np.argsort(-scores, kind='stable')
    keep: List[int] = []
    while order.size > 0:
        current = int(order[0])
        keep.append(current)
        rest = order[1:]
        if rest.size == 0:
            break
        overlaps = _iou_one_to_many(boxes[current], boxes[rest])
        order = rest[overlaps <= threshold]
    return keep
