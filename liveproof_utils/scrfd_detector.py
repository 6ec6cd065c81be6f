"""
Liveproof -- SCRFD Face Detector
================================
Decodes an SCRFD ONNX model (anchor-free distance heads over a 3 or 5
level feature pyramid) into face boxes in source-image coordinates.

Model: scrfd_500m_bnkps_shape640x640.onnx (1x3x640x640 input)
Output: list of Detection(bbox, score, keypoints), NMS applied.

Variant is inferred from the number of model outputs:
   6 -> strides 8/16/32,         2 anchors, no keypoints
   9 -> strides 8/16/32,         2 anchors, keypoints
  10 -> strides 8/16/32/64/128,  1 anchor,  no keypoints
  15 -> strides 8/16/32/64/128,  1 anchor,  keypoints
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import cv2
import numpy as np

from liveproof_errors import ModelNotLoaded
from liveproof_types import Detection
from liveproof_utils_core import (
    ANCHOR_CACHE_SIZE,
    DETECTION_THRESHOLD,
    NMS_THRESHOLD,
    ensure_bgr,
    round_half_up,
    setup_logger,
)
from liveproof_utils.anchor_grid import AnchorGrid
from liveproof_utils.box_ops import distance2bbox, distance2kps, nms

_log = setup_logger('SCRFDDetector')

# output count -> (strides, anchors per cell, keypoints)
_VARIANTS = {
    6: ((8, 16, 32), 2, False),
    9: ((8, 16, 32), 2, True),
    10: ((8, 16, 32, 64, 128), 1, False),
    15: ((8, 16, 32, 64, 128), 1, True),
}


class SCRFDDetector:
    def __init__(self, nms_threshold: float = NMS_THRESHOLD,
                 cache_size: int = ANCHOR_CACHE_SIZE,
                 input_size: Tuple[int, int] = (640, 640)):
        self.nms_threshold = nms_threshold
        self.cache_size = cache_size
        self.session = None
        self.input_name: Optional[str] = None
        self.output_names: List[str] = []
        self.input_size = tuple(input_size)    # (width, height)
        self.feat_stride_fpn: Tuple[int, ...] = (8, 16, 32)
        self.fmc = 3
        self.num_anchors = 1
        self.use_kps = False
        self.anchor_grid = AnchorGrid(self.num_anchors, cache_size)

    def load(self, session) -> None:
        """Bind an inference session (see liveproof_runtime.ModelSession)."""
        self.session = session
        self.input_name = session.input_name
        self.output_names = list(session.output_names)
        shape = list(session.input_shape or [])
        if len(shape) == 4 and isinstance(shape[2], int) and isinstance(shape[3], int):
            self.input_size = (shape[3], shape[2])
        self._init_from_outputs()

    def is_ready(self) -> bool:
        return self.session is not None

    def _init_from_outputs(self) -> None:
        count = len(self.output_names)
        variant = _VARIANTS.get(count)
        if variant is None:
            _log.warning("Unknown detector output count %d, using default 3-stride layout", count)
            strides, anchors, use_kps = (8, 16, 32), 1, False
        else:
            strides, anchors, use_kps = variant
        self.feat_stride_fpn = strides
        self.fmc = len(strides)
        self.num_anchors = anchors
        self.use_kps = use_kps
        self.anchor_grid = AnchorGrid(self.num_anchors, self.cache_size)
        _log.info("SCRFD ready: input=%dx%d strides=%s anchors=%d kps=%s",
                  self.input_size[0], self.input_size[1], list(strides), anchors, use_kps)

    # ─── Inference ────────────────────────────────────────────

    def detect(self, image: np.ndarray, threshold: float = DETECTION_THRESHOLD) -> List[Detection]:
        """Detect faces in a BGR frame.

        Args:
            image: H x W x 3 uint8 BGR frame.
            threshold: minimum face score in [0, 1].

        Returns:
            Detections after NMS, highest score first. Empty when nothing
            clears the threshold.
        """
        if self.session is None or self.input_name is None:
            raise ModelNotLoaded("Face detector model is not loaded")
        image = ensure_bgr(image)
        blob, det_scale = self._prepare_input(image)
        outputs = self.session.run(blob)
        scores, boxes, kps = self._postprocess(outputs, threshold)
        return self._build_detections(scores, boxes, kps, det_scale)

    def _prepare_input(self, image: np.ndarray) -> Tuple[np.ndarray, float]:
        """Letterbox into the top-left of a black canvas, (p - 127.5) / 128, RGB NCHW."""
        height, width = image.shape[:2]
        target_w, target_h = self.input_size
        im_ratio = height / width
        model_ratio = target_h / target_w
        if im_ratio > model_ratio:
            new_h = target_h
            new_w = round_half_up(new_h / im_ratio)
        else:
            new_w = target_w
            new_h = round_half_up(new_w * im_ratio)
        new_w = max(1, new_w)
        new_h = max(1, new_h)

        canvas = np.zeros((target_h, target_w, 3), dtype=np.uint8)
        canvas[:new_h, :new_w] = cv2.resize(image, (new_w, new_h))
        blob = cv2.dnn.blobFromImage(
            canvas, 1.0 / 128.0, (target_w, target_h),
            (127.5, 127.5, 127.5), swapRB=True,
        )
        return blob, new_h / height

    @staticmethod
    def _extract_scores(data: np.ndarray, count: int) -> np.ndarray:
        # Two-class heads emit (background, face) pairs
        if data.size == count * 2:
            return data[1::2]
        return data[:count]

    def _postprocess(self, outputs: dict, threshold: float):
        net_outs = [np.asarray(outputs[name], dtype=np.float32) for name in self.output_names]
        target_w, target_h = self.input_size
        scores_list, boxes_list, kps_list = [], [], []

        for idx, stride in enumerate(self.feat_stride_fpn):
            height = target_h // stride
            width = target_w // stride
            centers = self.anchor_grid.centers(height, width, stride)
            count = height * width * self.num_anchors

            scores = self._extract_scores(net_outs[idx].ravel(), count)
            bbox_preds = net_outs[idx + self.fmc].ravel()[:count * 4].reshape(-1, 4) * stride
            anchors = centers[:bbox_preds.shape[0]]
            decoded = distance2bbox(anchors, bbox_preds)

            pos = np.where(scores[:decoded.shape[0]] >= threshold)[0]
            if pos.size == 0:
                continue
            scores_list.append(scores[pos])
            boxes_list.append(decoded[pos])

            if self.use_kps:
                kps_preds = net_outs[idx + self.fmc * 2].ravel() * stride
                per_anchor = kps_preds.size // centers.shape[0]
                per_anchor -= per_anchor % 2
                kps_preds = kps_preds[:centers.shape[0] * per_anchor]
                kps_list.append(distance2kps(centers, kps_preds)[pos])

        if not scores_list:
            return None, None, None
        scores = np.concatenate(scores_list)
        boxes = np.concatenate(boxes_list)
        kps = np.concatenate(kps_list) if self.use_kps and kps_list else None
        return scores, boxes, kps

    def _build_detections(self, scores, boxes, kps, det_scale: float) -> List[Detection]:
        if scores is None or scores.size == 0:
            return []
        boxes = boxes / det_scale
        if kps is not None:
            kps = kps / det_scale

        valid = (boxes[:, 2] > boxes[:, 0]) & (boxes[:, 3] > boxes[:, 1])
        valid &= np.all(np.isfinite(boxes), axis=1)
        if not np.any(valid):
            return []
        scores = scores[valid]
        boxes = boxes[valid]
        if kps is not None:
            kps = kps[valid]

        keep = nms(boxes, scores, self.nms_threshold)
        detections = []
        for i in keep:
            detections.append(Detection(
                bbox=tuple(float(v) for v in boxes[i]),
                score=float(scores[i]),
                keypoints=None if kps is None else kps[i].astype(np.float32),
            ))
        return detections
