"""
Liveproof — Landmark & Pose Pipeline
====================================
Owns the 98-point landmark estimator (PFPLD) that follows face detection.

Crop geometry (source pixels):
  ═══════════════════════════════════════════════════════════
  side   = max(1, round(0.9 * max(box_w, box_h)))
  origin = (round(cx - side / 2), round(cy - 0.4 * side))
  The crop sits higher than the box center (40% above, 60% below) so
  the forehead and jaw outline stay inside it. Regions outside the
  frame are black.
  ═══════════════════════════════════════════════════════════

Preprocessing: crop -> resize to model input (112x112) -> RGB -> /255
-> NCHW float32.

Outputs: the first tensor with <= 6 values is the pose head
(yaw, pitch, roll in radians); the first with > 6 values is the
landmark vector of (x, y) fractions of the crop side.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from liveproof_errors import ModelNotLoaded
from liveproof_types import LandmarkEstimate, Pose
from liveproof_utils_core import CONFIG, ensure_bgr, round_half_up

_log = logging.getLogger("LiveproofLandmarks")

_POSE_MAX_VALUES = 6


class LandmarkEstimator:
    """PFPLD landmark + pose estimator bound to an inference session."""

    def __init__(self, crop_scale: float = CONFIG['landmarks']['crop_scale'],
                 crop_top_ratio: float = CONFIG['landmarks']['crop_top_ratio'],
                 input_size: Sequence[int] = tuple(CONFIG['landmarks']['input_size'])):
        self.crop_scale = crop_scale
        self.crop_top_ratio = crop_top_ratio
        self.input_size: Tuple[int, int] = (int(input_size[0]), int(input_size[1]))  # (width, height)
        self.session = None
        self.input_name: Optional[str] = None
        self.output_names: list = []

    def load(self, session) -> None:
        self.session = session
        self.input_name = session.input_name
        self.output_names = list(session.output_names)
        shape = list(session.input_shape or [])
        if len(shape) == 4 and isinstance(shape[2], int) and isinstance(shape[3], int):
            self.input_size = (shape[3], shape[2])
        _log.info("Landmark model ready: input=%dx%d outputs=%s",
                  self.input_size[0], self.input_size[1], self.output_names)

    def is_ready(self) -> bool:
        return self.session is not None

    # ─── Inference ────────────────────────────────────────────

    def estimate(self, image: np.ndarray, bbox: Sequence[float]) -> Optional[LandmarkEstimate]:
        """Estimate landmarks and pose for one face box.

        Returns None when the model produced an empty landmark vector;
        callers treat that like a frame without a face.
        """
        if self.session is None or self.input_name is None:
            raise ModelNotLoaded("Landmark model is not loaded")
        image = ensure_bgr(image)
        blob, origin, side = self._prepare_input(image, bbox)
        outputs = self.session.run(blob)
        landmark_values, pose_values = self._select_outputs(outputs)

        if landmark_values is None or landmark_values.size == 0:
            return None
        return LandmarkEstimate(
            landmarks=self._project_landmarks(landmark_values, origin, side),
            pose=self._parse_pose(pose_values),
        )

    def crop_geometry(self, bbox: Sequence[float]) -> Tuple[int, int, int]:
        """(crop_x1, crop_y1, side) of the square crop for ``bbox``."""
        x1, y1, x2, y2 = (float(v) for v in bbox[:4])
        w = x2 - x1
        h = y2 - y1
        side = max(1, round_half_up(max(w, h) * self.crop_scale))
        cx = x1 + w / 2
        cy = y1 + h / 2
        crop_x1 = round_half_up(cx - side / 2)
        crop_y1 = round_half_up(cy - side * self.crop_top_ratio)
        return crop_x1, crop_y1, side

    def _prepare_input(self, image: np.ndarray, bbox: Sequence[float]):
        height, width = image.shape[:2]
        crop_x1, crop_y1, side = self.crop_geometry(bbox)
        crop_x2 = crop_x1 + side
        crop_y2 = crop_y1 + side

        left_pad = max(0, -crop_x1)
        top_pad = max(0, -crop_y1)
        draw_x1 = max(0, crop_x1)
        draw_y1 = max(0, crop_y1)
        draw_x2 = min(width, crop_x2)
        draw_y2 = min(height, crop_y2)
        draw_w = max(0, draw_x2 - draw_x1)
        draw_h = max(0, draw_y2 - draw_y1)

        crop = np.zeros((side, side, 3), dtype=np.uint8)
        if draw_w > 0 and draw_h > 0:
            crop[top_pad:top_pad + draw_h, left_pad:left_pad + draw_w] = \
                image[draw_y1:draw_y2, draw_x1:draw_x2]

        target_w, target_h = self.input_size
        blob = cv2.dnn.blobFromImage(crop, 1.0 / 255.0, (target_w, target_h),
                                     (0, 0, 0), swapRB=True)
        origin = (draw_x1 - left_pad, draw_y1 - top_pad)
        return blob, origin, side

    def _select_outputs(self, outputs: dict):
        pose = None
        landmarks = None
        for name in self.output_names:
            tensor = outputs.get(name)
            if tensor is None:
                continue
            values = np.asarray(tensor, dtype=np.float32).ravel()
            if values.size <= _POSE_MAX_VALUES and pose is None:
                pose = values
            elif values.size > _POSE_MAX_VALUES and landmarks is None:
                landmarks = values
        if landmarks is None and self.output_names:
            first = outputs.get(self.output_names[0])
            if first is not None:
                landmarks = np.asarray(first, dtype=np.float32).ravel()
        return landmarks, pose

    @staticmethod
    def _project_landmarks(values: np.ndarray, origin: Tuple[int, int], side: int) -> np.ndarray:
        pairs = values[:values.size - values.size % 2].reshape(-1, 2)
        points = pairs * float(side)
        points[:, 0] += origin[0]
        points[:, 1] += origin[1]
        return points.astype(np.float32)

    @staticmethod
    def _parse_pose(values: Optional[np.ndarray]) -> Optional[Pose]:
        if values is None or values.size == 0:
            return None

        def _axis(i: int) -> float:
            if i >= values.size:
                return 0.0
            v = float(values[i])
            return 0.0 if math.isnan(v) else v

        return Pose(yaw=_axis(0), pitch=_axis(1), roll=_axis(2))
