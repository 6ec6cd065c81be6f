"""
Liveproof — Geometric Liveness Signals
======================================
Per-frame signals derived from 98-point (WFLW layout) landmarks.

  Nod/shake : nose tip offset from the center of four outline points,
              normalized by the detection box height/width.
  Blink     : eye width / eye height per eye, min of both eyes.
  Mouth     : mouth opening height / mouth width.
  Frontal   : Gaussian of the weighted yaw/pitch/roll distance, 0-100.

Any missing or non-finite landmark makes the dependent signal None.
The indices are tied to the 98-point model; a different landmark model
needs its own LandmarkIndices.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Mapping, NamedTuple, Optional, Tuple

import numpy as np

from liveproof_types import (
    BlinkMetrics,
    BlinkState,
    MouthState,
    Pose,
    RangeState,
)
from liveproof_utils_core import CONFIG, clamp, round_score


@dataclass(frozen=True)
class EyeIndices:
    upper: int
    lower: int
    outer: int
    inner: int


@dataclass(frozen=True)
class MouthIndices:
    upper: int
    lower: int
    left: int
    right: int


@dataclass(frozen=True)
class LandmarkIndices:
    outline: Tuple[int, int, int, int]   # top-left, top-right, bottom-left, bottom-right
    nose_tip: int
    left_eye: EyeIndices
    right_eye: EyeIndices
    mouth: MouthIndices
    min_points: int = 98

    @classmethod
    def from_config(cls, cfg: Optional[Mapping] = None) -> "LandmarkIndices":
        cfg = cfg if cfg is not None else CONFIG['landmarks']
        return cls(
            outline=tuple(int(i) for i in cfg['outline']),
            nose_tip=int(cfg['nose_tip']),
            left_eye=EyeIndices(**{k: int(v) for k, v in cfg['left_eye'].items()}),
            right_eye=EyeIndices(**{k: int(v) for k, v in cfg['right_eye'].items()}),
            mouth=MouthIndices(**{k: int(v) for k, v in cfg['mouth'].items()}),
            min_points=int(cfg.get('min_points', 98)),
        )


WFLW_98 = LandmarkIndices.from_config()


class FaceFrame(NamedTuple):
    center_x: float
    center_y: float
    nose_x: float
    nose_y: float
    width: float
    height: float


def _point(landmarks, index: int) -> Optional[Tuple[float, float]]:
    if landmarks is None or index < 0 or index >= len(landmarks):
        return None
    x, y = float(landmarks[index][0]), float(landmarks[index][1])
    if not (math.isfinite(x) and math.isfinite(y)):
        return None
    return x, y


# ═══════════════════════════════════════════════════════════════
# Nod / Shake
# ═══════════════════════════════════════════════════════════════

def face_frame(detection, indices: LandmarkIndices = WFLW_98) -> Optional[FaceFrame]:
    landmarks = getattr(detection, "landmarks", None)
    if detection is None or landmarks is None or len(landmarks) < indices.min_points:
        return None
    corners = [_point(landmarks, i) for i in indices.outline]
    nose = _point(landmarks, indices.nose_tip)
    if nose is None or any(c is None for c in corners):
        return None
    x1, y1, x2, y2 = detection.bbox
    return FaceFrame(
        center_x=sum(c[0] for c in corners) / 4,
        center_y=sum(c[1] for c in corners) / 4,
        nose_x=nose[0],
        nose_y=nose[1],
        width=max(1.0, x2 - x1),
        height=max(1.0, y2 - y1),
    )


def nod_ratio(detection, indices: LandmarkIndices = WFLW_98) -> Optional[float]:
    info = face_frame(detection, indices)
    if info is None:
        return None
    return (info.center_y - info.nose_y) / info.height


def shake_ratio(detection, indices: LandmarkIndices = WFLW_98) -> Optional[float]:
    info = face_frame(detection, indices)
    if info is None:
        return None
    return (info.center_x - info.nose_x) / info.width


def update_range(state: RangeState, value: Optional[float]) -> None:
    if value is None or not math.isfinite(value):
        return
    if state.min is None or state.max is None:
        state.min = value
        state.max = value
    else:
        state.min = min(state.min, value)
        state.max = max(state.max, value)


def spread(state: RangeState) -> Optional[float]:
    if state.min is None or state.max is None:
        return None
    return state.max - state.min


# ═══════════════════════════════════════════════════════════════
# Blink
# ═══════════════════════════════════════════════════════════════

def blink_ratios(detection, indices: LandmarkIndices = WFLW_98) -> Optional[BlinkMetrics]:
    landmarks = getattr(detection, "landmarks", None)
    if detection is None or landmarks is None:
        return None
    eyes = []
    for eye in (indices.left_eye, indices.right_eye):
        pts = [_point(landmarks, i) for i in (eye.upper, eye.lower, eye.outer, eye.inner)]
        if any(p is None for p in pts):
            return None
        upper, lower, outer, inner = pts
        height = abs(upper[1] - lower[1])
        width = abs(outer[0] - inner[0])
        eyes.append((height, math.inf if height == 0 else width / height))

    (left_height, left_ratio), (right_height, right_ratio) = eyes
    return BlinkMetrics(
        left_height=left_height,
        right_height=right_height,
        left_ratio=left_ratio,
        right_ratio=right_ratio,
        ratio=min(left_ratio, right_ratio),
    )


def update_blink_state(metrics: Optional[BlinkMetrics], state: BlinkState,
                       initial_avg: float = 10.0,
                       limits: Tuple[float, float] = (5.0, 20.0),
                       weights: Tuple[float, float] = (0.1, 0.9)) -> None:
    """Record closed/open observations against the adaptive threshold.

    Closed: either eye height is 0, or both ratios exceed eye_avg.
    Open:   both heights > 0 and both ratios are below eye_avg.
    eye_avg then moves toward the current ratio when it lies in ``limits``.
    """
    if metrics is None:
        return
    if state.eye_avg is None or not math.isfinite(state.eye_avg):
        state.eye_avg = initial_avg
    threshold = state.eye_avg

    if (metrics.left_height == 0 or metrics.right_height == 0
            or (metrics.left_ratio > threshold and metrics.right_ratio > threshold)):
        state.closed_detected = True
    if (metrics.left_height > 0 and metrics.right_height > 0
            and metrics.left_ratio < threshold and metrics.right_ratio < threshold):
        state.open_detected = True

    update_blink_average(metrics.ratio, state, limits, weights)


def update_blink_average(ratio: Optional[float], state: BlinkState,
                         limits: Tuple[float, float] = (5.0, 20.0),
                         weights: Tuple[float, float] = (0.1, 0.9)) -> None:
    if ratio is None or not math.isfinite(ratio):
        return
    if state.eye_avg is None or not math.isfinite(state.eye_avg):
        state.eye_avg = ratio
        return
    low, high = limits
    if ratio < low or ratio > high:
        return
    current, previous = weights
    state.eye_avg = ratio * current + state.eye_avg * previous


def reset_blink(state: BlinkState, reset_average: bool = False, initial_avg: float = 10.0) -> None:
    state.closed_detected = False
    state.open_detected = False
    if reset_average:
        state.eye_avg = initial_avg


# ═══════════════════════════════════════════════════════════════
# Mouth
# ═══════════════════════════════════════════════════════════════

def mouth_ratio(detection, indices: LandmarkIndices = WFLW_98) -> Optional[float]:
    landmarks = getattr(detection, "landmarks", None)
    if detection is None or landmarks is None:
        return None
    m = indices.mouth
    pts = [_point(landmarks, i) for i in (m.upper, m.lower, m.left, m.right)]
    if any(p is None for p in pts):
        return None
    upper, lower, left, right = pts
    width = abs(right[0] - left[0])
    if width == 0:
        return None
    return abs(lower[1] - upper[1]) / width


def update_mouth_state(ratio: Optional[float], state: MouthState, threshold: float = 0.5) -> None:
    if ratio is None or not math.isfinite(ratio):
        return
    if ratio > threshold:
        state.open_detected = True
    else:
        state.closed_detected = True


def reset_mouth(state: MouthState) -> None:
    state.open_detected = False
    state.closed_detected = False


# ═══════════════════════════════════════════════════════════════
# Pose
# ═══════════════════════════════════════════════════════════════

def pose_degrees(pose: Optional[Pose]) -> Optional[Pose]:
    return None if pose is None else pose.to_degrees()


def frontal_score(pose_deg: Optional[Pose], sigma: float = 20.0,
                  weights: Tuple[float, float, float] = (1.0, 1.0, 0.8)) -> Optional[float]:
    """0-100 frontality from a pose in degrees. 100 means facing the camera."""
    if pose_deg is None:
        return None
    w_yaw, w_pitch, w_roll = weights
    dist_sq = ((pose_deg.yaw * w_yaw) ** 2
               + (pose_deg.pitch * w_pitch) ** 2
               + (pose_deg.roll * w_roll) ** 2)
    score = 100.0 * np.exp(-dist_sq / (2 * sigma ** 2))
    return clamp(round_score(float(score)), 0.0, 100.0)
