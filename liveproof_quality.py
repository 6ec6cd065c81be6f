"""
Liveproof — Frame Quality Scoring
=================================
Five independent 0-100 forensic scores for a face box, plus the
best-of-session frame selection that runs alongside the challenge.

  Brightness            : 5/95 percentile trimmed mean luma, best at 50%.
  Clarity               : std-dev of the 4-neighbor Laplacian through a
                          logistic curve centered at 35.
  Uniform lighting      : left/right half mean luma difference in the face core.
  Background uniformity : luma std-dev of the blurred frame outside the face.
  Pixel resolution      : inter-ocular distance from detector keypoints.

All face crops are taken as x = floor(x1), w = ceil(x2 - x1), clipped
to the frame; crops of 1 pixel or less in either direction score None.
When ``mirror`` is set crops are flipped horizontally, so "left" and
"right" match what the user sees on screen.
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np

from liveproof_types import BestFrame, BrightnessResult, QualityScores
from liveproof_utils_core import (
    CONFIG,
    clamp,
    ensure_bgr,
    is_finite_number,
    round_half_up,
    round_score,
    setup_logger,
    to_luma,
)

_log = setup_logger('FrameQuality')


class FrameQualityScorer:
    def __init__(self, config: Optional[Mapping] = None):
        cfg = dict(CONFIG['quality'])
        cfg.update(config or {})
        self.mirror = bool(cfg['mirror'])
        self.clip_percent = float(cfg['clip_percent'])
        self.underexposed_below = float(cfg['underexposed_below'])
        self.overexposed_above = float(cfg['overexposed_above'])
        self.overexposed_gray = int(cfg['overexposed_gray'])
        self.overexposed_ratio = float(cfg['overexposed_ratio'])
        self.clarity_mid = float(cfg['clarity_mid'])
        self.clarity_steepness = float(cfg['clarity_steepness'])
        self.lighting_margin = (float(cfg['lighting_margin'][0]), float(cfg['lighting_margin'][1]))
        self.background_blur_sigma = float(cfg['background_blur_sigma'])
        self.background_padding = float(cfg['background_padding'])
        self.background_std_weight = float(cfg['background_std_weight'])
        self.iod_min = float(cfg['iod_min'])
        self.iod_high = float(cfg['iod_high'])
        self.face_crop_scale = float(cfg['face_crop_scale'])

    # ─── Regions ──────────────────────────────────────────────

    @staticmethod
    def face_region(image: np.ndarray, bbox: Sequence[float]) -> Optional[Tuple[int, int, int, int]]:
        """(x, y, w, h) of the clipped face crop, or None if degenerate."""
        height, width = image.shape[:2]
        x1, y1, x2, y2 = bbox[:4]
        x = max(0, math.floor(x1))
        y = max(0, math.floor(y1))
        w = min(width - x, math.ceil(x2 - x1))
        h = min(height - y, math.ceil(y2 - y1))
        if w <= 1 or h <= 1:
            return None
        return x, y, w, h

    def _face_luma(self, image: np.ndarray, bbox: Sequence[float]) -> Optional[np.ndarray]:
        region = self.face_region(image, bbox)
        if region is None:
            return None
        x, y, w, h = region
        gray = to_luma(image[y:y + h, x:x + w])
        return cv2.flip(gray, 1) if self.mirror else gray

    # ─── Scorers ──────────────────────────────────────────────

    def brightness(self, image: np.ndarray, bbox: Sequence[float]) -> Optional[BrightnessResult]:
        gray = self._face_luma(ensure_bgr(image), bbox)
        if gray is None:
            return None
        values = gray.ravel()
        total = values.size
        ordered = np.sort(values)
        low_index = math.floor((self.clip_percent / 100) * (total - 1))
        high_index = math.floor(((100 - self.clip_percent) / 100) * (total - 1))
        p_low = ordered[low_index]
        p_high = ordered[high_index]

        kept = values[(values >= p_low) & (values <= p_high)]
        if kept.size == 0:
            return BrightnessResult(value=0.0, status='invalid', brightness=0.0)
        brightness = float(kept.mean()) / 255 * 100
        overexposed = np.count_nonzero(values >= self.overexposed_gray) / total

        status = 'normal'
        if brightness < self.underexposed_below:
            status = 'underexposed'
        elif brightness > self.overexposed_above and overexposed > self.overexposed_ratio:
            status = 'overexposed'
        elif brightness > self.overexposed_above:
            status = 'too bright'

        quality = max(0.0, 100 - abs(brightness - 50) * 2)
        return BrightnessResult(value=round_score(quality), status=status, brightness=brightness)

    def clarity(self, image: np.ndarray, bbox: Sequence[float]) -> Optional[float]:
        gray = self._face_luma(ensure_bgr(image), bbox)
        if gray is None:
            return None
        # ksize=1 is the 3x3 kernel [[0,1,0],[1,-4,1],[0,1,0]]
        response = cv2.Laplacian(gray.astype(np.float64), cv2.CV_64F, ksize=1,
                                 borderType=cv2.BORDER_REPLICATE)
        sigma = math.sqrt(max(0.0, float(response.var())))
        score = 100 / (1 + math.exp(-self.clarity_steepness * (sigma - self.clarity_mid)))
        return float(round_half_up(clamp(score)))

    def uniform_lighting(self, image: np.ndarray, bbox: Sequence[float]) -> Optional[float]:
        gray = self._face_luma(ensure_bgr(image), bbox)
        if gray is None:
            return None
        sh, sw = gray.shape
        margin_w = math.floor(sw * self.lighting_margin[0])
        margin_h = math.floor(sh * self.lighting_margin[1])
        core_w = max(1, sw - margin_w * 2)
        core_h = max(1, sh - margin_h * 2)
        mid = core_w // 2
        core = gray[margin_h:margin_h + core_h, margin_w:margin_w + core_w].astype(np.float64)

        left = core[:, :mid]
        right = core[:, mid:]
        l_pct = (left.mean() if left.size else 0.0) / 255 * 100
        r_pct = (right.mean() if right.size else 0.0) / 255 * 100
        diff = abs(l_pct - r_pct) / max(l_pct, r_pct, 1) * 100
        return round_score(clamp(100 - diff))

    def background_uniformity(self, image: np.ndarray, bbox: Sequence[float]) -> Optional[float]:
        image = ensure_bgr(image)
        height, width = image.shape[:2]
        blurred = cv2.GaussianBlur(image, (0, 0), sigmaX=self.background_blur_sigma)
        gray = to_luma(blurred)

        x1, y1, x2, y2 = bbox[:4]
        pad_w = (x2 - x1) * self.background_padding
        pad_h = (y2 - y1) * self.background_padding
        rx1 = max(0, math.floor(x1 - pad_w))
        ry1 = max(0, math.floor(y1 - pad_h))
        rx2 = max(rx1, min(width, math.ceil(x2 + pad_w)))
        ry2 = max(ry1, min(height, math.ceil(y2 + pad_h)))

        mask = np.ones((height, width), dtype=bool)
        mask[ry1:ry2, rx1:rx2] = False
        background = gray[mask]
        if background.size == 0:
            return 0.0
        std_dev = float(background.astype(np.float64).std())
        return round_score(clamp(100 - std_dev * self.background_std_weight))

    def pixel_resolution(self, keypoints) -> Optional[float]:
        if keypoints is None or len(keypoints) < 2:
            return None
        left, right = keypoints[0], keypoints[1]
        iod = math.hypot(float(left[0]) - float(right[0]), float(left[1]) - float(right[1]))
        if iod < self.iod_min:
            score = iod / self.iod_min * 60
        elif iod >= self.iod_high:
            score = 100.0
        else:
            score = 60 + (iod - self.iod_min) / (self.iod_high - self.iod_min) * 40
        return round_score(score)

    def score(self, image: np.ndarray, detection, frontal_score: Optional[float] = None) -> QualityScores:
        """Run all five scorers for one detection."""
        image = ensure_bgr(image)
        bbox = detection.bbox
        brightness = self.brightness(image, bbox)
        return QualityScores(
            brightness_score=None if brightness is None else brightness.value,
            brightness_status=None if brightness is None else brightness.status,
            clarity_score=self.clarity(image, bbox),
            uniform_lighting_score=self.uniform_lighting(image, bbox),
            background_uniformity_score=self.background_uniformity(image, bbox),
            pixel_resolution_score=self.pixel_resolution(getattr(detection, "keypoints", None)),
            frontal_score=frontal_score,
        )

    # ─── Evidence crops ───────────────────────────────────────

    def display_frame(self, image: np.ndarray) -> np.ndarray:
        return cv2.flip(image, 1) if self.mirror else image.copy()

    def face_crop(self, image: np.ndarray, bbox: Sequence[float]) -> Optional[np.ndarray]:
        """Square crop ``face_crop_scale`` x the longer box side, clipped to the frame."""
        height, width = image.shape[:2]
        x1, y1, x2, y2 = bbox[:4]
        face_w = max(1.0, x2 - x1)
        face_h = max(1.0, y2 - y1)
        side = max(face_w, face_h) * self.face_crop_scale
        crop_x = max(0.0, x1 + face_w / 2 - side / 2)
        crop_y = max(0.0, y1 + face_h / 2 - side / 2)
        crop_w = min(width - crop_x, side)
        crop_h = min(height - crop_y, side)
        if crop_w <= 0 or crop_h <= 0:
            return None
        x0 = int(math.floor(crop_x))
        y0 = int(math.floor(crop_y))
        x_end = min(width, x0 + max(1, round_half_up(crop_w)))
        y_end = min(height, y0 + max(1, round_half_up(crop_h)))
        crop = image[y0:y_end, x0:x_end]
        if crop.size == 0:
            return None
        return cv2.flip(crop, 1) if self.mirror else crop.copy()


class BestFrameTracker:
    """Keeps the most frontal frame of the session and its quality scores.

    A candidate replaces the stored best only when its frontal score is
    strictly greater, so ties keep the earlier frame. On replacement each
    component score overwrites the stored one only if it is not None.
    """

    def __init__(self, scorer: Optional[FrameQualityScorer] = None):
        self.scorer = scorer or FrameQualityScorer()
        self.reset()

    def reset(self) -> None:
        self.best_frontal = -math.inf
        self.scores = QualityScores()
        self.frame: Optional[np.ndarray] = None
        self.face_crop: Optional[np.ndarray] = None
        self.detection = None
        self.replacements = 0

    def offer(self, image: np.ndarray, detection, frontal_score: Optional[float]) -> bool:
        """Consider a frame. Returns True when it became the new best."""
        if not is_finite_number(frontal_score) or frontal_score <= self.best_frontal:
            return False

        image = ensure_bgr(image)
        candidate = self.scorer.score(image, detection, frontal_score)
        self.best_frontal = float(frontal_score)
        self.frame = self.scorer.display_frame(image)
        self.face_crop = self.scorer.face_crop(image, detection.bbox)
        self.detection = detection
        self.replacements += 1

        current = self.scores
        if candidate.brightness_score is not None:
            current.brightness_score = candidate.brightness_score
            current.brightness_status = candidate.brightness_status
        if candidate.clarity_score is not None:
            current.clarity_score = candidate.clarity_score
        if candidate.uniform_lighting_score is not None:
            current.uniform_lighting_score = candidate.uniform_lighting_score
        if candidate.background_uniformity_score is not None:
            current.background_uniformity_score = candidate.background_uniformity_score
        if candidate.pixel_resolution_score is not None:
            current.pixel_resolution_score = candidate.pixel_resolution_score
        current.frontal_score = self.best_frontal
        _log.debug("New best frame: frontal=%.2f quality=%s", self.best_frontal, current.quality_score)
        return True

    def snapshot(self) -> Optional[BestFrame]:
        if self.frame is None:
            return None
        return BestFrame(
            scores=replace(self.scores),
            frame=self.frame,
            face_crop=self.face_crop,
            detection=self.detection,
        )
