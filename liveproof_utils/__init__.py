"""
Liveproof -- liveproof_utils package
====================================
Re-exports the shared utilities from liveproof_utils_core.py so that
`from liveproof_utils import X` works for config, logging and helpers.

Also exposes submodules:
  - liveproof_utils.anchor_grid
  - liveproof_utils.box_ops
  - liveproof_utils.scrfd_detector
"""

from __future__ import annotations

from liveproof_utils_core import (
    # Config
    DEFAULT_CONFIG,
    load_config,
    merge_config,
    CONFIG,
    # Constants
    DETECTION_THRESHOLD,
    NMS_THRESHOLD,
    ANCHOR_CACHE_SIZE,
    NOD_PITCH,
    SHAKE_YAW,
    MOUTH_THRESHOLD,
    LANDMARK_COUNT,
    # Logging
    setup_logger,
    # Numeric helpers
    round_half_up,
    round_score,
    clamp,
    is_finite_number,
    # Frames
    ensure_bgr,
    to_luma,
)

from .anchor_grid import AnchorGrid
from .box_ops import distance2bbox, distance2kps, iou, nms
from .scrfd_detector import SCRFDDetector

__all__ = [
    "DEFAULT_CONFIG", "load_config", "merge_config", "CONFIG",
    "DETECTION_THRESHOLD", "NMS_THRESHOLD", "ANCHOR_CACHE_SIZE",
    "NOD_PITCH", "SHAKE_YAW", "MOUTH_THRESHOLD", "LANDMARK_COUNT",
    "setup_logger",
    "round_half_up", "round_score", "clamp", "is_finite_number",
    "ensure_bgr", "to_luma",
    "AnchorGrid",
    "distance2bbox", "distance2kps", "iou", "nms",
    "SCRFDDetector",
]
