"""
Liveproof — Shared Utility Module
=================================
Configuration, logging and the small numeric/image helpers shared by
every liveproof module.

Contains:
  A) config.yaml loading merged over DEFAULT_CONFIG
  B) Module constants derived from the loaded configuration
  C) setup_logger for console logging
  D) Half-up rounding and clamping used by every score
  E) Frame validation (BGR uint8) and luma conversion
"""

from __future__ import annotations

import copy
import logging
import math
import os
from typing import Optional

import cv2
import numpy as np
import yaml

from liveproof_errors import InvalidInput


# ===================================================================
# Configuration
# ===================================================================

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, 'config.yaml')

DEFAULT_CONFIG: dict = {
    'models': {
        'detector': {
            'source': 'models/scrfd_500m_bnkps_shape640x640.onnx',
            'relative_path': 'models/scrfd_500m_bnkps_shape640x640.onnx',
            'sha256': None,
        },
        'landmarks': {
            'source': 'models/pfpld.onnx',
            'relative_path': 'models/pfpld.onnx',
            'sha256': None,
        },
        'fetch_timeout': 30.0,
        'base_dir': None,
    },
    'runtime': {
        'execution_providers': [
            'CUDAExecutionProvider',
            'DmlExecutionProvider',
            'CPUExecutionProvider',
        ],
        'restricted_device_patterns': ['huawei', 'kirin'],
        'scalar_only_patterns': [],
        'capability_error_patterns': [
            'simd',
            'avx',
            'no available backend',
            'provider.*not available',
            'not supported on this (cpu|device|platform)',
        ],
    },
    'detection': {
        'threshold': 0.5,
        'nms_threshold': 0.4,
        'input_size': [640, 640],
        'anchor_cache_size': 100,
    },
    'landmarks': {
        'input_size': [112, 112],
        'crop_scale': 0.9,
        'crop_top_ratio': 0.4,
        'min_points': 98,
        'outline': [96, 97, 76, 82],
        'nose_tip': 54,
        'left_eye': {'upper': 66, 'lower': 62, 'outer': 64, 'inner': 60},
        'right_eye': {'upper': 74, 'lower': 70, 'outer': 72, 'inner': 68},
        'mouth': {'upper': 90, 'lower': 94, 'left': 88, 'right': 92},
    },
    'liveness': {
        'nod_pitch': 0.05,
        'shake_yaw': 0.06,
        'mouth_threshold': 0.5,
        'blink_initial_avg': 10.0,
        'blink_limits': [5.0, 20.0],
        'blink_weights': {'current': 0.1, 'previous': 0.9},
        'pose_sigma': 20.0,
        'pose_weights': {'yaw': 1.0, 'pitch': 1.0, 'roll': 0.8},
    },
    'quality': {
        'mirror': True,
        'clip_percent': 5,
        'underexposed_below': 30,
        'overexposed_above': 70,
        'overexposed_gray': 240,
        'overexposed_ratio': 0.1,
        'clarity_mid': 35.0,
        'clarity_steepness': 0.08,
        'lighting_margin': [0.2, 0.1],
        'background_blur_sigma': 10.0,
        'background_padding': 0.2,
        'background_std_weight': 0.8,
        'iod_min': 80.0,
        'iod_high': 300.0,
        'face_crop_scale': 1.4,
    },
    'audit': {
        'enabled': False,
        'log_dir': 'logs',
        'log_frames': False,
    },
}


def merge_config(base: dict, override: Optional[dict]) -> dict:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[str] = None) -> dict:
    """Load config.yaml merged over DEFAULT_CONFIG.

    An explicit ``path`` must exist. The default config.yaml next to this
    module is optional.
    """
    target = path or _config_path
    if path is None and not os.path.exists(target):
        return copy.deepcopy(DEFAULT_CONFIG)
    with open(target, 'r', encoding='utf-8') as f:
        loaded = yaml.safe_load(f) or {}
    return merge_config(DEFAULT_CONFIG, loaded)


CONFIG = load_config()


# ===================================================================
# Constants (loaded from config.yaml, overridable at runtime)
# ===================================================================

DETECTION_THRESHOLD = CONFIG['detection']['threshold']
NMS_THRESHOLD       = CONFIG['detection']['nms_threshold']
ANCHOR_CACHE_SIZE   = CONFIG['detection']['anchor_cache_size']

NOD_PITCH       = CONFIG['liveness']['nod_pitch']
SHAKE_YAW       = CONFIG['liveness']['shake_yaw']
MOUTH_THRESHOLD = CONFIG['liveness']['mouth_threshold']

LANDMARK_COUNT = CONFIG['landmarks']['min_points']


# ===================================================================
# Logging Setup
# ===================================================================

def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a configured logger for liveproof modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s',
            datefmt='%H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


# ===================================================================
# Numeric Helpers
# ===================================================================

def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves toward +inf (2.5 -> 3, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))


def round_score(value: float, digits: int = 2) -> float:
    """Half-up rounding to ``digits`` decimals, as used by every score."""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return low if value < low else (high if value > high else value)


def is_finite_number(value) -> bool:
    return value is not None and isinstance(value, (int, float, np.floating, np.integer)) \
        and math.isfinite(float(value))


# ===================================================================
# Frame Helpers
# ===================================================================

def ensure_bgr(image) -> np.ndarray:
    """Validate a frame and return it as an H x W x 3 uint8 BGR array.

    Grayscale and BGRA frames are converted. Raises InvalidInput for
    anything that is not a non-empty 2D raster.
    """
    if not isinstance(image, np.ndarray):
        raise InvalidInput(f"Expected a numpy image array, got {type(image).__name__}")
    if image.ndim not in (2, 3) or image.shape[0] == 0 or image.shape[1] == 0:
        raise InvalidInput(f"Invalid frame shape: {image.shape}")

    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    channels = image.shape[2]
    if channels == 3:
        return image
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if channels == 1:
        return cv2.cvtColor(image[:, :, 0], cv2.COLOR_GRAY2BGR)
    raise InvalidInput(f"Unsupported channel count: {channels}")


def to_luma(image_bgr: np.ndarray) -> np.ndarray:
    """BT.601 luma (0.299 R + 0.587 G + 0.114 B), rounded to uint8."""
    return cv2.cvtColor(image_bgr, cv2.COLOR_BGR2GRAY)
