"""
Liveproof — Frame Quality Tests
===============================
The five forensic scores on synthetic frames, and best-of-session
frame selection.
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from liveproof_quality import BestFrameTracker, FrameQualityScorer
from liveproof_types import Detection, QualityScores

# ─── Fixtures ─────────────────────────────────────────────────

_FACE_BOX = (50.0, 50.0, 150.0, 150.0)


def _gray_frame(value: int = 127, size: int = 200) -> np.ndarray:
    return np.full((size, size, 3), value, dtype=np.uint8)


def _detection(bbox=_FACE_BOX, iod: float = 40.0) -> Detection:
    cx = (bbox[0] + bbox[2]) / 2
    kps = np.array([[cx - iod / 2, 100], [cx + iod / 2, 100], [cx, 110],
                    [cx - 10, 130], [cx + 10, 130]], dtype=np.float32)
    return Detection(bbox=bbox, score=0.9, keypoints=kps)


@pytest.fixture
def scorer() -> FrameQualityScorer:
    return FrameQualityScorer({'mirror': True})


# ─── Test 1: Brightness ───────────────────────────────────────

def test_uniform_mid_gray_brightness(scorer):
    result = scorer.brightness(_gray_frame(127), _FACE_BOX)
    assert result.brightness == pytest.approx(127 / 255 * 100)
    assert result.status == 'normal'
    assert result.value == pytest.approx(99.61)


@pytest.mark.parametrize("value,status", [
    (30, 'underexposed'),
    (200, 'too bright'),
    (250, 'overexposed'),
])
def test_brightness_status(scorer, value, status):
    assert scorer.brightness(_gray_frame(value), _FACE_BOX).status == status


def test_brightness_trims_outliers(scorer):
    frame = _gray_frame(127)
    # 2% saturated speckles inside the face do not move the trimmed mean
    frame[50:52, 50:150] = 255
    result = scorer.brightness(frame, _FACE_BOX)
    assert result.brightness == pytest.approx(127 / 255 * 100)


# ─── Test 2: Clarity, lighting, background, resolution ────────

def test_flat_face_has_low_clarity(scorer):
    assert scorer.clarity(_gray_frame(127), _FACE_BOX) == 6.0


def test_textured_face_has_high_clarity(scorer):
    frame = _gray_frame(127)
    checker = (np.indices((100, 100)).sum(axis=0) % 2) * 255
    frame[50:150, 50:150] = checker[:, :, None].astype(np.uint8)
    assert scorer.clarity(frame, _FACE_BOX) == 100.0


def test_uneven_lighting_scores_half(scorer):
    frame = _gray_frame(127)
    frame[50:150, 50:100] = 100
    frame[50:150, 100:150] = 200
    assert scorer.uniform_lighting(frame, _FACE_BOX) == pytest.approx(50.0)
    assert scorer.uniform_lighting(_gray_frame(127), _FACE_BOX) == 100.0


def test_background_uniformity(scorer):
    assert scorer.background_uniformity(_gray_frame(127), _FACE_BOX) == 100.0

    # A hard left/right split survives the sigma-10 blur
    split = _gray_frame(0)
    split[:, 100:] = 255
    score = scorer.background_uniformity(split, _FACE_BOX)
    assert 0.0 <= score < 50.0


def test_face_covering_frame_has_no_background(scorer):
    assert scorer.background_uniformity(_gray_frame(127), (0, 0, 200, 200)) == 0.0


@pytest.mark.parametrize("iod,expected", [
    (40.0, 30.0),
    (80.0, 60.0),
    (190.0, 80.0),
    (300.0, 100.0),
    (450.0, 100.0),
])
def test_pixel_resolution_curve(scorer, iod, expected):
    kps = np.array([[0, 0], [iod, 0]], dtype=np.float32)
    assert scorer.pixel_resolution(kps) == pytest.approx(expected)


def test_pixel_resolution_needs_two_keypoints(scorer):
    assert scorer.pixel_resolution(None) is None
    assert scorer.pixel_resolution(np.zeros((1, 2))) is None


# ─── Test 3: Aggregate ────────────────────────────────────────

def test_scores_bounded_and_aggregate_is_mean(scorer):
    scores = scorer.score(_gray_frame(127), _detection(), frontal_score=88.0)
    components = scores.components()
    assert all(0.0 <= v <= 100.0 for v in components)
    assert scores.brightness_status == 'normal'
    assert scores.frontal_score == 88.0
    assert scores.quality_score == pytest.approx(67.12)


def test_degenerate_box_scores_none(scorer):
    scores = scorer.score(_gray_frame(127), Detection(bbox=(10, 10, 11, 11), score=0.9))
    assert scores.brightness_score is None
    assert scores.clarity_score is None
    assert scores.uniform_lighting_score is None
    assert scores.pixel_resolution_score is None
    assert scores.quality_score is None


def test_random_frames_stay_in_range(scorer):
    rng = np.random.RandomState(11)
    for _ in range(5):
        frame = rng.randint(0, 256, size=(240, 320, 3)).astype(np.uint8)
        x1, y1 = rng.uniform(0, 200), rng.uniform(0, 120)
        bbox = (x1, y1, x1 + rng.uniform(20, 120), y1 + rng.uniform(20, 120))
        scores = scorer.score(frame, _detection(bbox=bbox))
        for value in scores.components():
            assert value is None or 0.0 <= value <= 100.0


# ─── Test 4: Best frame ───────────────────────────────────────

def test_best_frame_requires_strictly_greater_frontal(scorer):
    tracker = BestFrameTracker(scorer)
    first = _gray_frame(127)
    assert tracker.offer(first, _detection(), 50.0)
    assert not tracker.offer(_gray_frame(30), _detection(), 50.0)
    assert tracker.scores.brightness_status == 'normal'
    assert tracker.offer(_gray_frame(30), _detection(), 50.5)
    assert tracker.scores.brightness_status == 'underexposed'
    assert tracker.scores.frontal_score == 50.5


def test_best_frame_ignores_missing_frontal(scorer):
    tracker = BestFrameTracker(scorer)
    assert not tracker.offer(_gray_frame(), _detection(), None)
    assert not tracker.offer(_gray_frame(), _detection(), float("nan"))
    assert tracker.snapshot() is None


def test_best_frame_keeps_previous_component_when_new_is_none(scorer):
    tracker = BestFrameTracker(scorer)
    tracker.offer(_gray_frame(), _detection(iod=40.0), 10.0)
    assert tracker.scores.pixel_resolution_score == pytest.approx(30.0)
    no_kps = Detection(bbox=_FACE_BOX, score=0.9, keypoints=None)
    assert tracker.offer(_gray_frame(), no_kps, 20.0)
    assert tracker.scores.pixel_resolution_score == pytest.approx(30.0)


def test_best_frame_is_mirrored_display_frame(scorer):
    tracker = BestFrameTracker(scorer)
    frame = _gray_frame(127)
    frame[:, :10] = 0
    tracker.offer(frame, _detection(), 90.0)
    best = tracker.snapshot()
    assert np.all(best.frame[:, -10:] == 0)
    assert np.all(best.frame[:, :10] == 127)
    # 1.4 x 100 px square around the face center
    assert best.face_crop.shape == (140, 140, 3)


def test_snapshot_is_independent_copy(scorer):
    tracker = BestFrameTracker(scorer)
    tracker.offer(_gray_frame(), _detection(), 90.0)
    snap = tracker.snapshot()
    snap.scores.clarity_score = -1
    assert tracker.scores.clarity_score == 6.0


def test_reset_clears_best(scorer):
    tracker = BestFrameTracker(scorer)
    tracker.offer(_gray_frame(), _detection(), 90.0)
    tracker.reset()
    assert tracker.snapshot() is None
    assert tracker.scores == QualityScores()
    assert tracker.offer(_gray_frame(), _detection(), 1.0)
