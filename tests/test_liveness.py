"""
Liveproof — Liveness Challenge Tests
====================================
Geometric signals (nod, shake, blink, mouth, frontal score) and the
ordered challenge state machine, driven by synthetic 98-point faces.
"""

from __future__ import annotations

import math
import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from liveproof_liveness import (
    LandmarkIndices,
    LivenessStateMachine,
    LivenessThresholds,
    WFLW_98,
    check_stage,
    reset_stage,
)
from liveproof_liveness import geometry
from liveproof_types import (
    BlinkState,
    DetectionWithLandmarks,
    LivenessMetrics,
    MouthState,
    Pose,
    RangeState,
    StageKey,
)

# ─── Fixtures ─────────────────────────────────────────────────


def _make_face(nose_dx: float = 0.0, nose_dy: float = 0.0, eye_height: float = 4.0,
               mouth_open: float = 4.0, bbox=(0.0, 0.0, 100.0, 100.0),
               pose=None) -> DetectionWithLandmarks:
    """Synthetic 98-point face in a 100x100 box.

    Outline center is (50, 50). Eyes are 20 px wide, so the eye ratio is
    20 / eye_height. The mouth is 20 px wide, so its ratio is mouth_open / 20.
    """
    pts = np.zeros((98, 2), dtype=np.float32)
    idx = WFLW_98
    tl, tr, bl, br = idx.outline
    pts[tl], pts[tr], pts[bl], pts[br] = (30, 40), (70, 40), (30, 60), (70, 60)
    pts[idx.nose_tip] = (50 + nose_dx, 50 + nose_dy)

    for eye, cx in ((idx.left_eye, 30), (idx.right_eye, 70)):
        pts[eye.outer] = (cx - 10, 40)
        pts[eye.inner] = (cx + 10, 40)
        pts[eye.upper] = (cx, 40 - eye_height / 2)
        pts[eye.lower] = (cx, 40 + eye_height / 2)

    m = idx.mouth
    pts[m.left] = (40, 80)
    pts[m.right] = (60, 80)
    pts[m.upper] = (50, 80 - mouth_open / 2)
    pts[m.lower] = (50, 80 + mouth_open / 2)
    return DetectionWithLandmarks(bbox=tuple(bbox), score=0.9, landmarks=pts,
                                  pose=pose or Pose(0.0, 0.0, 0.0))


def _new_session():
    machine = LivenessStateMachine(LivenessThresholds())
    state = machine.new_state()
    machine.start(state)
    return machine, state


def _step(machine, state, face):
    metrics = machine.observe(state, face)
    return machine.evaluate(state, metrics)


# ─── Test 1: Geometric signals ────────────────────────────────

def test_nod_and_shake_ratios_normalized_by_box():
    face = _make_face(nose_dx=-6, nose_dy=-5)
    assert geometry.nod_ratio(face) == pytest.approx(0.05)
    assert geometry.shake_ratio(face) == pytest.approx(0.06)


def test_signals_none_without_enough_landmarks():
    face = DetectionWithLandmarks(bbox=(0, 0, 100, 100), score=0.9,
                                  landmarks=np.zeros((10, 2), dtype=np.float32))
    assert geometry.nod_ratio(face) is None
    assert geometry.shake_ratio(face) is None
    assert geometry.blink_ratios(face) is None
    assert geometry.mouth_ratio(face) is None


def test_non_finite_landmark_disables_signal():
    face = _make_face()
    face.landmarks[WFLW_98.nose_tip] = (np.nan, 50)
    assert geometry.nod_ratio(face) is None


def test_blink_ratio_is_minimum_of_both_eyes():
    face = _make_face(eye_height=4)
    face.landmarks[WFLW_98.right_eye.upper] = (70, 39)
    face.landmarks[WFLW_98.right_eye.lower] = (70, 41)
    metrics = geometry.blink_ratios(face)
    assert metrics.left_ratio == pytest.approx(5.0)
    assert metrics.right_ratio == pytest.approx(10.0)
    assert metrics.ratio == pytest.approx(5.0)


def test_zero_eye_height_counts_as_closed_and_skips_average():
    metrics = geometry.blink_ratios(_make_face(eye_height=0))
    assert math.isinf(metrics.ratio)
    state = BlinkState(eye_avg=10.0)
    geometry.update_blink_state(metrics, state)
    assert state.closed_detected
    assert not state.open_detected
    assert state.eye_avg == 10.0


def test_blink_average_moves_only_inside_limits():
    state = BlinkState(eye_avg=10.0)
    geometry.update_blink_average(5.0, state)
    assert state.eye_avg == pytest.approx(9.5)
    geometry.update_blink_average(25.0, state)
    assert state.eye_avg == pytest.approx(9.5)
    geometry.update_blink_average(4.9, state)
    assert state.eye_avg == pytest.approx(9.5)


def test_mouth_ratio_and_state():
    assert geometry.mouth_ratio(_make_face(mouth_open=12)) == pytest.approx(0.6)
    state = MouthState()
    geometry.update_mouth_state(0.6, state)
    assert state.open_detected and not state.closed_detected
    geometry.update_mouth_state(0.5, state)          # exactly at threshold counts as closed
    assert state.closed_detected


def test_spread_is_monotonic_non_decreasing():
    rng = np.random.RandomState(3)
    state = RangeState()
    last = 0.0
    for value in rng.uniform(-0.2, 0.2, size=50):
        geometry.update_range(state, float(value))
        current = geometry.spread(state)
        assert current >= last
        last = current
    geometry.update_range(state, None)
    geometry.update_range(state, float("nan"))
    assert geometry.spread(state) == last


def test_frontal_score():
    assert geometry.frontal_score(Pose(0.0, 0.0, 0.0)) == 100.0
    assert geometry.frontal_score(Pose(20.0, 0.0, 0.0)) == pytest.approx(60.65)
    assert geometry.frontal_score(None) is None
    assert geometry.frontal_score(Pose(90.0, 90.0, 90.0)) >= 0.0


def test_landmark_indices_from_config():
    cfg = {
        'outline': [0, 1, 2, 3], 'nose_tip': 4, 'min_points': 20,
        'left_eye': {'upper': 5, 'lower': 6, 'outer': 7, 'inner': 8},
        'right_eye': {'upper': 9, 'lower': 10, 'outer': 11, 'inner': 12},
        'mouth': {'upper': 13, 'lower': 14, 'left': 15, 'right': 16},
    }
    indices = LandmarkIndices.from_config(cfg)
    assert indices.outline == (0, 1, 2, 3)
    assert indices.right_eye.inner == 12
    assert indices.min_points == 20


# ─── Test 2: Stage predicates ─────────────────────────────────

def test_nod_at_exact_threshold_completes():
    machine, state = _new_session()
    assert _step(machine, state, _make_face()).just_completed_index is None
    status = _step(machine, state, _make_face(nose_dy=-5))
    assert status.just_completed_index == 0
    assert status.just_completed_stage.key is StageKey.NOD
    assert status.current_stage.key is StageKey.SHAKE
    # Nod window was reset on completion
    assert state.nod_range.min is None and state.nod_range.max is None
    metrics = machine.observe(state, _make_face(nose_dy=-5))
    assert metrics.nod_spread == 0.0


def test_blink_requires_closed_and_open():
    machine, state = _new_session()
    state.stage_index = 2
    for _ in range(3):
        status = _step(machine, state, _make_face(eye_height=4))
    assert status.just_completed_index is None
    assert state.blink.open_detected and not state.blink.closed_detected

    status = _step(machine, state, _make_face(eye_height=1))
    assert status.just_completed_index == 2
    assert not state.blink.open_detected and not state.blink.closed_detected


def test_mouth_requires_open_and_closed():
    machine, state = _new_session()
    state.stage_index = 3
    status = _step(machine, state, _make_face(mouth_open=12))
    assert status.just_completed_index is None
    status = _step(machine, state, _make_face(mouth_open=4))
    assert status.just_completed_index == 3
    assert status.completed


def test_check_stage_rejects_unknown_key():
    with pytest.raises(ValueError):
        check_stage("nod", LivenessMetrics(), _new_session()[1], LivenessThresholds())
    with pytest.raises(ValueError):
        reset_stage("nod", _new_session()[1])


# ─── Test 3: State machine ────────────────────────────────────

def test_full_challenge_in_order():
    machine, state = _new_session()
    completed = []
    frames = [
        _make_face(),                      # baseline: eyes open, mouth closed
        _make_face(nose_dy=-5),            # nod
        _make_face(nose_dx=-6),            # shake
        _make_face(eye_height=1),          # blink
        _make_face(mouth_open=12),         # mouth
    ]
    for face in frames:
        status = _step(machine, state, face)
        if status.just_completed_index is not None:
            completed.append(status.just_completed_stage.key)

    assert completed == [StageKey.NOD, StageKey.SHAKE, StageKey.BLINK, StageKey.MOUTH]
    assert state.completed
    assert not state.active
    assert status.completed
    assert status.progress == pytest.approx(1.0)
    assert status.stage_index == 3
    assert status.current_stage is None


def test_one_stage_per_frame():
    machine, state = _new_session()
    state.blink.open_detected = state.blink.closed_detected = True
    state.mouth.open_detected = state.mouth.closed_detected = True
    _step(machine, state, _make_face())
    status = _step(machine, state, _make_face(nose_dx=-6, nose_dy=-5))
    assert status.just_completed_index == 0
    assert state.stage_index == 1
    assert state.progress == pytest.approx(0.25)


def test_later_stage_signal_does_not_complete_earlier_stage():
    machine, state = _new_session()
    _step(machine, state, _make_face())
    status = _step(machine, state, _make_face(nose_dx=-10, eye_height=1, mouth_open=12))
    assert status.just_completed_index is None
    assert status.current_stage.key is StageKey.NOD


def test_observe_records_metrics():
    machine, state = _new_session()
    metrics = machine.observe(state, _make_face(pose=Pose(0.0, 0.0, 0.0)))
    assert state.last_metrics is metrics
    assert metrics.frontal_score == 100.0
    assert metrics.nod_spread == 0.0
    assert metrics.blink.ratio == pytest.approx(5.0)


def test_start_resets_windows_and_blink_average():
    machine, state = _new_session()
    _step(machine, state, _make_face(eye_height=2))
    state.blink.eye_avg = 15.0
    machine.start(state)
    assert state.active
    assert state.blink.eye_avg == 10.0
    assert not state.blink.open_detected and not state.blink.closed_detected
    assert state.nod_range.min is None


def test_stage_index_never_skips_on_random_streams():
    rng = np.random.RandomState(21)
    machine, state = _new_session()
    last = state.stage_index
    for _ in range(300):
        face = _make_face(
            nose_dx=float(rng.uniform(-8, 8)),
            nose_dy=float(rng.uniform(-8, 8)),
            eye_height=float(rng.choice([0.0, 1.0, 4.0])),
            mouth_open=float(rng.choice([4.0, 12.0])),
        )
        status = _step(machine, state, face)
        assert state.stage_index in (last, last + 1)
        if state.stage_index == last + 1:
            assert status.just_completed_index == last
        else:
            assert status.just_completed_index is None
        last = state.stage_index
        if state.completed:
            break
