"""
Liveproof — Challenge-Response Liveness
=======================================
Ordered action challenge: nod -> shake -> blink -> mouth open.

The state machine holds no session data itself. The engine owns one
LivenessComputationState per session and passes it in; every method
here reads or updates only that object.

Per accepted frame:
  1. observe()  updates nod/shake ranges, blink and mouth observations
                and returns the frame's LivenessMetrics.
  2. evaluate() checks the current stage only. On success the stage
                index advances by one and only that stage's window is
                reset, so the next stage starts clean.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from liveproof_types import (
    LIVENESS_STAGES,
    LivenessComputationState,
    LivenessMetrics,
    StageDefinition,
    StageKey,
    StageStatus,
)
from liveproof_utils_core import CONFIG
from liveproof_liveness import geometry
from liveproof_liveness.geometry import LandmarkIndices


@dataclass(frozen=True)
class LivenessThresholds:
    nod_pitch: float = 0.05
    shake_yaw: float = 0.06
    mouth_threshold: float = 0.5
    blink_initial_avg: float = 10.0
    blink_limits: Tuple[float, float] = (5.0, 20.0)
    blink_weights: Tuple[float, float] = (0.1, 0.9)      # current, previous
    pose_sigma: float = 20.0
    pose_weights: Tuple[float, float, float] = (1.0, 1.0, 0.8)   # yaw, pitch, roll

    @classmethod
    def from_config(cls, cfg: Optional[Mapping] = None) -> "LivenessThresholds":
        cfg = cfg if cfg is not None else CONFIG['liveness']
        weights = cfg['blink_weights']
        pose_weights = cfg['pose_weights']
        return cls(
            nod_pitch=float(cfg['nod_pitch']),
            shake_yaw=float(cfg['shake_yaw']),
            mouth_threshold=float(cfg['mouth_threshold']),
            blink_initial_avg=float(cfg['blink_initial_avg']),
            blink_limits=(float(cfg['blink_limits'][0]), float(cfg['blink_limits'][1])),
            blink_weights=(float(weights['current']), float(weights['previous'])),
            pose_sigma=float(cfg['pose_sigma']),
            pose_weights=(float(pose_weights['yaw']), float(pose_weights['pitch']),
                          float(pose_weights['roll'])),
        )


def check_stage(key: StageKey, metrics: LivenessMetrics,
                state: LivenessComputationState,
                thresholds: LivenessThresholds) -> bool:
    """Completion predicate of one stage. Consults only that stage's signals."""
    if key is StageKey.NOD:
        return metrics.nod_spread is not None and metrics.nod_spread >= thresholds.nod_pitch
    elif key is StageKey.SHAKE:
        return metrics.shake_spread is not None and metrics.shake_spread >= thresholds.shake_yaw
    elif key is StageKey.BLINK:
        return state.blink.closed_detected and state.blink.open_detected
    elif key is StageKey.MOUTH:
        return state.mouth.closed_detected and state.mouth.open_detected
    raise ValueError(f"Unknown liveness stage: {key!r}")


def reset_stage(key: StageKey, state: LivenessComputationState) -> None:
    if key is StageKey.NOD:
        state.nod_range.reset()
    elif key is StageKey.SHAKE:
        state.shake_range.reset()
    elif key is StageKey.BLINK:
        geometry.reset_blink(state.blink)
    elif key is StageKey.MOUTH:
        geometry.reset_mouth(state.mouth)
    else:
        raise ValueError(f"Unknown liveness stage: {key!r}")


class LivenessStateMachine:
    STAGES: Tuple[StageDefinition, ...] = LIVENESS_STAGES

    def __init__(self, thresholds: Optional[LivenessThresholds] = None,
                 indices: Optional[LandmarkIndices] = None):
        self.thresholds = thresholds or LivenessThresholds.from_config()
        self.indices = indices or geometry.WFLW_98

    @property
    def total(self) -> int:
        return len(self.STAGES)

    def new_state(self) -> LivenessComputationState:
        return LivenessComputationState.create(self.thresholds.blink_initial_avg)

    def start(self, state: LivenessComputationState) -> None:
        state.active = True
        geometry.reset_blink(state.blink, reset_average=True,
                             initial_avg=self.thresholds.blink_initial_avg)
        geometry.reset_mouth(state.mouth)
        state.nod_range.reset()
        state.shake_range.reset()

    def current_stage(self, state: LivenessComputationState) -> Optional[StageDefinition]:
        if 0 <= state.stage_index < self.total:
            return self.STAGES[state.stage_index]
        return None

    # ─── Per-frame ────────────────────────────────────────────

    def observe(self, state: LivenessComputationState, detection) -> LivenessMetrics:
        """Fold one accepted detection into the session state."""
        t = self.thresholds
        nod = geometry.nod_ratio(detection, self.indices)
        shake = geometry.shake_ratio(detection, self.indices)
        geometry.update_range(state.nod_range, nod)
        geometry.update_range(state.shake_range, shake)

        blink = geometry.blink_ratios(detection, self.indices)
        geometry.update_blink_state(blink, state.blink, t.blink_initial_avg,
                                    t.blink_limits, t.blink_weights)
        mouth = geometry.mouth_ratio(detection, self.indices)
        geometry.update_mouth_state(mouth, state.mouth, t.mouth_threshold)

        pose = getattr(detection, "pose", None)
        pose_deg = geometry.pose_degrees(pose)
        metrics = LivenessMetrics(
            nod_ratio=nod,
            nod_spread=geometry.spread(state.nod_range),
            shake_ratio=shake,
            shake_spread=geometry.spread(state.shake_range),
            blink=blink,
            mouth_ratio=mouth,
            pose=pose,
            pose_degrees=pose_deg,
            frontal_score=geometry.frontal_score(pose_deg, t.pose_sigma, t.pose_weights),
        )
        state.last_metrics = metrics
        return metrics

    def evaluate(self, state: LivenessComputationState, metrics: LivenessMetrics) -> StageStatus:
        """Advance at most one stage for this frame."""
        stage = self.current_stage(state)
        if stage is None:
            state.completed = True
            state.active = False
            return self.status(state)
        if not check_stage(stage.key, metrics, state, self.thresholds):
            return self.status(state)

        completed_index = state.stage_index
        state.stage_index += 1
        state.progress = state.stage_index / self.total
        reset_stage(stage.key, state)
        if state.stage_index >= self.total:
            state.completed = True
            state.active = False
        return self.status(state, just_completed_index=completed_index)

    def status(self, state: LivenessComputationState,
               just_completed_index: Optional[int] = None) -> StageStatus:
        just_completed = None
        if just_completed_index is not None:
            just_completed = self.STAGES[just_completed_index]
        return StageStatus(
            total=self.total,
            stage_index=min(state.stage_index, self.total - 1),
            current_stage=self.current_stage(state),
            completed=state.completed,
            progress=state.progress,
            just_completed_stage=just_completed,
            just_completed_index=just_completed_index,
        )
