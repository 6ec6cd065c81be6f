from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, asdict
from typing import Optional, Tuple

import numpy as np

from liveproof_utils_core import round_score

BBox = Tuple[float, float, float, float]


@dataclass(frozen=True)
class Detection:
    """One face box from the detector, in source-image pixels."""
    bbox: BBox                               # x1, y1, x2, y2
    score: float
    keypoints: Optional[np.ndarray] = None   # (K, 2) float32, detector keypoints

    @property
    def width(self) -> float:
        return self.bbox[2] - self.bbox[0]

    @property
    def height(self) -> float:
        return self.bbox[3] - self.bbox[1]

    def to_dict(self) -> dict:
        return {
            "bbox": [float(v) for v in self.bbox],
            "score": float(self.score),
            "keypoints": None if self.keypoints is None else self.keypoints.tolist(),
        }


@dataclass(frozen=True)
class Pose:
    """Head pose. Radians unless produced by to_degrees()."""
    yaw: float
    pitch: float
    roll: float

    def to_degrees(self) -> "Pose":
        factor = 180.0 / math.pi
        return Pose(self.yaw * factor, self.pitch * factor, self.roll * factor)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class LandmarkEstimate:
    landmarks: np.ndarray                    # (N, 2) float32, source pixels
    pose: Optional[Pose] = None


@dataclass(frozen=True)
class DetectionWithLandmarks:
    """A Detection enriched with 98 landmarks and an optional pose."""
    bbox: BBox
    score: float
    landmarks: np.ndarray
    pose: Optional[Pose] = None
    keypoints: Optional[np.ndarray] = None

    @classmethod
    def from_detection(cls, detection: Detection, estimate: LandmarkEstimate) -> "DetectionWithLandmarks":
        return cls(
            bbox=detection.bbox,
            score=detection.score,
            landmarks=estimate.landmarks,
            pose=estimate.pose,
            keypoints=detection.keypoints,
        )

    @property
    def width(self) -> float:
        return self.bbox[2] - self.bbox[0]

    @property
    def height(self) -> float:
        return self.bbox[3] - self.bbox[1]

    def to_dict(self) -> dict:
        return {
            "bbox": [float(v) for v in self.bbox],
            "score": float(self.score),
            "landmarks": self.landmarks.tolist(),
            "pose": None if self.pose is None else self.pose.to_dict(),
            "keypoints": None if self.keypoints is None else self.keypoints.tolist(),
        }


@dataclass
class BlinkMetrics:
    left_height: float
    right_height: float
    left_ratio: float      # width / height, inf when the eye height is 0
    right_ratio: float
    ratio: float           # min(left_ratio, right_ratio)


@dataclass
class LivenessMetrics:
    """Per-frame geometric signals. Any field may be None."""
    nod_ratio: Optional[float] = None
    nod_spread: Optional[float] = None
    shake_ratio: Optional[float] = None
    shake_spread: Optional[float] = None
    blink: Optional[BlinkMetrics] = None
    mouth_ratio: Optional[float] = None
    pose: Optional[Pose] = None
    pose_degrees: Optional[Pose] = None
    frontal_score: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


# ═══════════════════════════════════════════════════════════════
# Session State
# ═══════════════════════════════════════════════════════════════

@dataclass
class RangeState:
    min: Optional[float] = None
    max: Optional[float] = None

    def reset(self) -> None:
        self.min = None
        self.max = None


@dataclass
class BlinkState:
    closed_detected: bool = False
    open_detected: bool = False
    eye_avg: Optional[float] = None


@dataclass
class MouthState:
    open_detected: bool = False
    closed_detected: bool = False


@dataclass
class LivenessComputationState:
    """Session-scoped state. Only the engine mutates it."""
    active: bool = False
    stage_index: int = 0
    progress: float = 0.0
    completed: bool = False
    last_metrics: Optional[LivenessMetrics] = None
    nod_range: RangeState = field(default_factory=RangeState)
    shake_range: RangeState = field(default_factory=RangeState)
    blink: BlinkState = field(default_factory=BlinkState)
    mouth: MouthState = field(default_factory=MouthState)

    @classmethod
    def create(cls, blink_initial_avg: float = 10.0) -> "LivenessComputationState":
        return cls(blink=BlinkState(eye_avg=blink_initial_avg))


# ═══════════════════════════════════════════════════════════════
# Stages
# ═══════════════════════════════════════════════════════════════

class StageKey(enum.Enum):
    NOD = "nod"
    SHAKE = "shake"
    BLINK = "blink"
    MOUTH = "mouth"


@dataclass(frozen=True)
class StageDefinition:
    key: StageKey
    label: str
    prompt: str


LIVENESS_STAGES: Tuple[StageDefinition, ...] = (
    StageDefinition(StageKey.NOD, "Nod", "Please nod your head"),
    StageDefinition(StageKey.SHAKE, "Shake", "Please shake your head left and right"),
    StageDefinition(StageKey.BLINK, "Blink", "Please blink"),
    StageDefinition(StageKey.MOUTH, "Open mouth", "Please open your mouth wide"),
)


@dataclass(frozen=True)
class StageStatus:
    total: int
    stage_index: int                  # clamped to total - 1 for display
    current_stage: Optional[StageDefinition]
    completed: bool
    progress: float = 0.0
    just_completed_stage: Optional[StageDefinition] = None
    just_completed_index: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "stage_index": self.stage_index,
            "current_stage": None if self.current_stage is None else self.current_stage.key.value,
            "completed": self.completed,
            "progress": self.progress,
            "just_completed_stage": (
                None if self.just_completed_stage is None else self.just_completed_stage.key.value
            ),
            "just_completed_index": self.just_completed_index,
        }


# ═══════════════════════════════════════════════════════════════
# Quality
# ═══════════════════════════════════════════════════════════════

@dataclass
class BrightnessResult:
    value: float          # 0..100 score
    status: str           # normal | underexposed | overexposed | too bright | invalid
    brightness: float     # trimmed mean luma as a percentage of 255


@dataclass
class QualityScores:
    brightness_score: Optional[float] = None
    brightness_status: Optional[str] = None
    clarity_score: Optional[float] = None
    uniform_lighting_score: Optional[float] = None
    background_uniformity_score: Optional[float] = None
    pixel_resolution_score: Optional[float] = None
    frontal_score: Optional[float] = None

    def components(self) -> Tuple[Optional[float], ...]:
        return (
            self.brightness_score,
            self.clarity_score,
            self.uniform_lighting_score,
            self.background_uniformity_score,
            self.pixel_resolution_score,
        )

    @property
    def quality_score(self) -> Optional[float]:
        """Mean of the five components, None until every one is present."""
        values = self.components()
        if any(v is None for v in values):
            return None
        return round_score(sum(values) / len(values))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["quality_score"] = self.quality_score
        return data


@dataclass
class BestFrame:
    scores: QualityScores
    frame: Optional[np.ndarray] = None         # full frame, mirrored if configured
    face_crop: Optional[np.ndarray] = None     # square crop around the face
    detection: Optional[DetectionWithLandmarks] = None


# ═══════════════════════════════════════════════════════════════
# Frame Result
# ═══════════════════════════════════════════════════════════════

@dataclass
class FrameResult:
    """Outcome of one process_frame call."""
    detection: Optional[DetectionWithLandmarks]
    metrics: Optional[LivenessMetrics]
    stage: StageStatus
    multi_face_detected: bool = False
    dropped: bool = False
    face_count: int = 0
    timing: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "detection": None if self.detection is None else self.detection.to_dict(),
            "metrics": None if self.metrics is None else self.metrics.to_dict(),
            "stage": self.stage.to_dict(),
            "multi_face_detected": self.multi_face_detected,
            "dropped": self.dropped,
            "face_count": self.face_count,
            "timing": dict(self.timing),
        }
