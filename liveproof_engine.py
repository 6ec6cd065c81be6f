"""
Liveproof — LivenessEngine (Orchestrator)
=========================================
Owns the detector, the landmark estimator, the challenge state machine
and the best-frame tracker, and drives them once per frame.

Per frame:
  frame -> SCRFD detect -> (0 faces | >1 faces | 1 face)
        -> PFPLD landmarks -> geometric metrics -> stage evaluation
        -> best-frame quality update (independent of stage progress)

Concurrency:
  - process_frame is single-flight. A frame arriving while another is
    in flight is dropped (not queued), counted, and answered with
    dropped=True and the current stage status.
  - warmup() is idempotent and memoized.
  - stop_session() may be called at any time. An in-flight frame keeps
    the state object it started with and will not advance it once that
    session is stopped or replaced.
"""

from __future__ import annotations

import functools
import threading
import time
from collections import deque
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import psutil

from liveproof_errors import ModelLoadFailure
from liveproof_face_pipeline import LandmarkEstimator
from liveproof_liveness import LandmarkIndices, LivenessStateMachine, LivenessThresholds
from liveproof_logger import AuditLogger
from liveproof_model_source import build_model_source_candidates, load_model_bytes
from liveproof_quality import BestFrameTracker, FrameQualityScorer
from liveproof_runtime import create_session, policy_from_config
from liveproof_types import (
    BestFrame,
    Detection,
    DetectionWithLandmarks,
    FrameResult,
    LandmarkEstimate,
    LivenessComputationState,
    StageDefinition,
    StageStatus,
)
from liveproof_utils import AnchorGrid, SCRFDDetector
from liveproof_utils_core import CONFIG, ensure_bgr, merge_config, setup_logger

_log = setup_logger('LivenessEngine')


class LivenessEngine:
    """
    Face liveness engine: nod -> shake -> blink -> mouth challenge plus
    best-frame quality scoring.
    """

    def __init__(self, config: Optional[dict] = None,
                 detector: Optional[SCRFDDetector] = None,
                 landmark_estimator: Optional[LandmarkEstimator] = None,
                 quality_scorer: Optional[FrameQualityScorer] = None,
                 audit_logger: Optional[AuditLogger] = None,
                 session_factory: Optional[Callable[[bytes], object]] = None,
                 model_loader: Optional[Callable[..., bytes]] = None):
        self.config = merge_config(CONFIG, config)
        cfg = self.config

        self.audit = audit_logger or AuditLogger(
            log_dir=cfg['audit']['log_dir'], enabled=bool(cfg['audit']['enabled']))
        self.log_frames = bool(cfg['audit']['log_frames'])

        self.detection_threshold = float(cfg['detection']['threshold'])
        self.detector = detector or SCRFDDetector(
            nms_threshold=cfg['detection']['nms_threshold'],
            cache_size=cfg['detection']['anchor_cache_size'],
            input_size=tuple(cfg['detection']['input_size']),
        )
        self.landmark_estimator = landmark_estimator or LandmarkEstimator(
            crop_scale=cfg['landmarks']['crop_scale'],
            crop_top_ratio=cfg['landmarks']['crop_top_ratio'],
            input_size=tuple(cfg['landmarks']['input_size']),
        )
        self.state_machine = LivenessStateMachine(
            LivenessThresholds.from_config(cfg['liveness']),
            LandmarkIndices.from_config(cfg['landmarks']),
        )
        self.best_frame_tracker = BestFrameTracker(quality_scorer or FrameQualityScorer(cfg['quality']))

        if session_factory is None:
            policy = policy_from_config(cfg['runtime'])
            providers = list(cfg['runtime']['execution_providers'])
            patterns = list(cfg['runtime']['capability_error_patterns'])
            session_factory = functools.partial(
                create_session, providers=providers, policy=policy, capability_patterns=patterns)
        self._session_factory = session_factory
        self._model_loader = model_loader or load_model_bytes

        self._state: LivenessComputationState = self.state_machine.new_state()
        self._models_loaded = False
        self._warmup_lock = threading.Lock()
        self._inflight = threading.Lock()

        self._frame_times = deque(maxlen=120)
        self._frames_processed = 0
        self._frames_dropped = 0
        self._last_timing: dict = {}
        self._memory_baseline = psutil.Process().memory_info().rss

        self.audit.log({"detection_threshold": self.detection_threshold,
                        "mirror": self.best_frame_tracker.scorer.mirror},
                       level="SYSTEM", event="engine_init")

    # ═══════════════════════════════════════════════════════════
    # Model loading
    # ═══════════════════════════════════════════════════════════

    def _model_candidates(self, kind: str) -> List:
        model_cfg = self.config['models'][kind]
        source = model_cfg.get('source')
        if isinstance(source, (bytes, bytearray, memoryview)):
            return [source]
        if isinstance(source, (list, tuple)):
            return list(source)
        return build_model_source_candidates(source, model_cfg['relative_path'])

    def _load_session(self, kind: str):
        models_cfg = self.config['models']
        candidates = self._model_candidates(kind)
        data = self._model_loader(
            candidates,
            timeout=float(models_cfg['fetch_timeout']),
            base_dir=models_cfg.get('base_dir'),
            expected_sha256=models_cfg[kind].get('sha256'),
        )
        session = self._session_factory(data)
        describe = getattr(session, "describe", None)
        self.audit.log({"model": kind, "session": describe() if callable(describe) else None},
                       level="SYSTEM", event="model_loaded")
        return session

    def warmup(self) -> None:
        """Load both models once. Later calls are no-ops.

        Raises:
            ModelLoadFailure: fetching or binding a model failed.
        """
        if self._models_loaded:
            return
        with self._warmup_lock:
            if self._models_loaded:
                return
            t0 = time.monotonic()
            try:
                if not self.detector.is_ready():
                    self.detector.load(self._load_session("detector"))
                if not self.landmark_estimator.is_ready():
                    self.landmark_estimator.load(self._load_session("landmarks"))
            except ModelLoadFailure as e:
                self.audit.error(f"Model load failed: {e}", e, event="model_load_failed")
                raise
            self._models_loaded = True
            _log.info("Models ready in %.0f ms", (time.monotonic() - t0) * 1000)

    def is_ready(self) -> bool:
        return self._models_loaded and self.detector.is_ready() and self.landmark_estimator.is_ready()

    # ═══════════════════════════════════════════════════════════
    # One-shot helpers
    # ═══════════════════════════════════════════════════════════

    def detect_image(self, image: np.ndarray) -> Tuple[List[Detection], Optional[Detection]]:
        """Detect faces on a still image. Returns (detections, primary)."""
        self.warmup()
        detections = self.detector.detect(image, self.detection_threshold)
        return detections, (detections[0] if detections else None)

    def estimate_landmarks(self, image: np.ndarray, bbox: Sequence[float]) -> Optional[LandmarkEstimate]:
        self.warmup()
        return self.landmark_estimator.estimate(image, bbox)

    # ═══════════════════════════════════════════════════════════
    # Session lifecycle
    # ═══════════════════════════════════════════════════════════

    @property
    def state(self) -> LivenessComputationState:
        return self._state

    def start_session(self, warmup: bool = False) -> StageStatus:
        """Begin a new challenge session, discarding any previous state.

        With ``warmup=True`` models are loaded first; on failure the
        engine stays inactive and the ModelLoadFailure propagates.
        """
        if warmup:
            try:
                self.warmup()
            except ModelLoadFailure:
                self._state.active = False
                _log.error("Session not started: models unavailable")
                raise

        state = self.state_machine.new_state()
        self.state_machine.start(state)
        self._state = state
        self.best_frame_tracker.reset()
        self.audit.log({"stages": [s.key.value for s in self.state_machine.STAGES]},
                       event="session_started")
        return self.state_machine.status(state)

    def stop_session(self) -> None:
        state = self._state
        was_active = state.active
        state.active = False
        if was_active:
            self.audit.log({"stage_index": state.stage_index, "completed": state.completed},
                           event="session_stopped")

    def current_stage(self) -> Optional[StageDefinition]:
        return self.state_machine.current_stage(self._state)

    def stage_status(self) -> StageStatus:
        return self.state_machine.status(self._state)

    @property
    def best_frame(self) -> Optional[BestFrame]:
        return self.best_frame_tracker.snapshot()

    # ═══════════════════════════════════════════════════════════
    # Per-frame processing
    # ═══════════════════════════════════════════════════════════

    def process_frame(self, image: np.ndarray) -> FrameResult:
        """Run one frame through detection, landmarks and the stage machine.

        No-face, multi-face and missing-landmark frames are reported on
        the result, never raised.
        """
        if not self._inflight.acquire(blocking=False):
            self._frames_dropped += 1
            _log.debug("Frame dropped: previous frame still in flight (%d dropped)",
                       self._frames_dropped)
            return FrameResult(None, None, self.stage_status(), dropped=True)
        try:
            return self._process_frame(image)
        finally:
            self._inflight.release()

    def _process_frame(self, image: np.ndarray) -> FrameResult:
        state = self._state
        if not state.active:
            return FrameResult(None, None, self.state_machine.status(state))

        self.warmup()
        image = ensure_bgr(image)
        timing = {}
        t_start = time.monotonic()

        t0 = time.monotonic()
        detections = self.detector.detect(image, self.detection_threshold)
        timing["detect_ms"] = (time.monotonic() - t0) * 1000

        if not detections:
            state.last_metrics = None
            return self._finish(FrameResult(None, None, self.state_machine.status(state)),
                                timing, t_start)
        if len(detections) > 1:
            state.last_metrics = None
            return self._finish(FrameResult(None, None, self.state_machine.status(state),
                                            multi_face_detected=True, face_count=len(detections)),
                                timing, t_start)

        primary = detections[0]
        t0 = time.monotonic()
        estimate = self.landmark_estimator.estimate(image, primary.bbox)
        timing["landmark_ms"] = (time.monotonic() - t0) * 1000
        if estimate is None:
            state.last_metrics = None
            return self._finish(FrameResult(None, None, self.state_machine.status(state), face_count=1),
                                timing, t_start)

        detection = DetectionWithLandmarks.from_detection(primary, estimate)
        if state is not self._state or not state.active:
            # Session stopped or restarted while inference was running
            return self._finish(FrameResult(detection, None, self.stage_status(), face_count=1),
                                timing, t_start)

        metrics = self.state_machine.observe(state, detection)
        status = self.state_machine.evaluate(state, metrics)

        t0 = time.monotonic()
        self.best_frame_tracker.offer(image, detection, metrics.frontal_score)
        timing["quality_ms"] = (time.monotonic() - t0) * 1000

        if status.just_completed_stage is not None:
            self.audit.log({"stage": status.just_completed_stage.key.value,
                            "index": status.just_completed_index,
                            "progress": state.progress}, event="stage_completed")
            _log.info("Stage %d (%s) completed", status.just_completed_index,
                      status.just_completed_stage.key.value)
            if status.completed:
                best = self.best_frame_tracker.scores
                self.audit.log({"quality": best.to_dict()}, event="session_completed")

        return self._finish(FrameResult(detection, metrics, status, face_count=1), timing, t_start)

    def _finish(self, result: FrameResult, timing: dict, t_start: float) -> FrameResult:
        elapsed = time.monotonic() - t_start
        timing["total_ms"] = elapsed * 1000
        result.timing = timing
        self._frame_times.append(elapsed)
        self._frames_processed += 1
        self._last_timing = dict(timing)
        if self.log_frames:
            self.audit.log_frame({
                "face_count": result.face_count,
                "multi_face_detected": result.multi_face_detected,
                "stage": result.stage.to_dict(),
                "frontal_score": None if result.metrics is None else result.metrics.frontal_score,
                "timing": timing,
            })
        return result

    # ═══════════════════════════════════════════════════════════
    # Diagnostics
    # ═══════════════════════════════════════════════════════════

    def diagnostics(self) -> dict:
        total = sum(self._frame_times)
        fps = len(self._frame_times) / total if total > 0 else 0.0
        rss = psutil.Process().memory_info().rss
        grid = getattr(self.detector, "anchor_grid", None)
        return {
            "models_loaded": self._models_loaded,
            "session_active": self._state.active,
            "stage_index": self._state.stage_index,
            "frames_processed": self._frames_processed,
            "frames_dropped": self._frames_dropped,
            "fps": fps,
            "timing": dict(self._last_timing),
            "memory_mb": rss / (1024 * 1024),
            "memory_growth_mb": (rss - self._memory_baseline) / (1024 * 1024),
            "anchor_cache_entries": len(grid) if isinstance(grid, AnchorGrid) else 0,
        }

    def close(self) -> None:
        self.stop_session()
        self.audit.close()
