from liveproof_liveness.challenge_response import (
    LivenessStateMachine,
    LivenessThresholds,
    check_stage,
    reset_stage,
)
from liveproof_liveness.geometry import LandmarkIndices, WFLW_98

__all__ = [
    "LivenessStateMachine",
    "LivenessThresholds",
    "check_stage",
    "reset_stage",
    "LandmarkIndices",
    "WFLW_98",
]
