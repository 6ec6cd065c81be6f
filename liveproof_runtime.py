"""
Liveproof — Inference Runtime
=============================
Creates ONNX Runtime sessions from raw model bytes and wraps them behind a
small "tensor in, named tensors out" interface used by the detector and
the landmark estimator.

Backend negotiation:
  1. The configured provider preference (CUDA -> DirectML -> CPU) is
     filtered to what this ONNX Runtime build reports as available.
  2. A BackendPolicy may restrict or replace that list on known devices.
  3. If session creation fails with a capability error (missing SIMD/AVX,
     provider unavailable), creation is retried once on the scalar CPU
     configuration: one thread, sequential execution, no graph
     optimizations. Any other failure is a ModelLoadFailure.
"""

from __future__ import annotations

import platform
import re
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import onnxruntime as ort

from liveproof_errors import BackendCapabilityError, ModelLoadFailure
from liveproof_utils_core import CONFIG, setup_logger

_log = setup_logger('LiveproofRuntime')

CPU_PROVIDER = "CPUExecutionProvider"

DEFAULT_PROVIDERS: List[str] = list(CONFIG['runtime']['execution_providers'])
CAPABILITY_ERROR_PATTERNS: List[str] = list(CONFIG['runtime']['capability_error_patterns'])


# ===================================================================
# Session wrapper
# ===================================================================

class ModelSession:
    """Single-input ONNX session. run() returns {output_name: ndarray}."""

    def __init__(self, session, scalar_fallback: bool = False):
        self._session = session
        inputs = session.get_inputs()
        if not inputs:
            raise ModelLoadFailure("Model declares no inputs")
        self.input_name = inputs[0].name
        self.input_shape = list(inputs[0].shape or [])
        outputs = session.get_outputs()
        self.output_names = [o.name for o in outputs]
        self.output_shapes = [list(o.shape or []) for o in outputs]
        self.providers = list(session.get_providers())
        self.scalar_fallback = scalar_fallback

    def run(self, tensor: np.ndarray) -> Dict[str, np.ndarray]:
        results = self._session.run(self.output_names, {self.input_name: tensor})
        return dict(zip(self.output_names, results))

    def describe(self) -> dict:
        return {
            "input": self.input_name,
            "input_shape": [d if isinstance(d, int) else str(d) for d in self.input_shape],
            "outputs": self.output_names,
            "providers": self.providers,
            "scalar_fallback": self.scalar_fallback,
        }


# ===================================================================
# Backend policies
# ===================================================================

class BackendPolicy:
    """Decides which providers a device may use."""
    name = "default"
    force_scalar = False

    def select_providers(self, preferred: Sequence[str], available: Iterable[str]) -> List[str]:
        available = set(available)
        chosen = [p for p in preferred if p in available]
        if CPU_PROVIDER not in chosen:
            chosen.append(CPU_PROVIDER)
        return chosen


class DefaultBackendPolicy(BackendPolicy):
    pass


class RestrictedDevicePolicy(BackendPolicy):
    """Accelerated providers are unreliable on this device: CPU only."""
    name = "restricted_device"

    def select_providers(self, preferred, available) -> List[str]:
        return [CPU_PROVIDER]


class ScalarOnlyPolicy(RestrictedDevicePolicy):
    """Skip straight to the scalar CPU configuration."""
    name = "scalar_only"
    force_scalar = True


def device_identifier() -> str:
    return " ".join([platform.platform(), platform.machine(), platform.processor()]).lower()


def _matches_any(patterns: Iterable[str], text: str) -> bool:
    return any(re.search(p, text, re.IGNORECASE) for p in patterns)


def policy_from_config(runtime_cfg: Optional[dict] = None,
                       device_id: Optional[str] = None) -> BackendPolicy:
    cfg = runtime_cfg if runtime_cfg is not None else CONFIG['runtime']
    ident = device_id if device_id is not None else device_identifier()
    if _matches_any(cfg.get('scalar_only_patterns') or [], ident):
        _log.info("Device '%s' matched scalar-only policy", ident)
        return ScalarOnlyPolicy()
    if _matches_any(cfg.get('restricted_device_patterns') or [], ident):
        _log.info("Device '%s' matched restricted-device policy", ident)
        return RestrictedDevicePolicy()
    return DefaultBackendPolicy()


# ===================================================================
# Session creation
# ===================================================================

def is_capability_error(exc: BaseException, patterns: Optional[Sequence[str]] = None) -> bool:
    """True when ``exc`` reports a missing backend capability, not a broken model."""
    return _matches_any(patterns if patterns is not None else CAPABILITY_ERROR_PATTERNS, str(exc))


def default_session_options() -> ort.SessionOptions:
    sess_options = ort.SessionOptions()
    sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return sess_options


def scalar_session_options() -> ort.SessionOptions:
    sess_options = ort.SessionOptions()
    sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_DISABLE_ALL
    sess_options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
    sess_options.intra_op_num_threads = 1
    sess_options.inter_op_num_threads = 1
    return sess_options


def _create_scalar_session(model_bytes: bytes) -> ModelSession:
    session = ort.InferenceSession(
        model_bytes, sess_options=scalar_session_options(), providers=[CPU_PROVIDER])
    return ModelSession(session, scalar_fallback=True)


def create_session(model_bytes: bytes,
                   providers: Optional[Sequence[str]] = None,
                   policy: Optional[BackendPolicy] = None,
                   capability_patterns: Optional[Sequence[str]] = None) -> ModelSession:
    """Create a ModelSession, retrying on the scalar backend if needed.

    Raises:
        ModelLoadFailure: the model could not be parsed or bound.
        BackendCapabilityError: the scalar retry failed as well.
    """
    policy = policy or DefaultBackendPolicy()

    if policy.force_scalar:
        try:
            return _create_scalar_session(model_bytes)
        except Exception as e:
            raise ModelLoadFailure(f"Scalar session creation failed: {e}") from e

    chosen = policy.select_providers(providers or DEFAULT_PROVIDERS, ort.get_available_providers())
    try:
        session = ort.InferenceSession(
            model_bytes, sess_options=default_session_options(), providers=chosen)
        return ModelSession(session)
    except Exception as e:
        if not is_capability_error(e, capability_patterns):
            raise ModelLoadFailure(f"Inference session creation failed: {e}") from e
        _log.warning("Backend capability error (%s). Retrying on scalar CPU backend.", e)

    try:
        return _create_scalar_session(model_bytes)
    except Exception as e:
        raise BackendCapabilityError(f"Scalar backend fallback failed: {e}") from e
