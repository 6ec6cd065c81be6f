"""
Liveproof — Inference Runtime Tests
===================================
Provider selection, device policies and the scalar CPU retry on
backend capability errors. ONNX Runtime sessions are mocked.
"""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from liveproof_errors import BackendCapabilityError, ModelLoadFailure
from liveproof_runtime import (
    CPU_PROVIDER,
    DefaultBackendPolicy,
    ModelSession,
    RestrictedDevicePolicy,
    ScalarOnlyPolicy,
    create_session,
    is_capability_error,
    policy_from_config,
)


def _make_ort_session(outputs=("scores", "boxes")):
    session = MagicMock()
    inp = MagicMock()
    inp.name = "input.1"
    inp.shape = [1, 3, 640, 640]
    session.get_inputs.return_value = [inp]
    outs = []
    for name in outputs:
        out = MagicMock()
        out.name = name
        out.shape = [1, "n", 1]
        outs.append(out)
    session.get_outputs.return_value = outs
    session.get_providers.return_value = [CPU_PROVIDER]
    session.run.return_value = [np.zeros((1, 4, 1)), np.ones((1, 4, 4))]
    return session


# ─── Policies ─────────────────────────────────────────────────

def test_default_policy_filters_and_appends_cpu():
    policy = DefaultBackendPolicy()
    chosen = policy.select_providers(["CUDAExecutionProvider", "DmlExecutionProvider"],
                                     ["DmlExecutionProvider", CPU_PROVIDER])
    assert chosen == ["DmlExecutionProvider", CPU_PROVIDER]


def test_restricted_device_policy_uses_cpu_only():
    assert RestrictedDevicePolicy().select_providers(
        ["CUDAExecutionProvider"], ["CUDAExecutionProvider", CPU_PROVIDER]) == [CPU_PROVIDER]


@pytest.mark.parametrize("device,policy_cls", [
    ("linux-5.10-aarch64 huawei p40", RestrictedDevicePolicy),
    ("android kirin 990", RestrictedDevicePolicy),
    ("linux-6.1-x86_64", DefaultBackendPolicy),
])
def test_policy_from_device_identifier(device, policy_cls):
    cfg = {'restricted_device_patterns': ['huawei', 'kirin'], 'scalar_only_patterns': []}
    assert type(policy_from_config(cfg, device)) is policy_cls


def test_scalar_only_pattern_wins():
    cfg = {'restricted_device_patterns': ['kirin'], 'scalar_only_patterns': ['kirin 9']}
    assert isinstance(policy_from_config(cfg, "kirin 990"), ScalarOnlyPolicy)


def test_capability_error_patterns():
    assert is_capability_error(RuntimeError("No available backend found"))
    assert is_capability_error(RuntimeError("SIMD instructions not supported"))
    assert not is_capability_error(RuntimeError("Protobuf parsing failed"))


# ─── Session wrapper ──────────────────────────────────────────

def test_model_session_run_returns_named_outputs():
    raw = _make_ort_session()
    session = ModelSession(raw)
    assert session.input_name == "input.1"
    assert session.input_shape == [1, 3, 640, 640]
    result = session.run(np.zeros((1, 3, 640, 640), dtype=np.float32))
    assert set(result) == {"scores", "boxes"}
    raw.run.assert_called_once()
    assert raw.run.call_args.args[0] == ["scores", "boxes"]
    assert session.describe()["input_shape"] == [1, 3, 640, 640]


def test_model_without_inputs_is_load_failure():
    raw = MagicMock()
    raw.get_inputs.return_value = []
    with pytest.raises(ModelLoadFailure):
        ModelSession(raw)


# ─── Session creation ─────────────────────────────────────────

@patch("liveproof_runtime.ort.get_available_providers", return_value=[CPU_PROVIDER])
@patch("liveproof_runtime.ort.InferenceSession")
def test_create_session_uses_selected_providers(mock_cls, _mock_available):
    mock_cls.return_value = _make_ort_session()
    session = create_session(b"model", providers=["CUDAExecutionProvider", CPU_PROVIDER])
    assert isinstance(session, ModelSession)
    assert not session.scalar_fallback
    assert mock_cls.call_args.kwargs["providers"] == [CPU_PROVIDER]


@patch("liveproof_runtime.ort.get_available_providers", return_value=[CPU_PROVIDER])
@patch("liveproof_runtime.ort.InferenceSession")
def test_capability_error_retries_on_scalar_backend(mock_cls, _mock_available):
    mock_cls.side_effect = [RuntimeError("no available backend"), _make_ort_session()]
    session = create_session(b"model")
    assert session.scalar_fallback
    assert mock_cls.call_count == 2
    scalar_opts = mock_cls.call_args.kwargs["sess_options"]
    assert scalar_opts.intra_op_num_threads == 1


@patch("liveproof_runtime.ort.get_available_providers", return_value=[CPU_PROVIDER])
@patch("liveproof_runtime.ort.InferenceSession")
def test_failed_scalar_retry_is_capability_error(mock_cls, _mock_available):
    mock_cls.side_effect = [RuntimeError("SIMD not supported"), RuntimeError("still broken")]
    with pytest.raises(BackendCapabilityError):
        create_session(b"model")


@patch("liveproof_runtime.ort.get_available_providers", return_value=[CPU_PROVIDER])
@patch("liveproof_runtime.ort.InferenceSession")
def test_corrupt_model_is_load_failure_without_retry(mock_cls, _mock_available):
    mock_cls.side_effect = RuntimeError("Protobuf parsing failed")
    with pytest.raises(ModelLoadFailure) as info:
        create_session(b"garbage")
    assert not isinstance(info.value, BackendCapabilityError)
    assert mock_cls.call_count == 1


@patch("liveproof_runtime.ort.InferenceSession")
def test_scalar_only_policy_skips_accelerated_attempt(mock_cls):
    mock_cls.return_value = _make_ort_session()
    session = create_session(b"model", policy=ScalarOnlyPolicy())
    assert session.scalar_fallback
    assert mock_cls.call_count == 1
    assert mock_cls.call_args.kwargs["providers"] == [CPU_PROVIDER]
