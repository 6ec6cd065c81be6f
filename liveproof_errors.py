"""
Liveproof — Error Taxonomy
==========================
Exceptions raised across the liveness engine.

Per-frame outcomes (no face, several faces, landmarks unavailable) are
never raised; they are reported on FrameResult. Only model loading,
configuration and programmer errors propagate.

  LivenessError
  ├── ModelLoadFailure
  │   ├── ModelFetchError
  │   │   └── HtmlPayloadError
  │   ├── ModelIntegrityError
  │   └── BackendCapabilityError
  ├── ModelNotLoaded
  └── InvalidInput (also a ValueError)
"""

from __future__ import annotations


class LivenessError(Exception):
    """Base class for every error raised by liveproof."""


class ModelLoadFailure(LivenessError):
    """A model could not be fetched, parsed or bound to a backend."""


class ModelFetchError(ModelLoadFailure):
    """Raw model bytes could not be retrieved from a source."""

    def __init__(self, message: str, source: str | None = None):
        super().__init__(message)
        self.source = source


class HtmlPayloadError(ModelFetchError):
    """The source answered with an HTML document instead of model data."""


class ModelIntegrityError(ModelLoadFailure):
    """Fetched bytes do not match the configured SHA-256 digest."""


class BackendCapabilityError(ModelLoadFailure):
    """No execution backend, including the scalar fallback, can run the model."""


class ModelNotLoaded(LivenessError):
    """Inference was requested before the model session was loaded."""


class InvalidInput(LivenessError, ValueError):
    """The frame is empty, has a zero dimension, or is not an image array."""
