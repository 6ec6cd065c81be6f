"""
Liveproof — Model Acquisition
=============================
Turns a model source (raw bytes, a file path, or an http(s) URL) into raw
model bytes.

A model is configured as a primary source plus a relative path. The
relative path is also tried as "./path" and "/path", so the same config
works from a checkout, an installed package, or behind a static file
server. HTML payloads (error pages, SPA fallbacks) are rejected before
they ever reach ONNX Runtime.
"""

from __future__ import annotations

import hashlib
import os
import re
from typing import List, Optional, Sequence, Union

import requests

from liveproof_errors import (
    HtmlPayloadError,
    ModelFetchError,
    ModelIntegrityError,
    ModelLoadFailure,
)
from liveproof_utils_core import setup_logger

_log = setup_logger('ModelSource')

ModelSource = Union[str, bytes, bytearray, memoryview]

_HTML_PREFIXES = ("<!doctype", "<html", "<!do", "<!ht")


def normalize_relative_path(path: str) -> str:
    """Strip leading ./ ../ and / segments: '../../models/a.onnx' -> 'models/a.onnx'."""
    path = re.sub(r'^(?:\.\.?/)+', '', path)
    return re.sub(r'^/+', '', path)


def build_model_source_candidates(primary: Optional[str], relative_path: str) -> List[str]:
    """Ordered, de-duplicated sources: primary, relative, ./normalized, /normalized."""
    normalized = normalize_relative_path(relative_path)
    candidates = [primary, relative_path, f"./{normalized}", f"/{normalized}"]
    seen = set()
    ordered = []
    for item in candidates:
        if isinstance(item, str) and item and item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


def is_html_payload(content: bytes, content_type: str = "") -> bool:
    if "text/html" in (content_type or "").lower():
        return True
    header = bytes(content[:32]).decode("utf-8", errors="ignore").lower()
    return header.startswith(_HTML_PREFIXES)


def is_url(source: str) -> bool:
    return source.lower().startswith(("http://", "https://"))


def fetch_model_from_url(url: str, timeout: float = 30.0) -> bytes:
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise ModelFetchError(f"Request failed for {url}: {e}", source=url) from e
    if not response.ok:
        raise ModelFetchError(f"HTTP {response.status_code} for {url}", source=url)
    content = response.content
    if is_html_payload(content, response.headers.get("content-type", "")):
        raise HtmlPayloadError(f"Model URL returned HTML instead of ONNX: {url}", source=url)
    return content


def read_model_file(path: str, base_dir: Optional[str] = None) -> bytes:
    target = path
    if not os.path.isabs(target) and base_dir:
        target = os.path.join(base_dir, target)
    if not os.path.isfile(target):
        raise ModelFetchError(f"Model file not found: {target}", source=path)
    with open(target, "rb") as f:
        content = f.read()
    if is_html_payload(content):
        raise HtmlPayloadError(f"Model file contains HTML instead of ONNX: {target}", source=path)
    return content


def fetch_model_bytes(source: ModelSource, timeout: float = 30.0,
                      base_dir: Optional[str] = None) -> bytes:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    if isinstance(source, str):
        if is_url(source):
            return fetch_model_from_url(source, timeout)
        return read_model_file(source, base_dir)
    raise ModelFetchError(f"Unsupported model source type: {type(source).__name__}")


def verify_sha256(content: bytes, expected: Optional[str], source: str = "") -> None:
    if not expected:
        return
    digest = hashlib.sha256(content).hexdigest()
    if digest.lower() != expected.lower():
        raise ModelIntegrityError(
            f"SHA-256 mismatch for {source or 'model'}: expected {expected}, got {digest}")


def load_model_bytes(candidates: Union[ModelSource, Sequence[ModelSource]],
                     timeout: float = 30.0,
                     base_dir: Optional[str] = None,
                     expected_sha256: Optional[str] = None) -> bytes:
    """Return the bytes of the first candidate that fetches and verifies.

    Raises:
        ModelLoadFailure: every candidate failed. The message joins the
            individual failures with '; ' and ``errors`` holds them.
    """
    if isinstance(candidates, (str, bytes, bytearray, memoryview)):
        candidates = [candidates]

    errors: List[ModelLoadFailure] = []
    for entry in candidates:
        label = entry if isinstance(entry, str) else f"<{len(entry)} bytes>"
        try:
            content = fetch_model_bytes(entry, timeout=timeout, base_dir=base_dir)
            verify_sha256(content, expected_sha256, label)
            _log.info("Loaded model from %s (%.1f KB)", label, len(content) / 1024)
            return content
        except ModelLoadFailure as e:
            _log.debug("Model source %s failed: %s", label, e)
            errors.append(e)

    message = "; ".join(str(e) for e in errors) if errors else "Unsupported model source"
    failure = ModelLoadFailure(message)
    failure.errors = errors
    raise failure
