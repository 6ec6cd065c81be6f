"""
Liveproof — Structured Audit Logger
===================================
Records session lifecycle, stage completions, model loading and
(optionally) per-frame outcomes as JSONL for post-session review.

Key Features:
  - JSONL (newline delimited JSON), one event per line
  - Thread-safe appends
  - Levels: SYSTEM, AUDIT, WARN, ERROR
  - NumPy arrays and scalars serialize transparently
  - Disabled loggers write nothing and open no file
"""

import enum
import json
import logging
import os
import sys
import threading
import time
from typing import Any, Dict, Optional

import numpy as np

_log = logging.getLogger("LiveproofAudit")


class AuditJSONEncoder(json.JSONEncoder):
    """Handles NumPy types and enums for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, enum.Enum):
            return obj.value
        return super().default(obj)


class AuditLogger:
    """
    JSONL audit trail for liveness sessions.

    Every entry has the shape
    {"timestamp": float, "level": str, "event": str, "data": {...}}.
    """

    def __init__(self, log_dir: str = "logs", enabled: bool = True,
                 filename: str = "liveproof_audit.jsonl"):
        self.enabled = enabled
        self.log_dir = log_dir
        self.log_path = os.path.join(log_dir, filename)
        self._lock = threading.Lock()
        self._file = None
        if not enabled:
            return

        os.makedirs(self.log_dir, exist_ok=True)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self.log({
            "python_version": sys.version,
            "platform": sys.platform,
        }, level="SYSTEM", event="system_startup")

    @property
    def closed(self) -> bool:
        return self._file is None or self._file.closed

    def _write(self, line: str) -> None:
        if self._file is not None and not self._file.closed:
            self._file.write(line)
            self._file.flush()

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append one entry. No-op when disabled or closed."""
        if not self.enabled:
            return
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data,
        }
        line = json.dumps(entry, cls=AuditJSONEncoder) + "\n"
        with self._lock:
            self._write(line)

    def log_frame(self, frame_data: Dict[str, Any]):
        self.log(frame_data, level="AUDIT", event="frame_processed")

    def warn(self, message: str, context: Optional[Dict] = None):
        _log.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="system_warning")

    def error(self, message: str, exception: Optional[BaseException] = None, event: str = "system_error"):
        _log.error(message)
        self.log({
            "message": message,
            "exception": str(exception) if exception else None,
            "exception_type": type(exception).__name__ if exception else None,
        }, level="ERROR", event=event)

    def close(self):
        """Write the shutdown entry and close the file."""
        if not self.enabled:
            return
        entry = {
            "timestamp": time.time(),
            "level": "SYSTEM",
            "event": "system_shutdown",
            "data": {"message": "Audit logger shutting down"},
        }
        with self._lock:
            if self._file is not None and not self._file.closed:
                self._write(json.dumps(entry) + "\n")
                self._file.close()


def read_audit_log(path: str) -> list:
    """Parse a JSONL audit file into a list of entries."""
    entries = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                entries.append(json.loads(line))
    return entries
