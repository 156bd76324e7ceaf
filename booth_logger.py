"""
Suit-Booth — Structured Audit Logger
====================================
One JSONL line per session event: state transitions, captures, crop
placement, dress-up outcomes and teardown. Each line carries a
timestamp, a level (SYSTEM, AUDIT, WARN, ERROR), the event name and
its data.

Writes are serialized by a lock. NumPy scalars/arrays and enums are
converted to plain JSON; anything else falls back to ``str()`` so an
odd value in the data never makes logging raise.
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

_log = logging.getLogger("BoothAudit")


class BoothJSONEncoder(json.JSONEncoder):
    """NumPy and enum aware; unknown objects become their ``str()``."""
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
        return str(obj)


class BoothLogger:
    """Append-only audit log for one process."""

    def __init__(self, log_dir: str = "logs", filename: str = "booth_audit.jsonl"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, filename)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()

        self.log({
            "event": "system_startup",
            "python_version": sys.version,
            "platform": sys.platform,
        }, level="SYSTEM")

    @property
    def closed(self) -> bool:
        return self._file.closed

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append one entry. Silently dropped once the log is closed."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data,
        }
        line = json.dumps(entry, cls=BoothJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    # ── Booth events ──────────────────────────────────────────

    def log_frame(self, frame_data: Dict[str, Any]):
        self.log(frame_data, level="AUDIT", event="frame_processed")

    def log_transition(self, old, new, session_id: Optional[int] = None):
        """Capture state change, e.g. Armed → Countdown."""
        self.log({"from": old, "to": new, "session_id": session_id},
                 event="state_transition")

    def log_capture(self, has_face: bool, manual: bool = False):
        self.log({"has_face": has_face, "manual": manual}, event="capture")

    def log_crop(self, metadata, has_body: bool):
        """Head/body placement of a finished crop."""
        data = metadata.to_dict() if hasattr(metadata, "to_dict") else metadata
        self.log({"metadata": data, "has_body": has_body}, event="crop_complete")

    def log_dress_up(self, outcome: str, **details):
        """``outcome`` is one of requested / complete / failed."""
        level = "WARN" if outcome == "failed" else "AUDIT"
        self.log({"outcome": outcome, **details}, level=level, event=f"dress_up_{outcome}")

    # ── Problems ──────────────────────────────────────────────

    def warn(self, message: str, context: Optional[Dict] = None):
        _log.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="system_warning")

    def error(self, message: str, exception: Optional[Exception] = None):
        _log.error(message)
        detail = None
        if exception is not None:
            detail = f"{type(exception).__name__}: {exception}"
        self.log({"message": message, "exception": detail}, level="ERROR", event="system_error")

    def close(self):
        """Write the shutdown entry and close the file. Idempotent."""
        if self._file.closed:
            return
        self.log({"message": "audit log closed"}, level="SYSTEM", event="system_shutdown")
        with self._lock:
            self._file.close()


_logger: Optional[BoothLogger] = None


def get_logger(log_dir: str = "logs") -> BoothLogger:
    """Process-wide logger; reopened if a previous one was closed."""
    global _logger
    if _logger is None or _logger.closed:
        _logger = BoothLogger(log_dir)
    return _logger
