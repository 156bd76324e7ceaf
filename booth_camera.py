"""
Suit-Booth — Camera Input Module
================================
Owns ALL camera interaction. No other file should touch
cv2.VideoCapture directly.

Features:
  - Facing-mode preference: "environment" first, one retry with "user"
  - Requested 960x1280 (3:4 portrait) capture size
  - Frame validation (shape, dtype, channel count, brightness)
  - Health monitoring (FPS, drop rate, connection status)
  - Idempotent release
"""

from __future__ import annotations

import time
import logging
from collections import deque
from typing import Optional

import cv2
import numpy as np

from booth_types import SetupFailure


# ─── Module Logger ─────────────────────────────────────────────
_log = logging.getLogger("BoothCamera")

FACING_MODES = ("environment", "user")


def resolve_backend(name) -> int:
    """Map a config backend name ('any', 'v4l2', ...) to an OpenCV constant."""
    if isinstance(name, int):
        return name
    names = {
        "any": cv2.CAP_ANY,
        "dshow": cv2.CAP_DSHOW,
        "msmf": cv2.CAP_MSMF,
    }
    # CAP_V4L2 only exists on Linux builds
    if hasattr(cv2, "CAP_V4L2"):
        names["v4l2"] = cv2.CAP_V4L2
    return names.get(str(name).lower(), cv2.CAP_ANY)


class BoothCamera:
    """Validated camera capture for the booth.

    Wraps cv2.VideoCapture with:
      - 1-frame buffer to keep the preview live
      - Per-frame validation (shape, dtype, brightness, channels)
      - Health status reporting (FPS, drops, age)
    """

    # ── Validation constants ──────────────────────────────────
    MIN_HEIGHT: int = 120
    MIN_WIDTH: int = 160
    EXPECTED_CHANNELS: int = 3
    EXPECTED_DTYPE = np.uint8
    MIN_MEAN_BRIGHTNESS: float = 5.0    # lens cap / hw failure
    MAX_MEAN_BRIGHTNESS: float = 250.0  # sensor saturation
    FPS_WINDOW: int = 30

    def __init__(
        self,
        camera_id: int = 0,
        backend: int = cv2.CAP_ANY,
        width: int = 960,
        height: int = 1280,
        facing_mode: str = "environment",
    ) -> None:
        """Open one camera device.

        Args:
            camera_id: System camera index.
            backend: OpenCV capture backend.
            width: Ideal capture width (portrait 3:4 by default).
            height: Ideal capture height.
            facing_mode: Label of the facing preference this device serves.
        """
        self._camera_id: int = camera_id
        self._backend: int = backend
        self.facing_mode: str = facing_mode
        self._released: bool = False

        self._cap: cv2.VideoCapture = cv2.VideoCapture(camera_id, backend)
        self._cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)

        self._resolution: tuple[int, int] = (
            int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )

        # Health counters
        self._frames_total: int = 0
        self._frames_dropped: int = 0
        self._last_valid_timestamp: float = 0.0
        self._frame_times: deque[float] = deque(maxlen=self.FPS_WINDOW)

        _log.info(
            "BoothCamera opened — id=%d facing=%s resolution=%s",
            camera_id, facing_mode, self._resolution,
        )

    # ── Public API ────────────────────────────────────────────

    def read_validated_frame(self) -> tuple[bool, Optional[np.ndarray], float]:
        """Read one frame and run the validation checklist.

        Returns:
            (success, frame_or_None, monotonic_timestamp)
            On failure: (False, None, 0.0) and increments drop counter.
        """
        if self._released:
            return False, None, 0.0

        self._frames_total += 1
        timestamp = time.monotonic()

        ret, frame = self._cap.read()

        if not self._validate_frame(ret, frame):
            self._frames_dropped += 1
            return False, None, 0.0

        self._last_valid_timestamp = timestamp
        self._frame_times.append(timestamp)
        return True, frame, timestamp

    def get_health_status(self) -> dict:
        """Return a snapshot of camera health metrics."""
        now = time.monotonic()
        last_age_ms = (
            (now - self._last_valid_timestamp) * 1000.0
            if self._last_valid_timestamp > 0
            else float("inf")
        )

        return {
            "connected": self.is_opened(),
            "facing_mode": self.facing_mode,
            "fps_actual": self._calculate_fps(),
            "frames_total": self._frames_total,
            "frames_dropped": self._frames_dropped,
            "drop_rate_pct": (
                (self._frames_dropped / self._frames_total * 100.0)
                if self._frames_total > 0
                else 0.0
            ),
            "last_valid_frame_age_ms": round(last_age_ms, 2),
            "resolution": self._resolution,
        }

    def is_opened(self) -> bool:
        return (not self._released) and bool(self._cap.isOpened())

    def release(self) -> None:
        """Stop the stream. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        _log.info(
            "BoothCamera releasing — total=%d dropped=%d",
            self._frames_total, self._frames_dropped,
        )
        self._cap.release()

    # ── Context manager support ───────────────────────────────

    def __enter__(self) -> "BoothCamera":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    # ── Private helpers ───────────────────────────────────────

    def _validate_frame(self, ret: bool, frame: Optional[np.ndarray]) -> bool:
        """Run the validation checklist on a captured frame."""
        if not ret or frame is None:
            _log.debug("Validation FAIL: no frame (ret=%s)", ret)
            return False

        if frame.ndim != 3 or frame.shape[2] != self.EXPECTED_CHANNELS:
            _log.debug("Validation FAIL: shape=%s (expected HxWx3)", frame.shape)
            return False

        if frame.dtype != self.EXPECTED_DTYPE:
            _log.debug("Validation FAIL: dtype=%s (expected uint8)", frame.dtype)
            return False

        h, w = frame.shape[:2]
        if h < self.MIN_HEIGHT or w < self.MIN_WIDTH:
            _log.debug(
                "Validation FAIL: resolution %dx%d below minimum %dx%d",
                w, h, self.MIN_WIDTH, self.MIN_HEIGHT,
            )
            return False

        mean_brightness = float(frame.mean())
        if mean_brightness <= self.MIN_MEAN_BRIGHTNESS:
            _log.debug("Validation FAIL: all-black frame (mean=%.2f)", mean_brightness)
            return False
        if mean_brightness >= self.MAX_MEAN_BRIGHTNESS:
            _log.debug("Validation FAIL: all-white frame (mean=%.2f)", mean_brightness)
            return False

        return True

    def _calculate_fps(self) -> float:
        """Rolling FPS over the last N valid frames."""
        if len(self._frame_times) < 2:
            return 0.0
        elapsed = self._frame_times[-1] - self._frame_times[0]
        if elapsed <= 0:
            return 0.0
        return (len(self._frame_times) - 1) / elapsed


def _probe(camera: BoothCamera, attempts: int) -> bool:
    """True once the device is open and delivers one valid frame."""
    if not camera.is_opened():
        return False
    for _ in range(max(1, attempts)):
        ok, _frame, _ts = camera.read_validated_frame()
        if ok:
            return True
    return False


def open_camera(config: dict) -> BoothCamera:
    """Open the preferred camera, retrying once with the user-facing one.

    Raises:
        SetupFailure: neither facing mode produced a working stream.
    """
    cam_cfg = config.get("camera", {})
    backend = resolve_backend(cam_cfg.get("backend", "any"))
    width = int(cam_cfg.get("width", 960))
    height = int(cam_cfg.get("height", 1280))
    attempts = int(cam_cfg.get("warmup_reads", 5))
    ids = {
        "environment": int(cam_cfg.get("environment_id", 0)),
        "user": int(cam_cfg.get("user_id", 1)),
    }

    for facing in FACING_MODES:
        camera = BoothCamera(
            camera_id=ids[facing], backend=backend,
            width=width, height=height, facing_mode=facing,
        )
        if _probe(camera, attempts):
            return camera
        _log.warning("Camera facing=%s (id=%d) unavailable", facing, ids[facing])
        camera.release()

    raise SetupFailure("no usable camera (environment and user both failed)")
