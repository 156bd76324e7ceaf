"""
Suit-Booth — Landmark Tracker
=============================
Owns ALL face-landmark inference. No other module should run the
FaceLandmarker directly.

Features:
  - MediaPipe Tasks FaceLandmarker in VIDEO running mode
  - Single-face tracking (num_faces=1) with refined eye/iris mesh
  - Returns a LandmarkSet or None ("no face" is transient, never raised)
  - Optional handle: every call checks readiness, release is idempotent
"""

from __future__ import annotations

import logging
import os
import time
from typing import Optional

import cv2
import mediapipe as mp
import numpy as np

from booth_types import LandmarkSet

_log = logging.getLogger("BoothTracker")

# ─── Project Root ─────────────────────────────────────────────
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))


def resolve_model_path(model_path: str) -> str:
    """Resolve a model path relative to the project root."""
    if os.path.isabs(model_path):
        return model_path
    return os.path.join(_SCRIPT_DIR, model_path)


class LandmarkTracker:
    """Wraps the MediaPipe FaceLandmarker for one live stream.

    One instance is shared for the whole session and driven exclusively
    by the frame loop, so ``detect`` is never re-entered.
    """

    def __init__(
        self,
        model_path: str = "models/face_landmarker.task",
        max_faces: int = 1,
        min_detection_confidence: float = 0.5,
        min_tracking_confidence: float = 0.5,
    ) -> None:
        self._model_path = model_path
        self._max_faces = max_faces
        self._landmarker = None
        self._last_timestamp_ms = 0
        self._frames_processed = 0
        self._faces_found = 0

        self._init_mediapipe(
            model_path, max_faces, min_detection_confidence, min_tracking_confidence,
        )
        _log.info("LandmarkTracker initialized — max_faces=%d", max_faces)

    @classmethod
    def from_config(cls, config: dict) -> "LandmarkTracker":
        models = config.get("models", {})
        return cls(
            model_path=models.get("landmarker_path", "models/face_landmarker.task"),
            max_faces=int(models.get("max_faces", 1)),
            min_detection_confidence=float(models.get("min_detection_confidence", 0.5)),
            min_tracking_confidence=float(models.get("min_tracking_confidence", 0.5)),
        )

    # ── Initializer ───────────────────────────────────────────

    def _init_mediapipe(
        self,
        model_path: str,
        max_faces: int,
        min_detection_confidence: float,
        min_tracking_confidence: float,
    ) -> None:
        """Initialize MediaPipe FaceLandmarker backend."""
        from mediapipe.tasks import python
        from mediapipe.tasks.python import vision

        full_path = resolve_model_path(model_path)
        if not os.path.exists(full_path):
            raise FileNotFoundError(f"MediaPipe model not found: {full_path}")

        model_size_mb = os.path.getsize(full_path) / 1024 / 1024
        _log.info("MediaPipe FaceLandmarker: %.1f MB (%s)", model_size_mb, full_path)

        base_options = python.BaseOptions(
            model_asset_path=full_path,
            delegate=python.BaseOptions.Delegate.CPU
        )

        # VIDEO mode: synchronous, temporally-smoothed tracking
        options = vision.FaceLandmarkerOptions(
            base_options=base_options,
            running_mode=vision.RunningMode.VIDEO,
            num_faces=max_faces,
            min_face_detection_confidence=min_detection_confidence,
            min_face_presence_confidence=min_detection_confidence,
            min_tracking_confidence=min_tracking_confidence,
            output_face_blendshapes=False,
            output_facial_transformation_matrixes=False,
        )

        self._landmarker = vision.FaceLandmarker.create_from_options(options)

    # ── Public API ────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self._landmarker is not None

    def detect(self, frame: np.ndarray) -> Optional[LandmarkSet]:
        """Track the single face in a BGR frame.

        Returns:
            LandmarkSet, or None when no face is present, the frame is
            unusable, or the tracker has been released.
        """
        if self._landmarker is None:
            _log.debug("detect() called on released tracker")
            return None
        if frame is None or frame.ndim != 3:
            return None

        h, w = frame.shape[:2]

        # MediaPipe expects RGB input
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)

        # VIDEO mode requires strictly increasing timestamps
        timestamp_ms = max(int(time.monotonic() * 1000), self._last_timestamp_ms + 1)
        self._last_timestamp_ms = timestamp_ms
        self._frames_processed += 1

        try:
            result = self._landmarker.detect_for_video(mp_image, timestamp_ms)
        except Exception as e:
            _log.debug("MediaPipe detection failed: %s", e)
            return None

        if not result or not result.face_landmarks:
            return None

        face_lms = result.face_landmarks[0]
        points = np.array(
            [[lm.x, lm.y, lm.z] for lm in face_lms],
            dtype=np.float32,
        )
        self._faces_found += 1
        return LandmarkSet(points=points, frame_width=w, frame_height=h)

    def get_stats(self) -> dict:
        return {
            "ready": self.is_ready,
            "frames_processed": self._frames_processed,
            "faces_found": self._faces_found,
        }

    def release(self) -> None:
        """Release the landmarker. Safe to call more than once."""
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None
            _log.info("LandmarkTracker released")

    # ── Context manager ───────────────────────────────────────

    def __enter__(self) -> "LandmarkTracker":
        return self

    def __exit__(self, *args) -> None:
        self.release()
