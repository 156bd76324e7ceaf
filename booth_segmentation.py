"""
Suit-Booth — Segmentation Engine
================================
Wraps the MediaPipe Tasks ImageSegmenter (selfie / person model) and
turns one snapshot into a per-pixel person coverage mask in [0, 1].

Single-person output only: no multi-person instances and no body-part
sub-segmentation are requested.
"""

from __future__ import annotations

import logging
import os

import cv2
import mediapipe as mp
import numpy as np

from booth_face_pipeline import resolve_model_path
from booth_types import SegmentationFailure

_log = logging.getLogger("BoothSegmenter")


class SegmentationEngine:
    """Person segmentation for captured snapshots.

    Driven exclusively by the capture path; never called concurrently
    with itself.
    """

    def __init__(self, model_path: str = "models/selfie_segmenter.tflite") -> None:
        self._model_path = model_path
        self._segmenter = None
        self._init_mediapipe(model_path)
        _log.info("SegmentationEngine initialized")

    @classmethod
    def from_config(cls, config: dict) -> "SegmentationEngine":
        models = config.get("models", {})
        return cls(model_path=models.get("segmenter_path", "models/selfie_segmenter.tflite"))

    def _init_mediapipe(self, model_path: str) -> None:
        """Initialize MediaPipe ImageSegmenter in IMAGE mode."""
        from mediapipe.tasks import python
        from mediapipe.tasks.python import vision

        full_path = resolve_model_path(model_path)
        if not os.path.exists(full_path):
            raise FileNotFoundError(f"MediaPipe model not found: {full_path}")

        base_options = python.BaseOptions(
            model_asset_path=full_path,
            delegate=python.BaseOptions.Delegate.CPU
        )
        options = vision.ImageSegmenterOptions(
            base_options=base_options,
            running_mode=vision.RunningMode.IMAGE,
            output_category_mask=False,
            output_confidence_masks=True,
        )
        self._segmenter = vision.ImageSegmenter.create_from_options(options)

    # ── Public API ────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self._segmenter is not None

    def segment(self, frame: np.ndarray) -> np.ndarray:
        """Segment the person in a BGR snapshot.

        Returns:
            (H, W) float32 mask in [0, 1] matching the frame size.

        Raises:
            SegmentationFailure: released handle, model error, or no mask.
        """
        if self._segmenter is None:
            raise SegmentationFailure("segmenter not ready")

        h, w = frame.shape[:2]
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)

        try:
            result = self._segmenter.segment(mp_image)
        except Exception as e:
            raise SegmentationFailure(f"segmentation error: {e}") from e

        masks = getattr(result, "confidence_masks", None) if result else None
        if not masks:
            raise SegmentationFailure("no person mask returned")

        if len(masks) == 1:
            person = np.asarray(masks[0].numpy_view(), dtype=np.float32)
        else:
            # Multi-class selfie model: channel 0 is background
            person = 1.0 - np.asarray(masks[0].numpy_view(), dtype=np.float32)

        person = np.squeeze(person)
        if person.ndim != 2 or person.size == 0:
            raise SegmentationFailure(f"unusable mask shape {person.shape}")
        if person.shape != (h, w):
            person = cv2.resize(person, (w, h), interpolation=cv2.INTER_LINEAR)

        return np.clip(person, 0.0, 1.0)

    def release(self) -> None:
        """Release the segmenter. Safe to call more than once."""
        if self._segmenter is not None:
            self._segmenter.close()
            self._segmenter = None
            _log.info("SegmentationEngine released")

    def __enter__(self) -> "SegmentationEngine":
        return self

    def __exit__(self, *args) -> None:
        self.release()
