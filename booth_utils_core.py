"""
Suit-Booth — Shared Utility Module
==================================
Centralized capture logic shared by the engine, the state machine
and the overlay.

Contains:
  A) Configuration loading (config.yaml + built-in defaults)
  B) Logger setup for booth modules
  C) Landmark index constants (MediaPipe 468/478 mesh topology)
  D) Guide geometry + alignment evaluation (nose/chin vs. ellipse)
  E) Eye Aspect Ratio (pixel space) + BlinkDetector
"""

from __future__ import annotations

import copy
import math
import os
import logging
from dataclasses import dataclass
from typing import Optional

import yaml


# ===================================================================
# Configuration
# ===================================================================

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, 'config.yaml')

DEFAULT_CONFIG: dict = {
    "camera": {
        "environment_id": 0,
        "user_id": 1,
        "width": 960,
        "height": 1280,
        "backend": "any",
        "warmup_reads": 5,
    },
    "models": {
        "landmarker_path": "models/face_landmarker.task",
        "segmenter_path": "models/selfie_segmenter.tflite",
        "max_faces": 1,
        "min_detection_confidence": 0.5,
        "min_tracking_confidence": 0.5,
    },
    "guide": {
        "ellipse_ratio_y": 0.35,
        "ellipse_center_x": 0.5,
        "ellipse_center_y": 0.35,
        "ellipse_aspect_ratio": 0.9,
        "nose_tolerance": 1.1,
        "shoulder_line_y_ratio": 0.65,
        "shoulder_line_width_ratio": 0.85,
        "center_line_top_y_ratio": 0.1,
        "center_line_bottom_y_ratio": 0.9,
    },
    "blink": {
        "ear_threshold": 0.21,
        "consecutive_frames": 2,
    },
    "countdown": {
        "start": 3,
        "interval_ms": 1000,
    },
    "crop": {
        "overlap_px": 10,
        "head_x_padding": 0.4,
        "head_top_padding": 1.0,
    },
    "transform": {
        "endpoint": "http://localhost:8787/api/transform/suit/camera",
        "timeout_s": 60,
        "max_upload_bytes": 10 * 1024 * 1024,
    },
    "output": {
        "download_dir": "downloads",
        "composite_filename": "composite_image_dress_up.png",
        "capture_filename": "proof_photo_capture.png",
    },
    "logging": {
        "log_dir": "logs",
        "level": "INFO",
        "frame_log_interval": 30,
    },
}


def merge_config(base: dict, overrides: Optional[dict]) -> dict:
    """Return a copy of ``base`` with ``overrides`` merged in, section by section."""
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> dict:
    """Load configuration from config.yaml over the built-in defaults.

    A missing file is not an error: the defaults are identical to the
    shipped config.yaml.
    """
    target = path or _config_path
    if not os.path.exists(target):
        return copy.deepcopy(DEFAULT_CONFIG)
    with open(target, 'r', encoding='utf-8') as f:
        loaded = yaml.safe_load(f) or {}
    return merge_config(DEFAULT_CONFIG, loaded)


# ===================================================================
# Logging Setup
# ===================================================================

def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a configured logger for booth modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s',
            datefmt='%H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


_log = setup_logger('BoothUtils')


# ===================================================================
# Landmark Indices (MediaPipe face mesh topology)
# ===================================================================

NOSE_TIP = 1
CHIN_TIP = 152

# p1..p6 = [outer corner, upper1, upper2, inner corner, lower2, lower1]
RIGHT_EYE_INDICES = [33, 160, 158, 133, 153, 144]
LEFT_EYE_INDICES = [362, 387, 385, 263, 380, 373]

FACE_OVAL_INDICES = [
    10, 338, 297, 332, 284, 251, 389, 356, 454, 323, 361, 288,
    397, 365, 379, 378, 400, 377, 152, 148, 176, 149, 150, 136,
    172, 58, 132, 93, 234, 127, 162, 21, 54, 103, 67, 109,
]


# ===================================================================
# Guide Geometry + Alignment
# ===================================================================

@dataclass(frozen=True)
class GuideGeometry:
    """Normalized guide ellipse and overlay line ratios.

    The ellipse height is ``ellipse_ratio_y`` of the frame height and its
    width is the height times ``ellipse_aspect_ratio``.
    """
    ellipse_ratio_y: float = 0.35
    ellipse_center_x: float = 0.5
    ellipse_center_y: float = 0.35
    ellipse_aspect_ratio: float = 0.9
    nose_tolerance: float = 1.1
    shoulder_line_y_ratio: float = 0.65
    shoulder_line_width_ratio: float = 0.85
    center_line_top_y_ratio: float = 0.1
    center_line_bottom_y_ratio: float = 0.9

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "GuideGeometry":
        guide = (config or DEFAULT_CONFIG).get("guide", {})
        known = {k: float(v) for k, v in guide.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @property
    def ellipse_height(self) -> float:
        return self.ellipse_ratio_y

    @property
    def ellipse_width(self) -> float:
        return self.ellipse_ratio_y * self.ellipse_aspect_ratio

    @property
    def radius_y(self) -> float:
        return self.ellipse_height / 2.0

    @property
    def radius_x(self) -> float:
        return self.radius_y * self.ellipse_aspect_ratio


DEFAULT_GEOMETRY = GuideGeometry()


def evaluate_alignment(landmarks, geometry: GuideGeometry = DEFAULT_GEOMETRY) -> bool:
    """Decide whether a face sits inside the guide ellipse.

    Aligned iff the nose tip falls inside the tolerance-enlarged ellipse
    AND the chin is below the ellipse centre, horizontally within half the
    ellipse width of it.

    Args:
        landmarks: LandmarkSet, (N, >=2) array of normalized points, or None.
        geometry: Guide parameters.

    Returns:
        True if aligned. No face or a short landmark set is never aligned.
    """
    if landmarks is None:
        return False
    points = getattr(landmarks, "points", landmarks)
    if len(points) <= max(NOSE_TIP, CHIN_TIP):
        return False

    cx, cy = geometry.ellipse_center_x, geometry.ellipse_center_y
    nose_x, nose_y = float(points[NOSE_TIP][0]), float(points[NOSE_TIP][1])
    chin_x, chin_y = float(points[CHIN_TIP][0]), float(points[CHIN_TIP][1])

    nx = (nose_x - cx) / geometry.radius_x
    ny = (nose_y - cy) / geometry.radius_y
    nose_inside = nx * nx + ny * ny <= geometry.nose_tolerance

    chin_ok = chin_y > cy and abs(chin_x - cx) < geometry.ellipse_width * 0.5

    return bool(nose_inside and chin_ok)


# ===================================================================
# Eye Aspect Ratio + Blink Detection
# ===================================================================

def compute_ear(
    landmarks,
    eye_indices: list[int],
    frame_width: Optional[int] = None,
    frame_height: Optional[int] = None,
) -> float:
    """Compute the Eye Aspect Ratio of one eye in PIXEL space.

        EAR = (|p2 - p6| + |p3 - p5|) / (2 * |p1 - p4|)

    Args:
        landmarks: LandmarkSet, array of normalized points, or a sequence
                   of objects with .x/.y attributes.
        eye_indices: 6 indices [outer, upper1, upper2, inner, lower2, lower1].
        frame_width: Pixel width used to scale x (taken from a LandmarkSet
                     when omitted).
        frame_height: Pixel height used to scale y.

    Returns:
        EAR value; 0.0 when the horizontal eye distance is zero.
    """
    if hasattr(landmarks, "points"):
        frame_width = frame_width or landmarks.frame_width
        frame_height = frame_height or landmarks.frame_height
        landmarks = landmarks.points
    sx = float(frame_width or 1)
    sy = float(frame_height or 1)

    points = []
    for idx in eye_indices:
        lm = landmarks[idx]
        # Support both object (.x, .y) and array/tuple ([0], [1]) formats
        if hasattr(lm, 'x') and hasattr(lm, 'y'):
            points.append((float(lm.x) * sx, float(lm.y) * sy))
        else:
            points.append((float(lm[0]) * sx, float(lm[1]) * sy))

    p1, p2, p3, p4, p5, p6 = points

    # Vertical distances (eyelid opening)
    v1 = math.sqrt((p2[0] - p6[0])**2 + (p2[1] - p6[1])**2)
    v2 = math.sqrt((p3[0] - p5[0])**2 + (p3[1] - p5[1])**2)

    # Horizontal distance (eye width)
    h_dist = math.sqrt((p1[0] - p4[0])**2 + (p1[1] - p4[1])**2)

    if h_dist == 0:
        return 0.0

    return (v1 + v2) / (2.0 * h_dist)


class BlinkDetector:
    """Two-eye consecutive-frame blink detector.

    Each eye keeps a counter of consecutive frames with EAR below the
    threshold. Any open frame resets that eye's counter. A blink fires
    once both counters reach ``consecutive_frames``, after which both
    reset to zero.
    """

    def __init__(self, ear_threshold: float = 0.21, consecutive_frames: int = 2):
        self.ear_threshold = ear_threshold
        self.consecutive_frames = consecutive_frames
        self.left_closed_frames = 0
        self.right_closed_frames = 0
        self.blink_count = 0
        self.last_left_ear = 0.0
        self.last_right_ear = 0.0

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "BlinkDetector":
        blink = (config or DEFAULT_CONFIG).get("blink", {})
        return cls(
            ear_threshold=float(blink.get("ear_threshold", 0.21)),
            consecutive_frames=int(blink.get("consecutive_frames", 2)),
        )

    def update(self, landmarks) -> bool:
        """Evaluate one LandmarkSet. Returns True when a blink fires."""
        left = compute_ear(landmarks, LEFT_EYE_INDICES)
        right = compute_ear(landmarks, RIGHT_EYE_INDICES)
        return self.update_ears(left, right)

    def update_ears(self, left_ear: float, right_ear: float) -> bool:
        """Advance both counters with precomputed EAR values."""
        self.last_left_ear = left_ear
        self.last_right_ear = right_ear

        if left_ear < self.ear_threshold:
            self.left_closed_frames += 1
        else:
            self.left_closed_frames = 0

        if right_ear < self.ear_threshold:
            self.right_closed_frames += 1
        else:
            self.right_closed_frames = 0

        if (self.left_closed_frames >= self.consecutive_frames
                and self.right_closed_frames >= self.consecutive_frames):
            self.left_closed_frames = 0
            self.right_closed_frames = 0
            self.blink_count += 1
            _log.debug("Blink detected (count=%d)", self.blink_count)
            return True
        return False

    def reset(self) -> None:
        self.left_closed_frames = 0
        self.right_closed_frames = 0
