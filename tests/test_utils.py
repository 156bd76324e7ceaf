"""
Suit-Booth — Utility Module Tests
=================================
Config loading, alignment evaluation, EAR and blink detection using
synthetic landmark arrays. No camera or model files needed.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from booth_types import LandmarkSet
from booth_utils_core import (
    BlinkDetector,
    DEFAULT_CONFIG,
    GuideGeometry,
    LEFT_EYE_INDICES,
    RIGHT_EYE_INDICES,
    compute_ear,
    evaluate_alignment,
    load_config,
    merge_config,
    setup_logger,
)


# ─── Fixtures ─────────────────────────────────────────────────

def _make_face_points(
    width: int = 960,
    height: int = 1280,
    nose=(0.5, 0.35),
    chin=(0.5, 0.5),
    ear: float = 0.3,
) -> np.ndarray:
    """(478, 3) normalized landmarks with a given nose, chin and eye EAR."""
    pts = np.zeros((478, 3), dtype=np.float32)
    pts[:, 0] = 0.5
    pts[:, 1] = 0.35
    pts[10] = (0.5, 0.25, 0.0)
    pts[234] = (0.4, 0.35, 0.0)
    pts[454] = (0.6, 0.35, 0.0)
    pts[1] = (nose[0], nose[1], 0.0)
    pts[152] = (chin[0], chin[1], 0.0)

    half = 10.0
    for indices, cx in ((RIGHT_EYE_INDICES, 0.45), (LEFT_EYE_INDICES, 0.55)):
        cxp, cyp = cx * width, 0.32 * height
        eye = [
            (cxp - half, cyp),
            (cxp - 3, cyp - ear * half),
            (cxp + 3, cyp - ear * half),
            (cxp + half, cyp),
            (cxp + 3, cyp + ear * half),
            (cxp - 3, cyp + ear * half),
        ]
        for idx, (x, y) in zip(indices, eye):
            pts[idx] = (x / width, y / height, 0.0)
    return pts


class _MockLandmark:
    def __init__(self, x, y):
        self.x = x
        self.y = y


# ═══════════════════════════════════════════════════════════════
# Configuration
# ═══════════════════════════════════════════════════════════════

def test_load_config_missing_file_returns_defaults(tmp_path):
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg == DEFAULT_CONFIG
    assert cfg is not DEFAULT_CONFIG


def test_load_config_merges_file_over_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("blink:\n  ear_threshold: 0.18\n", encoding="utf-8")

    cfg = load_config(str(path))

    assert cfg["blink"]["ear_threshold"] == 0.18
    assert cfg["blink"]["consecutive_frames"] == 2
    assert cfg["crop"]["overlap_px"] == 10


def test_shipped_config_matches_defaults():
    cfg = load_config()
    assert cfg["guide"]["ellipse_aspect_ratio"] == 0.9
    assert cfg["transform"]["max_upload_bytes"] == 10 * 1024 * 1024
    assert cfg["output"]["composite_filename"] == "composite_image_dress_up.png"


def test_merge_config_does_not_mutate_base():
    merged = merge_config(DEFAULT_CONFIG, {"countdown": {"start": 5}})
    assert merged["countdown"]["start"] == 5
    assert merged["countdown"]["interval_ms"] == 1000
    assert DEFAULT_CONFIG["countdown"]["start"] == 3


def test_setup_logger_adds_single_handler():
    a = setup_logger("BoothTestLogger", logging.DEBUG)
    b = setup_logger("BoothTestLogger", logging.DEBUG)
    assert a is b
    assert len(a.handlers) == 1


# ═══════════════════════════════════════════════════════════════
# Alignment
# ═══════════════════════════════════════════════════════════════

def test_centered_face_is_aligned():
    """Nose (0.50, 0.35) and chin (0.50, 0.55) sit inside the guide."""
    pts = _make_face_points(nose=(0.50, 0.35), chin=(0.50, 0.55))
    assert evaluate_alignment(pts) is True


def test_alignment_accepts_landmark_set():
    pts = _make_face_points()
    assert evaluate_alignment(LandmarkSet(pts, 960, 1280)) is True


def test_no_face_is_not_aligned():
    assert evaluate_alignment(None) is False


def test_short_landmark_array_is_not_aligned():
    assert evaluate_alignment(np.full((100, 3), 0.5, dtype=np.float32)) is False


def test_nose_outside_ellipse_is_not_aligned():
    pts = _make_face_points(nose=(0.5, 0.60), chin=(0.5, 0.70))
    assert evaluate_alignment(pts) is False


def test_chin_above_center_is_not_aligned():
    pts = _make_face_points(nose=(0.5, 0.35), chin=(0.5, 0.30))
    assert evaluate_alignment(pts) is False


def test_chin_off_to_the_side_is_not_aligned():
    pts = _make_face_points(nose=(0.5, 0.35), chin=(0.70, 0.55))
    assert evaluate_alignment(pts) is False


def test_narrow_guide_rejects_offset_nose():
    """Nose 0.15 right of centre fits the 0.9 guide but not the 0.75 one."""
    pts = _make_face_points(nose=(0.65, 0.35), chin=(0.5, 0.55))
    wide = GuideGeometry(ellipse_aspect_ratio=0.9)
    narrow = GuideGeometry(ellipse_aspect_ratio=0.75)

    assert evaluate_alignment(pts, wide) is True
    assert evaluate_alignment(pts, narrow) is False


def test_geometry_from_config():
    cfg = merge_config(DEFAULT_CONFIG, {"guide": {"ellipse_aspect_ratio": 0.75}})
    geo = GuideGeometry.from_config(cfg)
    assert geo.ellipse_aspect_ratio == 0.75
    assert geo.radius_y == pytest.approx(0.175)
    assert geo.radius_x == pytest.approx(0.175 * 0.75)


# ═══════════════════════════════════════════════════════════════
# EAR
# ═══════════════════════════════════════════════════════════════

def test_ear_matches_constructed_opening():
    pts = _make_face_points(ear=0.3)
    lms = LandmarkSet(pts, 960, 1280)
    assert compute_ear(lms, LEFT_EYE_INDICES) == pytest.approx(0.3, abs=1e-3)
    assert compute_ear(lms, RIGHT_EYE_INDICES) == pytest.approx(0.3, abs=1e-3)


def test_ear_uses_pixel_space():
    """Normalized coordinates on a non-square frame give a different EAR
    unless scaled back to pixels."""
    pts = _make_face_points(width=960, height=1280, ear=0.3)
    pixel_ear = compute_ear(pts, LEFT_EYE_INDICES, 960, 1280)
    raw_ear = compute_ear(pts, LEFT_EYE_INDICES)
    assert pixel_ear == pytest.approx(0.3, abs=1e-3)
    assert raw_ear != pytest.approx(pixel_ear, abs=1e-3)


def test_ear_zero_horizontal_distance_returns_zero():
    lms = [_MockLandmark(0.5, 0.5) for _ in range(6)]
    assert compute_ear(lms, [0, 1, 2, 3, 4, 5], 100, 100) == 0.0


def test_ear_supports_attribute_landmarks():
    lms = [
        _MockLandmark(0.0, 0.5), _MockLandmark(0.3, 0.4), _MockLandmark(0.7, 0.4),
        _MockLandmark(1.0, 0.5), _MockLandmark(0.7, 0.6), _MockLandmark(0.3, 0.6),
    ]
    # vertical 0.2 + 0.2, horizontal 1.0 → 0.4 / 2.0
    assert compute_ear(lms, [0, 1, 2, 3, 4, 5], 1, 1) == pytest.approx(0.2)


# ═══════════════════════════════════════════════════════════════
# Blink detection
# ═══════════════════════════════════════════════════════════════

def test_blink_fires_when_both_eyes_closed_two_frames():
    det = BlinkDetector(ear_threshold=0.21, consecutive_frames=2)
    assert det.update_ears(0.10, 0.10) is False
    assert det.update_ears(0.10, 0.10) is True
    assert det.left_closed_frames == 0
    assert det.right_closed_frames == 0
    assert det.blink_count == 1


def test_left_eye_recovery_prevents_blink():
    """Left [0.10, 0.25, 0.10], right [0.10, 0.10, 0.10]: the left eye
    never records two consecutive closed frames."""
    det = BlinkDetector()
    fired = [det.update_ears(l, r) for l, r in zip([0.10, 0.25, 0.10], [0.10, 0.10, 0.10])]
    assert fired == [False, False, False]
    assert det.left_closed_frames == 1
    assert det.right_closed_frames == 3


def test_single_eye_wink_never_fires():
    det = BlinkDetector()
    fired = [det.update_ears(0.05, 0.30) for _ in range(10)]
    assert not any(fired)


def test_open_frame_resets_counter_without_partial_credit():
    det = BlinkDetector()
    det.update_ears(0.10, 0.10)
    det.update_ears(0.30, 0.30)
    assert det.left_closed_frames == 0
    assert det.right_closed_frames == 0
    assert det.update_ears(0.10, 0.10) is False


def test_ear_equal_to_threshold_counts_as_open():
    det = BlinkDetector(ear_threshold=0.21)
    det.update_ears(0.21, 0.10)
    assert det.left_closed_frames == 0
    assert det.right_closed_frames == 1


def test_blink_detector_from_landmarks():
    det = BlinkDetector.from_config(DEFAULT_CONFIG)
    closed = LandmarkSet(_make_face_points(ear=0.1), 960, 1280)
    opened = LandmarkSet(_make_face_points(ear=0.3), 960, 1280)

    assert det.update(opened) is False
    assert det.update(closed) is False
    assert det.update(closed) is True
    assert det.last_left_ear == pytest.approx(0.1, abs=1e-3)
