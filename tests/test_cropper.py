"""
Suit-Booth — Cropper Tests
==========================
Head/body box geometry, mask application and failure modes on
synthetic 960x1280 snapshots.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from booth_cropper import apply_mask, compute_crop_metadata, crop_from_config, crop_head_and_body
from booth_types import LandmarkSet, SegmentationFailure
from booth_utils_core import DEFAULT_CONFIG, merge_config

W, H = 960, 1280


def _make_landmarks(chin=(0.5, 0.5), width=W, height=H) -> LandmarkSet:
    """Face oval spanning x 0.4..0.6 and y 0.25..chin."""
    pts = np.zeros((478, 3), dtype=np.float32)
    pts[:, 0] = 0.5
    pts[:, 1] = 0.35
    pts[10] = (0.5, 0.25, 0.0)
    pts[234] = (0.4, 0.35, 0.0)
    pts[454] = (0.6, 0.35, 0.0)
    pts[152] = (chin[0], chin[1], 0.0)
    return LandmarkSet(pts, width, height)


def _frame(width=W, height=H) -> np.ndarray:
    rng = np.random.RandomState(3)
    return rng.randint(0, 256, (height, width, 3), dtype=np.uint8)


# ─── Test 1: Box geometry ─────────────────────────────────────

def test_metadata_geometry():
    """Oval 192x320 px, chin at y=640:
    head_x = floor(384 - 76.8), head_w = round(192 + 153.6),
    head_y clamps to 0, head bottom = chin + 10."""
    meta = compute_crop_metadata(_make_landmarks(), W, H)

    assert meta.head_x == 307
    assert meta.head_y == 0
    assert meta.head_width == 346
    assert meta.head_height == 650
    assert meta.body_x == 0
    assert meta.body_y_start == 640
    assert meta.body_width == W
    assert meta.body_height == 640
    assert meta.original_width == W
    assert meta.original_height == H
    assert meta.overlap_used == 10


def test_metadata_fields_are_integers():
    meta = compute_crop_metadata(_make_landmarks(), W, H)
    for value in meta.to_dict().values():
        assert isinstance(value, int)


def test_boxes_stay_inside_frame():
    for chin_y in (0.3, 0.5, 0.8, 0.99):
        meta = compute_crop_metadata(_make_landmarks(chin=(0.5, chin_y)), W, H)
        assert meta.head_x >= 0 and meta.head_y >= 0
        assert meta.head_x + meta.head_width <= W
        assert meta.head_y + meta.head_height <= H
        assert meta.body_y_start + meta.body_height == H
        assert meta.head_y + meta.head_height >= meta.body_y_start


def test_custom_overlap():
    meta = compute_crop_metadata(_make_landmarks(), W, H, overlap_px=24)
    assert meta.head_height == 664
    assert meta.overlap_used == 24


def test_head_box_clipped_at_right_edge():
    lms = _make_landmarks()
    lms.points[454] = (0.98, 0.35, 0.0)
    meta = compute_crop_metadata(lms, W, H)
    assert meta.head_x + meta.head_width == W


# ─── Test 2: Failure modes ────────────────────────────────────

def test_degenerate_oval_raises():
    lms = _make_landmarks()
    lms.points[:, :2] = 0.5
    with pytest.raises(SegmentationFailure):
        compute_crop_metadata(lms, W, H)


def test_incomplete_landmarks_raise():
    lms = LandmarkSet(np.full((100, 3), 0.5, dtype=np.float32), W, H)
    with pytest.raises(SegmentationFailure):
        compute_crop_metadata(lms, W, H)


def test_missing_mask_raises():
    with pytest.raises(SegmentationFailure):
        crop_head_and_body(_frame(), _make_landmarks(), None)


def test_empty_mask_raises():
    with pytest.raises(SegmentationFailure):
        crop_head_and_body(_frame(), _make_landmarks(), np.zeros((0, 0), dtype=np.float32))


def test_missing_landmarks_raise():
    with pytest.raises(SegmentationFailure):
        crop_head_and_body(_frame(), None, np.ones((H, W), dtype=np.float32))


# ─── Test 3: Crop images ──────────────────────────────────────

def test_crop_images_match_boxes():
    frame = _frame()
    result = crop_head_and_body(frame, _make_landmarks(), np.ones((H, W), dtype=np.float32))
    meta = result.metadata

    assert result.head_image.shape == (meta.head_height, meta.head_width, 4)
    assert result.body_image.shape == (meta.body_height, W, 4)
    np.testing.assert_array_equal(
        result.head_image[:, :, :3],
        frame[meta.head_y:meta.head_y + meta.head_height, meta.head_x:meta.head_x + meta.head_width],
    )
    np.testing.assert_array_equal(result.body_image[:, :, :3], frame[meta.body_y_start:])
    assert (result.head_image[:, :, 3] == 255).all()


def test_chin_at_bottom_has_no_body():
    result = crop_head_and_body(
        _frame(), _make_landmarks(chin=(0.5, 1.0)), np.ones((H, W), dtype=np.float32),
    )
    assert result.metadata.body_height == 0
    assert result.body_image is None
    assert result.metadata.head_height == H


def test_crop_from_config_reads_overlap():
    cfg = merge_config(DEFAULT_CONFIG, {"crop": {"overlap_px": 20}})
    result = crop_from_config(_frame(), _make_landmarks(), np.ones((H, W), dtype=np.float32), cfg)
    assert result.metadata.overlap_used == 20
    assert result.metadata.head_height == 660


# ─── Test 4: Mask application ─────────────────────────────────

def test_apply_mask_sets_alpha():
    frame = np.full((4, 4, 3), 200, dtype=np.uint8)
    mask = np.zeros((4, 4), dtype=np.float32)
    mask[:2] = 1.0

    out = apply_mask(frame, mask)

    assert out.shape == (4, 4, 4)
    assert (out[:2, :, 3] == 255).all()
    assert (out[2:, :, 3] == 0).all()
    assert (out[:, :, :3] == 200).all()


def test_apply_mask_resizes_mask():
    frame = np.zeros((8, 6, 3), dtype=np.uint8)
    out = apply_mask(frame, np.ones((4, 3), dtype=np.float32))
    assert out.shape == (8, 6, 4)
    assert (out[:, :, 3] == 255).all()


def test_apply_mask_multiplies_existing_alpha():
    frame = np.zeros((2, 2, 4), dtype=np.uint8)
    frame[:, :, 3] = 0
    out = apply_mask(frame, np.ones((2, 2), dtype=np.float32))
    assert (out[:, :, 3] == 0).all()
