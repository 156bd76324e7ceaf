"""
Suit-Booth — Camera Module Tests
================================
Synthetic NumPy frames and a mocked cv2.VideoCapture — no real camera
needed. Covers frame validation, health reporting, idempotent release
and the environment → user facing-mode fallback.
"""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

import cv2

from booth_camera import BoothCamera, open_camera, resolve_backend
from booth_types import SetupFailure
from booth_utils_core import DEFAULT_CONFIG


# ─── Fixtures ─────────────────────────────────────────────────

def _make_valid_frame(height: int = 1280, width: int = 960) -> np.ndarray:
    """Synthetic portrait BGR frame that passes every validation check."""
    rng = np.random.RandomState(42)
    return rng.randint(60, 190, size=(height, width, 3), dtype=np.uint8)


def _make_mock_capture(frame: np.ndarray | None, ret: bool = True, opened: bool = True):
    mock_cap = MagicMock()
    mock_cap.read.return_value = (ret, frame)
    mock_cap.isOpened.return_value = opened
    mock_cap.get.return_value = 960.0
    mock_cap.set.return_value = True
    return mock_cap


# ─── Test 1: Validation ───────────────────────────────────────

def test_valid_frame_passes():
    frame = _make_valid_frame()
    mock_cap = _make_mock_capture(frame)

    with patch("booth_camera.cv2.VideoCapture", return_value=mock_cap):
        cam = BoothCamera(camera_id=0)
        ok, result, ts = cam.read_validated_frame()

    assert ok is True
    assert ts > 0
    assert np.array_equal(result, frame)
    cam.release()


def test_requests_portrait_resolution():
    mock_cap = _make_mock_capture(_make_valid_frame())
    with patch("booth_camera.cv2.VideoCapture", return_value=mock_cap):
        BoothCamera(camera_id=0, width=960, height=1280)

    mock_cap.set.assert_any_call(cv2.CAP_PROP_FRAME_WIDTH, 960)
    mock_cap.set.assert_any_call(cv2.CAP_PROP_FRAME_HEIGHT, 1280)


@pytest.mark.parametrize("ret,frame", [
    (False, _make_valid_frame()),
    (True, None),
    (True, np.full((1280, 960), 128, dtype=np.uint8)),
    (True, np.full((1280, 960, 3), 128, dtype=np.float32)),
    (True, np.zeros((1280, 960, 3), dtype=np.uint8)),
    (True, np.full((1280, 960, 3), 255, dtype=np.uint8)),
    (True, np.full((100, 80, 3), 128, dtype=np.uint8)),
])
def test_invalid_frames_rejected(ret, frame):
    mock_cap = _make_mock_capture(frame, ret=ret)
    with patch("booth_camera.cv2.VideoCapture", return_value=mock_cap):
        cam = BoothCamera(camera_id=0)
        ok, result, ts = cam.read_validated_frame()

    assert ok is False
    assert result is None
    assert ts == 0.0
    assert cam.get_health_status()["frames_dropped"] == 1


def test_health_status_counts_frames():
    mock_cap = _make_mock_capture(_make_valid_frame())
    with patch("booth_camera.cv2.VideoCapture", return_value=mock_cap):
        cam = BoothCamera(camera_id=0, facing_mode="user")
        for _ in range(3):
            cam.read_validated_frame()
        health = cam.get_health_status()

    assert health["connected"] is True
    assert health["facing_mode"] == "user"
    assert health["frames_total"] == 3
    assert health["frames_dropped"] == 0
    assert health["drop_rate_pct"] == 0.0


# ─── Test 2: Release ──────────────────────────────────────────

def test_release_is_idempotent():
    mock_cap = _make_mock_capture(_make_valid_frame())
    with patch("booth_camera.cv2.VideoCapture", return_value=mock_cap):
        cam = BoothCamera(camera_id=0)
        cam.release()
        cam.release()

    mock_cap.release.assert_called_once()
    assert cam.is_opened() is False
    assert cam.read_validated_frame() == (False, None, 0.0)


def test_context_manager_releases():
    mock_cap = _make_mock_capture(_make_valid_frame())
    with patch("booth_camera.cv2.VideoCapture", return_value=mock_cap):
        with BoothCamera(camera_id=0):
            pass
    mock_cap.release.assert_called_once()


# ─── Test 3: Facing-mode fallback ─────────────────────────────

def test_open_camera_prefers_environment():
    good = _make_mock_capture(_make_valid_frame())
    with patch("booth_camera.cv2.VideoCapture", return_value=good) as vc:
        cam = open_camera(DEFAULT_CONFIG)

    assert cam.facing_mode == "environment"
    assert vc.call_count == 1
    assert vc.call_args[0][0] == DEFAULT_CONFIG["camera"]["environment_id"]


def test_open_camera_falls_back_to_user():
    bad = _make_mock_capture(None, ret=False, opened=False)
    good = _make_mock_capture(_make_valid_frame())
    with patch("booth_camera.cv2.VideoCapture", side_effect=[bad, good]) as vc:
        cam = open_camera(DEFAULT_CONFIG)

    assert cam.facing_mode == "user"
    assert vc.call_args_list[1][0][0] == DEFAULT_CONFIG["camera"]["user_id"]
    bad.release.assert_called_once()


def test_open_camera_fails_after_one_retry():
    black = _make_mock_capture(np.zeros((1280, 960, 3), dtype=np.uint8))
    also_black = _make_mock_capture(np.zeros((1280, 960, 3), dtype=np.uint8))
    with patch("booth_camera.cv2.VideoCapture", side_effect=[black, also_black]) as vc:
        with pytest.raises(SetupFailure):
            open_camera(DEFAULT_CONFIG)

    assert vc.call_count == 2
    black.release.assert_called_once()
    also_black.release.assert_called_once()


def test_resolve_backend_names():
    assert resolve_backend("any") == cv2.CAP_ANY
    assert resolve_backend("unknown") == cv2.CAP_ANY
    assert resolve_backend(cv2.CAP_DSHOW) == cv2.CAP_DSHOW
