"""
Suit-Booth — Shared Types
=========================
Dataclasses, enums and the error taxonomy shared by every booth module.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, asdict, field
from typing import Optional, Tuple

import numpy as np


# ═══════════════════════════════════════════════════════════════
# Error taxonomy
# ═══════════════════════════════════════════════════════════════

class BoothError(Exception):
    """Base class for all recoverable booth failures."""


class SetupFailure(BoothError):
    """Camera or model initialization failed."""


class TrackingFailure(BoothError):
    """No face in the current frame."""


class SegmentationFailure(BoothError):
    """Person mask unavailable or face box degenerate."""


class NetworkFailure(BoothError):
    """Transform service unreachable or returned a non-OK response."""


class CompositionFailure(BoothError):
    """Head or body image failed to decode."""


# ═══════════════════════════════════════════════════════════════
# Session state
# ═══════════════════════════════════════════════════════════════

class CaptureState(str, enum.Enum):
    IDLE = "Idle"
    TRACKING = "Tracking"
    ARMED = "Armed"
    COUNTDOWN = "CountdownRunning"
    CAPTURED = "Captured"
    SEGMENTING = "Segmenting"
    PREVIEW_READY = "PreviewReady"
    DRESS_UP_IN_FLIGHT = "DressUpInFlight"
    COMPOSITED = "Composited"


# States in which per-frame landmark inference is suspended
SUSPENDED_STATES = frozenset({
    CaptureState.CAPTURED,
    CaptureState.SEGMENTING,
    CaptureState.DRESS_UP_IN_FLIGHT,
})


# ═══════════════════════════════════════════════════════════════
# Data model
# ═══════════════════════════════════════════════════════════════

@dataclass
class LandmarkSet:
    """Normalized landmarks of one face for one frame.

    Attributes:
        points: (N, 3) float32 array of normalized (x, y, z).
        frame_width: Source frame width in pixels.
        frame_height: Source frame height in pixels.
    """
    points: np.ndarray
    frame_width: int
    frame_height: int

    def __len__(self) -> int:
        return int(self.points.shape[0])

    def point(self, index: int) -> Tuple[float, float]:
        """Normalized (x, y) of one landmark."""
        return float(self.points[index, 0]), float(self.points[index, 1])

    def to_pixels(self, indices=None) -> np.ndarray:
        """(K, 2) pixel coordinates for the given indices (all if None)."""
        pts = self.points if indices is None else self.points[list(indices)]
        scale = np.array([self.frame_width, self.frame_height], dtype=np.float64)
        return pts[:, :2].astype(np.float64) * scale


@dataclass
class CropMetadata:
    """Placement record written by the cropper, replayed by the compositor."""
    head_x: int
    head_y: int
    head_width: int
    head_height: int
    body_x: int
    body_y_start: int
    body_width: int
    body_height: int
    original_width: int
    original_height: int
    overlap_used: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CropResult:
    head_image: np.ndarray                 # BGRA uint8
    body_image: Optional[np.ndarray]       # BGRA uint8, None if empty range
    metadata: CropMetadata


@dataclass
class BoothMessage:
    """Transient user-visible message."""
    text: str
    level: str = "info"                    # success | info | warning | error
    duration_s: float = 3.0
    created_at: float = field(default_factory=time.monotonic)

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return now - self.created_at >= self.duration_s


@dataclass
class FrameResult:
    """Everything the display loop needs for one processed frame."""
    frame: Optional[np.ndarray]
    timestamp: float
    landmarks: Optional[LandmarkSet]
    aligned: bool
    blink: bool
    state: str
    countdown: Optional[int]
    fps: float
    camera_health: dict
