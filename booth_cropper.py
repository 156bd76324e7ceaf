"""
Suit-Booth — Head/Body Cropper
==============================
Splits a captured snapshot into a head image and a body image using
the person mask and the face-oval landmarks.

    ┌──────────────┐  head box: oval bbox padded 40% left/right,
    │   ┌──────┐   │            100% of oval height above,
    │   │ head │   │            bottom = chin + overlap
    │   │  ··  │   │
    ├───┴──────┴───┤  ← chin line  = body_y_start
    │     body     │  body: full width, chin line → bottom
    └──────────────┘

The head box deliberately extends ``overlap_px`` below the chin line,
so the compositor can hide the seam by drawing the head last.
All coordinates are integer pixels.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import cv2
import numpy as np

from booth_types import CropMetadata, CropResult, LandmarkSet, SegmentationFailure
from booth_utils_core import CHIN_TIP, FACE_OVAL_INDICES

_log = logging.getLogger("BoothCropper")


def apply_mask(frame: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Keep only mask-covered pixels ("destination-in").

    Args:
        frame: BGR or BGRA uint8 image.
        mask: (H, W) coverage in [0, 1]; resized to the frame if needed.

    Returns:
        BGRA uint8 image with alpha = source_alpha * mask.
    """
    h, w = frame.shape[:2]
    mask = np.asarray(mask, dtype=np.float32)
    if mask.ndim == 3:
        mask = mask[:, :, 0]
    if mask.shape != (h, w):
        mask = cv2.resize(mask, (w, h), interpolation=cv2.INTER_LINEAR)
    mask = np.clip(mask, 0.0, 1.0)

    if frame.shape[2] == 4:
        bgra = frame.copy()
        src_alpha = bgra[:, :, 3].astype(np.float32) / 255.0
    else:
        bgra = cv2.cvtColor(frame, cv2.COLOR_BGR2BGRA)
        src_alpha = np.ones((h, w), dtype=np.float32)

    bgra[:, :, 3] = np.round(src_alpha * mask * 255.0).astype(np.uint8)
    return bgra


def compute_crop_metadata(
    landmarks: LandmarkSet,
    width: int,
    height: int,
    overlap_px: int = 10,
    head_x_padding: float = 0.4,
    head_top_padding: float = 1.0,
) -> CropMetadata:
    """Compute head and body boxes in snapshot pixel space.

    Raises:
        SegmentationFailure: missing chin landmark or degenerate face box.
    """
    points = landmarks.points
    if len(points) <= max(max(FACE_OVAL_INDICES), CHIN_TIP):
        raise SegmentationFailure("face landmarks incomplete")

    oval = points[FACE_OVAL_INDICES, :2].astype(np.float64) * np.array([width, height])
    min_x, min_y = oval.min(axis=0)
    max_x, max_y = oval.max(axis=0)
    oval_w = max_x - min_x
    oval_h = max_y - min_y
    if oval_w <= 0 or oval_h <= 0:
        raise SegmentationFailure("face outline has no area")

    chin_y = int(round(float(points[CHIN_TIP, 1]) * height))
    chin_y = min(max(chin_y, 0), height)

    pad_x = oval_w * head_x_padding
    pad_top = oval_h * head_top_padding

    head_x = int(math.floor(max(0.0, min_x - pad_x)))
    head_y = int(math.floor(max(0.0, min_y - pad_top)))
    head_w = int(round(min(width - head_x, oval_w + 2 * pad_x)))
    head_bottom = min(height, chin_y + overlap_px)
    head_h = min(height - head_y, head_bottom - head_y)

    if head_w <= 0 or head_h <= 0:
        raise SegmentationFailure(f"head crop is empty ({head_w}x{head_h})")

    body_h = max(0, height - chin_y)

    return CropMetadata(
        head_x=head_x,
        head_y=head_y,
        head_width=head_w,
        head_height=head_h,
        body_x=0,
        body_y_start=chin_y,
        body_width=width,
        body_height=body_h,
        original_width=width,
        original_height=height,
        overlap_used=overlap_px,
    )


def crop_head_and_body(
    frame: np.ndarray,
    landmarks: Optional[LandmarkSet],
    mask: Optional[np.ndarray],
    overlap_px: int = 10,
    head_x_padding: float = 0.4,
    head_top_padding: float = 1.0,
) -> CropResult:
    """Produce head image, body image and crop metadata for one snapshot.

    Raises:
        SegmentationFailure: no mask, no landmarks, or degenerate box.
    """
    if mask is None or np.asarray(mask).size == 0:
        raise SegmentationFailure("person mask unavailable")
    if landmarks is None:
        raise SegmentationFailure("no face landmarks for this capture")

    h, w = frame.shape[:2]
    meta = compute_crop_metadata(
        landmarks, w, h,
        overlap_px=overlap_px,
        head_x_padding=head_x_padding,
        head_top_padding=head_top_padding,
    )

    person = apply_mask(frame, mask)

    head = person[
        meta.head_y:meta.head_y + meta.head_height,
        meta.head_x:meta.head_x + meta.head_width,
    ].copy()

    body = None
    if meta.body_height > 0:
        body = person[meta.body_y_start:h, 0:w].copy()

    _log.info(
        "Crop complete — head=(%d,%d %dx%d) body_y=%d body_h=%d",
        meta.head_x, meta.head_y, meta.head_width, meta.head_height,
        meta.body_y_start, meta.body_height,
    )
    return CropResult(head_image=head, body_image=body, metadata=meta)


def crop_from_config(frame, landmarks, mask, config: dict) -> CropResult:
    crop = config.get("crop", {})
    return crop_head_and_body(
        frame, landmarks, mask,
        overlap_px=int(crop.get("overlap_px", 10)),
        head_x_padding=float(crop.get("head_x_padding", 0.4)),
        head_top_padding=float(crop.get("head_top_padding", 1.0)),
    )
