"""
Suit-Booth — Compositor
=======================
Recombines a head image and a (possibly transformed) body image into
a composite the size of the original snapshot.

Placement is replayed from CropMetadata: body first at
(0, body_y_start), head second at (head_x, head_y). Both draws are
plain source-over at natural size, so opaque pixels land exactly and
the head's overlap band covers the seam.

Also holds the PNG / data-URI codec helpers and the download sink.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Optional, Union

import cv2
import numpy as np

from booth_types import CompositionFailure, CropMetadata

_log = logging.getLogger("BoothCompositor")

ImageSource = Union[np.ndarray, bytes, str]

_DATA_URI_PREFIX = "data:image/png;base64,"


# ── Codec helpers ─────────────────────────────────────────────

def encode_png(image: np.ndarray) -> bytes:
    """Encode a BGR/BGRA uint8 image as PNG bytes."""
    ok, buf = cv2.imencode(".png", image)
    if not ok:
        raise CompositionFailure("PNG encoding failed")
    return buf.tobytes()


def to_data_uri(png_bytes: bytes) -> str:
    return _DATA_URI_PREFIX + base64.b64encode(png_bytes).decode("ascii")


def data_uri_to_bytes(uri: str) -> bytes:
    """Decode a ``data:<mime>;base64,<payload>`` URI (or bare base64)."""
    if uri.startswith("data:"):
        header, sep, payload = uri.partition(",")
        if not sep:
            raise CompositionFailure(f"data URI has no payload: {header[:40]}")
    else:
        payload = uri
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CompositionFailure(f"invalid base64 image data: {e}") from e


def decode_image(source: ImageSource) -> np.ndarray:
    """Decode an image source into a BGRA uint8 array.

    Accepts a BGR/BGRA/grayscale array, PNG/JPEG bytes, or a data URI.

    Raises:
        CompositionFailure: the source cannot be decoded.
    """
    if isinstance(source, np.ndarray):
        img = source
    else:
        raw = data_uri_to_bytes(source) if isinstance(source, str) else bytes(source)
        if not raw:
            raise CompositionFailure("empty image data")
        img = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
        if img is None:
            raise CompositionFailure("image failed to decode")

    if img.dtype != np.uint8 or img.size == 0:
        raise CompositionFailure(f"unsupported image ({img.dtype}, {img.shape})")
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    if img.shape[2] == 3:
        return cv2.cvtColor(img, cv2.COLOR_BGR2BGRA)
    if img.shape[2] == 4:
        return img
    raise CompositionFailure(f"unsupported channel count {img.shape[2]}")


# ── Drawing ───────────────────────────────────────────────────

def draw_over(canvas: np.ndarray, image: np.ndarray, x: int, y: int) -> None:
    """Source-over ``image`` onto BGRA ``canvas`` at (x, y), clipped, in place."""
    ch, cw = canvas.shape[:2]
    ih, iw = image.shape[:2]

    x0, y0 = max(0, x), max(0, y)
    x1, y1 = min(cw, x + iw), min(ch, y + ih)
    if x1 <= x0 or y1 <= y0:
        return

    src = image[y0 - y:y1 - y, x0 - x:x1 - x].astype(np.float32)
    dst = canvas[y0:y1, x0:x1].astype(np.float32)

    a_s = src[:, :, 3:4] / 255.0
    a_d = dst[:, :, 3:4] / 255.0
    a_out = a_s + a_d * (1.0 - a_s)

    color = src[:, :, :3] * a_s + dst[:, :, :3] * a_d * (1.0 - a_s)
    safe = np.where(a_out > 0, a_out, 1.0)
    color = np.where(a_out > 0, color / safe, 0.0)

    out = np.empty_like(src)
    out[:, :, :3] = color
    out[:, :, 3:4] = a_out * 255.0
    canvas[y0:y1, x0:x1] = np.clip(np.round(out), 0, 255).astype(np.uint8)


def composite(
    head: ImageSource,
    body: Optional[ImageSource],
    metadata: CropMetadata,
) -> np.ndarray:
    """Rebuild the full snapshot from its head and body parts.

    Args:
        head: Head image (array, PNG bytes or data URI).
        body: Body image, original or transformed; None draws head only.
        metadata: Placement recorded by the cropper.

    Returns:
        BGRA uint8 image of size (original_height, original_width).

    Raises:
        CompositionFailure: an input fails to decode or metadata is empty.
    """
    if metadata.original_width <= 0 or metadata.original_height <= 0:
        raise CompositionFailure("crop metadata has no canvas size")

    head_img = decode_image(head)
    body_img = decode_image(body) if body is not None else None

    canvas = np.zeros(
        (metadata.original_height, metadata.original_width, 4), dtype=np.uint8,
    )

    if body_img is not None:
        expected = (metadata.body_height, metadata.body_width)
        if body_img.shape[:2] != expected:
            _log.warning(
                "Body size %s differs from crop %s; drawing at natural size",
                body_img.shape[:2], expected,
            )
        draw_over(canvas, body_img, metadata.body_x, metadata.body_y_start)

    # Head strictly after body: its overlap band hides the seam
    draw_over(canvas, head_img, metadata.head_x, metadata.head_y)

    _log.info("Composite built — %dx%d", metadata.original_width, metadata.original_height)
    return canvas


# ── Download sink ─────────────────────────────────────────────

def save_download(image: np.ndarray, directory: str, filename: str) -> str:
    """Write ``image`` as PNG into ``directory``; returns the file path."""
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, filename)
    with open(path, "wb") as f:
        f.write(encode_png(image))
    _log.info("Saved %s", path)
    return path
