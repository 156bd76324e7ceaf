"""
Suit-Booth — Transform Service Client
=====================================
HTTP client for the external "dress-up" service.

Request:   POST <endpoint>, multipart field ``image`` = body.png
Success:   2xx JSON {"image": "data:image/png;base64,..."}
Error:     non-2xx JSON {"error": "..."}

Every failure (connection, timeout, bad status, bad body, oversize
upload) surfaces as NetworkFailure.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import requests

from booth_compositor import data_uri_to_bytes, decode_image, encode_png
from booth_types import CompositionFailure, NetworkFailure

_log = logging.getLogger("BoothTransform")

DEFAULT_ENDPOINT = "http://localhost:8787/api/transform/suit/camera"
DEFAULT_TIMEOUT_S = 60.0
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class TransformClient:
    """Sends body crops to the transform service."""

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint
        self.timeout_s = timeout_s
        self.max_upload_bytes = max_upload_bytes
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config: dict) -> "TransformClient":
        t = config.get("transform", {})
        return cls(
            endpoint=t.get("endpoint", DEFAULT_ENDPOINT),
            timeout_s=float(t.get("timeout_s", DEFAULT_TIMEOUT_S)),
            max_upload_bytes=int(t.get("max_upload_bytes", DEFAULT_MAX_UPLOAD_BYTES)),
        )

    def transform(self, body_png: bytes) -> bytes:
        """Send a body PNG, return the transformed PNG bytes.

        Raises:
            NetworkFailure: on any transport or protocol failure.
        """
        if not body_png:
            raise NetworkFailure("no body image to send")
        if len(body_png) > self.max_upload_bytes:
            raise NetworkFailure(
                f"body image is {len(body_png)} bytes "
                f"(limit {self.max_upload_bytes})"
            )

        files = {"image": ("body.png", body_png, "image/png")}
        _log.info("POST %s (%d bytes)", self.endpoint, len(body_png))

        try:
            response = self._session.post(self.endpoint, files=files, timeout=self.timeout_s)
        except requests.Timeout as e:
            raise NetworkFailure(f"transform timed out after {self.timeout_s:.0f}s") from e
        except requests.RequestException as e:
            raise NetworkFailure(f"transform service unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.ok:
            detail = payload.get("error") if isinstance(payload, dict) else None
            raise NetworkFailure(
                f"transform service returned {response.status_code}"
                + (f": {detail}" if detail else "")
            )

        if not isinstance(payload, dict):
            raise NetworkFailure("transform response is not JSON")
        image = payload.get("image")
        if not isinstance(image, str) or not image:
            raise NetworkFailure("transform response has no image")

        try:
            return data_uri_to_bytes(image)
        except CompositionFailure as e:
            raise NetworkFailure(f"transform response image is malformed: {e}") from e

    def close(self) -> None:
        self._session.close()


class LocalSepiaTransform:
    """Offline stand-in for the service: applies a 60% sepia tone locally.

    Used when no endpoint is configured, so the full capture → dress-up →
    composite flow can still be exercised.
    """

    def __init__(self, amount: float = 0.6):
        self.amount = amount
        self.endpoint = None

    def sepia_matrix(self) -> np.ndarray:
        """RGB→RGB sepia matrix interpolated from identity by ``amount``."""
        k = 1.0 - self.amount
        return np.array([
            [0.393 + 0.607 * k, 0.769 - 0.769 * k, 0.189 - 0.189 * k],
            [0.349 - 0.349 * k, 0.686 + 0.314 * k, 0.168 - 0.168 * k],
            [0.272 - 0.272 * k, 0.534 - 0.534 * k, 0.131 + 0.869 * k],
        ], dtype=np.float32)

    def transform(self, body_png: bytes) -> bytes:
        try:
            img = decode_image(body_png)
        except CompositionFailure as e:
            raise NetworkFailure(f"local transform could not read body: {e}") from e

        rgb = img[:, :, 2::-1].astype(np.float32)
        toned = np.clip(rgb @ self.sepia_matrix().T, 0, 255)
        out = img.copy()
        out[:, :, :3] = np.round(toned[:, :, ::-1]).astype(np.uint8)
        _log.info("Local sepia transform applied (%dx%d)", img.shape[1], img.shape[0])
        return encode_png(out)

    def close(self) -> None:
        pass


def create_transform(config: dict):
    """Service client when an endpoint is configured, local sepia otherwise."""
    endpoint = config.get("transform", {}).get("endpoint")
    if not endpoint:
        _log.warning("No transform endpoint configured; using local sepia transform")
        return LocalSepiaTransform()
    return TransformClient.from_config(config)
