"""
Suit-Booth — Guide Overlay (HUD)
================================
Two layers:
  - build_guide_instructions(): pure function of (size, aligned,
    countdown) → drawing primitives. No OpenCV, easy to test.
  - BoothHUD.render(): rasterizes those primitives plus the status bar
    and transient messages onto a BGR frame with OpenCV.
"""

import math
import time
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from booth_types import BoothMessage, FrameResult
from booth_utils_core import DEFAULT_GEOMETRY, GuideGeometry

_log = logging.getLogger("BoothHUD")

# RGBA, alpha in [0, 1]
GUIDE_COLOR_ALIGNED = (74, 222, 128, 0.9)
GUIDE_COLOR_MISALIGNED = (239, 68, 68, 0.9)
COUNTDOWN_COLOR = (255, 255, 255, 0.95)


@dataclass
class GuideInstruction:
    """One overlay drawing primitive in pixel space.

    kind:
      "ellipse" — center, axes (semi-axes)
      "line"    — start, end
      "text"    — text, position (centre), font_size
    """
    kind: str
    color: Tuple[int, int, int, float]
    line_width: float = 1.0
    dash: Optional[Tuple[float, float]] = None
    center: Tuple[float, float] = (0.0, 0.0)
    axes: Tuple[float, float] = (0.0, 0.0)
    start: Tuple[float, float] = (0.0, 0.0)
    end: Tuple[float, float] = (0.0, 0.0)
    text: str = ""
    position: Tuple[float, float] = (0.0, 0.0)
    font_size: float = 0.0
    name: str = ""


def build_guide_instructions(
    width: int,
    height: int,
    aligned: bool,
    countdown: Optional[int] = None,
    geometry: GuideGeometry = DEFAULT_GEOMETRY,
) -> List[GuideInstruction]:
    """Guide ellipse, shoulder/centre/eye/mouth lines and countdown digit."""
    W, H = float(width), float(height)
    color = GUIDE_COLOR_ALIGNED if aligned else GUIDE_COLOR_MISALIGNED

    main_width = W * 0.008
    main_dash = (W * 0.02, W * 0.01)
    fine_width = W * 0.004
    fine_dash = (W * 0.005, W * 0.005)

    cx = W * geometry.ellipse_center_x
    ellipse_h = H * geometry.ellipse_ratio_y
    ellipse_w = ellipse_h * geometry.ellipse_aspect_ratio
    ellipse_cy = H * geometry.ellipse_center_y

    shoulder_y = H * geometry.shoulder_line_y_ratio
    shoulder_half = W * geometry.shoulder_line_width_ratio / 2.0

    eye_y = ellipse_cy - ellipse_h * 0.1
    mouth_y = ellipse_cy + ellipse_h * 0.25

    instructions = [
        GuideInstruction(
            kind="ellipse", name="face", color=color,
            line_width=main_width, dash=main_dash,
            center=(cx, ellipse_cy), axes=(ellipse_w / 2.0, ellipse_h / 2.0),
        ),
        GuideInstruction(
            kind="line", name="shoulders", color=color,
            line_width=main_width, dash=main_dash,
            start=(cx - shoulder_half, shoulder_y), end=(cx + shoulder_half, shoulder_y),
        ),
        GuideInstruction(
            kind="line", name="center", color=color,
            line_width=main_width, dash=main_dash,
            start=(cx, H * geometry.center_line_top_y_ratio),
            end=(cx, H * geometry.center_line_bottom_y_ratio),
        ),
        GuideInstruction(
            kind="line", name="eyes", color=color,
            line_width=fine_width, dash=fine_dash,
            start=(cx - ellipse_w * 0.3, eye_y), end=(cx + ellipse_w * 0.3, eye_y),
        ),
        GuideInstruction(
            kind="line", name="mouth", color=color,
            line_width=fine_width, dash=fine_dash,
            start=(cx - ellipse_w * 0.2, mouth_y), end=(cx + ellipse_w * 0.2, mouth_y),
        ),
    ]

    if countdown is not None and countdown > 0:
        instructions.append(GuideInstruction(
            kind="text", name="countdown", color=COUNTDOWN_COLOR,
            text=str(countdown), position=(W / 2.0, H / 2.0),
            font_size=min(W, H) * 0.25,
        ))

    return instructions


def _bgr(color: Sequence[float]) -> Tuple[int, int, int]:
    r, g, b = color[:3]
    return int(b), int(g), int(r)


def _dashed_polyline(img, points: np.ndarray, color, thickness: int, dash) -> None:
    """Draw a polyline with an on/off dash pattern along its arc length."""
    if dash is None:
        cv2.polylines(img, [np.round(points).astype(np.int32)], False, color, thickness, cv2.LINE_AA)
        return
    on, off = max(dash[0], 1.0), max(dash[1], 1.0)
    period = on + off
    travelled = 0.0
    for p, q in zip(points[:-1], points[1:]):
        seg = float(np.hypot(*(q - p)))
        if seg == 0:
            continue
        pos = 0.0
        while pos < seg:
            phase = (travelled + pos) % period
            step = min((on - phase) if phase < on else (period - phase), seg - pos)
            if phase < on:
                a = p + (q - p) * (pos / seg)
                b = p + (q - p) * ((pos + step) / seg)
                cv2.line(img, (int(round(a[0])), int(round(a[1]))),
                         (int(round(b[0])), int(round(b[1]))), color, thickness, cv2.LINE_AA)
            pos += max(step, 1e-3)
        travelled += seg


def rasterize(frame: np.ndarray, instructions: List[GuideInstruction]) -> np.ndarray:
    """Draw guide instructions onto a copy of a BGR frame."""
    out = frame.copy()
    for ins in instructions:
        layer = out.copy()
        color = _bgr(ins.color)
        thickness = max(1, int(round(ins.line_width)))

        if ins.kind == "ellipse":
            t = np.linspace(0.0, 2.0 * math.pi, 181)
            pts = np.stack([
                ins.center[0] + ins.axes[0] * np.cos(t),
                ins.center[1] + ins.axes[1] * np.sin(t),
            ], axis=1)
            _dashed_polyline(layer, pts, color, thickness, ins.dash)
        elif ins.kind == "line":
            pts = np.array([ins.start, ins.end], dtype=np.float64)
            _dashed_polyline(layer, pts, color, thickness, ins.dash)
        elif ins.kind == "text":
            font = cv2.FONT_HERSHEY_DUPLEX
            base_h = cv2.getTextSize("0", font, 1.0, 2)[0][1]
            scale = ins.font_size / max(base_h, 1)
            weight = max(2, int(scale * 2))
            (tw, th), _ = cv2.getTextSize(ins.text, font, scale, weight)
            org = (int(ins.position[0] - tw / 2), int(ins.position[1] + th / 2))
            shadow = (org[0] + 4, org[1] + 4)
            cv2.putText(layer, ins.text, shadow, font, scale, (0, 0, 0), weight + 2, cv2.LINE_AA)
            cv2.putText(layer, ins.text, org, font, scale, color, weight, cv2.LINE_AA)
        else:
            _log.debug("Unknown instruction kind %r", ins.kind)
            continue

        alpha = float(ins.color[3])
        cv2.addWeighted(layer, alpha, out, 1 - alpha, 0, out)
    return out


class BoothHUD:
    """Guide overlay plus status bar and transient messages."""

    MESSAGE_COLORS = {
        "success": (0, 180, 0),
        "info": (200, 120, 0),
        "warning": (0, 165, 255),
        "error": (0, 0, 220),
    }

    def __init__(self, geometry: GuideGeometry = DEFAULT_GEOMETRY):
        self.geometry = geometry
        self._messages: List[BoothMessage] = []
        _log.info("BoothHUD initialized")

    def push_messages(self, messages: List[BoothMessage]) -> None:
        self._messages.extend(messages)

    def active_messages(self, now: Optional[float] = None) -> List[BoothMessage]:
        now = time.monotonic() if now is None else now
        self._messages = [m for m in self._messages if not m.is_expired(now)]
        return list(self._messages)

    def render(self, frame: np.ndarray, result: FrameResult) -> Tuple[np.ndarray, float]:
        """Draw the overlay onto a copy of ``frame``.

        Returns:
            (annotated_frame, hud_render_time_seconds)
        """
        t_hud_start = time.monotonic()
        if frame is None:
            return None, 0.0

        h, w = frame.shape[:2]
        show_guide = result.state in ("Tracking", "Armed", "CountdownRunning")
        if show_guide:
            viz = rasterize(frame, build_guide_instructions(
                w, h, result.aligned, result.countdown, self.geometry,
            ))
        else:
            viz = frame.copy()

        self._draw_status_bar(viz, result)
        self._draw_messages(viz)

        return viz, time.monotonic() - t_hud_start

    def _draw_status_bar(self, frame: np.ndarray, result: FrameResult) -> None:
        h, w = frame.shape[:2]
        bar_h = 40
        overlay = frame.copy()
        cv2.rectangle(overlay, (0, h - bar_h), (w, h), (0, 0, 0), -1)
        alpha = 0.6
        cv2.addWeighted(overlay, alpha, frame, 1 - alpha, 0, frame)

        label = "ALIGNED" if result.aligned else "ALIGN FACE"
        cv2.putText(frame, f"{result.state} | {label}", (10, h - 12),
            cv2.FONT_HERSHEY_SIMPLEX, 0.6, (255, 255, 255), 1)

        fps_text = f"FPS: {result.fps:.1f}"
        text_w = cv2.getTextSize(fps_text, cv2.FONT_HERSHEY_SIMPLEX, 0.6, 1)[0][0]
        cv2.putText(frame, fps_text, (w - text_w - 10, h - 12),
            cv2.FONT_HERSHEY_SIMPLEX, 0.6, (200, 200, 200), 1)

    def _draw_messages(self, frame: np.ndarray) -> None:
        y = 30
        for msg in self.active_messages():
            color = self.MESSAGE_COLORS.get(msg.level, (255, 255, 255))
            (tw, th), _ = cv2.getTextSize(msg.text, cv2.FONT_HERSHEY_SIMPLEX, 0.7, 2)
            cv2.rectangle(frame, (5, y - th - 8), (15 + tw, y + 8), (0, 0, 0), -1)
            cv2.rectangle(frame, (5, y - th - 8), (15 + tw, y + 8), color, 2)
            cv2.putText(frame, msg.text, (10, y), cv2.FONT_HERSHEY_SIMPLEX, 0.7, color, 2)
            y += th + 24
