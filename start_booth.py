"""
Suit-Booth — Launcher
=====================
Main entry point for the suit photo booth. Opens the camera preview
with the alignment guide and maps keys to booth commands.

Keys:
  R      arm (blink to start the countdown)
  SPACE  manual capture
  D      dress up the captured body
  S      save (composite if available, otherwise the raw capture)
  B      back / discard the capture
  Q/ESC  quit

Usage:
  python start_booth.py
  python start_booth.py --camera 1 --endpoint http://localhost:8787/api/transform/suit/camera
"""

import argparse
import sys
import os
import time
from typing import Optional

import cv2
import numpy as np

# Add root
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from booth_engine import BoothEngine
from booth_hud import BoothHUD
from booth_types import BoothError, CaptureState, FrameResult, SetupFailure
from booth_utils_core import setup_logger

_log = setup_logger("BoothLauncher")

WINDOW_NAME = "Suit-Booth"


def _preview_frame(engine: BoothEngine) -> Optional[np.ndarray]:
    """BGR image for the non-live states (capture preview / composite)."""
    sm = engine.state_machine
    if sm.state == CaptureState.COMPOSITED and engine.composite_image is not None:
        img = engine.composite_image
    elif sm.captured_frame is not None:
        img = sm.captured_frame
    else:
        return None
    if img.ndim == 3 and img.shape[2] == 4:
        # Flatten transparency over white
        alpha = img[:, :, 3:4].astype(np.float32) / 255.0
        img = (img[:, :, :3].astype(np.float32) * alpha + 255.0 * (1 - alpha)).astype(np.uint8)
    return img


def handle_key(engine: BoothEngine, key: int) -> bool:
    """Dispatch one key press. Returns False when the user asked to quit."""
    if key in (ord('q'), ord('Q'), 27):
        return False
    if key in (ord('r'), ord('R')):
        if engine.state_machine.armed:
            engine.disarm()
        else:
            engine.arm()
    elif key == ord(' '):
        engine.manual_capture()
    elif key in (ord('d'), ord('D')):
        engine.dress_up()
    elif key in (ord('s'), ord('S')):
        if engine.composite_image is not None:
            engine.save_composite()
        else:
            engine.save_capture()
    elif key in (ord('b'), ord('B')):
        engine.discard()
    return True


def main():
    parser = argparse.ArgumentParser(description="Suit-Booth Launcher")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--camera", type=int, default=None, help="Preferred (environment) camera index")
    parser.add_argument("--endpoint", type=str, default=None, help="Transform service URL ('' = local sepia)")
    parser.add_argument("--headless", action="store_true", help="Run without UI window")
    parser.add_argument("--windowed", action="store_true", help="Run in windowed mode (default is fullscreen)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    args = parser.parse_args()

    overrides = {}
    if args.camera is not None:
        overrides["camera"] = {"environment_id": args.camera}
    if args.endpoint is not None:
        overrides["transform"] = {"endpoint": args.endpoint}
    if args.debug:
        overrides["logging"] = {"level": "DEBUG"}

    print("=" * 60)
    print("  Suit-Booth — Starting...")
    print(f"  Config:   {args.config or 'config.yaml'}")
    print(f"  Mode:     {'Windowed' if args.windowed else 'Fullscreen'}")
    print("  Keys:     R arm | SPACE capture | D dress up | S save | B back | Q quit")
    print("=" * 60)

    engine = None
    hud = None

    try:
        engine = BoothEngine(config=overrides, config_path=args.config)
        hud = BoothHUD(engine.geometry)
        engine.start()

        if not args.headless:
            if args.windowed:
                cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_AUTOSIZE)
            else:
                cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)
                cv2.setWindowProperty(WINDOW_NAME, cv2.WND_PROP_FULLSCREEN, cv2.WINDOW_FULLSCREEN)

        _log.info("Booth active. Press 'Q' or 'ESC' to exit.")
        last_result = None

        while engine.running:
            key = cv2.waitKey(1) & 0xFF
            if key != 255 and not handle_key(engine, key):
                _log.info("Exit key pressed — shutting down")
                break

            hud.push_messages(engine.pop_messages())

            result = engine.get_latest_result()
            if result is not None:
                last_result = result

            if engine.state_machine.is_tracking and last_result is not None:
                frame = last_result.frame
                shown = FrameResult(
                    frame=frame, timestamp=last_result.timestamp,
                    landmarks=last_result.landmarks, aligned=last_result.aligned,
                    blink=last_result.blink, state=engine.state_machine.state.value,
                    countdown=engine.state_machine.countdown, fps=last_result.fps,
                    camera_health=last_result.camera_health,
                )
            else:
                frame = _preview_frame(engine)
                shown = FrameResult(
                    frame=frame, timestamp=time.monotonic(), landmarks=None,
                    aligned=False, blink=False, state=engine.state_machine.state.value,
                    countdown=None, fps=0.0, camera_health={},
                )

            if frame is None:
                time.sleep(0.005)
                continue

            annotated, _ = hud.render(frame, shown)
            if not args.headless:
                cv2.imshow(WINDOW_NAME, annotated)

    except SetupFailure as e:
        _log.error("Setup failed: %s", e)
    except KeyboardInterrupt:
        _log.info("Interrupted by user")
    except BoothError as e:
        _log.error("Booth error: %s", e)
    finally:
        _log.info("Cleaning up...")
        if engine is not None:
            engine.teardown()
        if not args.headless:
            cv2.destroyAllWindows()
            cv2.waitKey(1)
        _log.info("Shutdown complete")


if __name__ == "__main__":
    main()
