"""
Suit-Booth — BoothEngine (Session Core)
=======================================
The central orchestrator of one booth session.

Architecture:
  1. Frame-loop thread: read frame → landmarks → alignment/blink →
     state machine → (on trigger) capture + crop
  2. Main thread (HUD): sends commands, renders the latest FrameResult
  3. Dress-up worker: one background thread per transform request

Guarantees:
  - Backpressure: the next frame is read only after the previous
    inference has been applied, so at most one inference is in flight
  - Inference is suspended while Captured / Segmenting / DressUpInFlight
  - Every asynchronous continuation re-checks the SessionHandle before
    touching session state
  - teardown(): stop loop → stop stream → release models, idempotent
"""

import gc
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from itertools import count
from typing import Callable, Optional

import numpy as np
import psutil

from booth_camera import open_camera
from booth_compositor import composite, encode_png, save_download
from booth_cropper import crop_from_config
from booth_face_pipeline import LandmarkTracker
from booth_logger import get_logger
from booth_models import get_model_cache
from booth_segmentation import SegmentationEngine
from booth_state_machine import CaptureStateMachine
from booth_transform_client import create_transform
from booth_types import (
    CaptureState,
    CompositionFailure,
    CropResult,
    FrameResult,
    NetworkFailure,
    SegmentationFailure,
    SetupFailure,
)
from booth_utils_core import (
    BlinkDetector,
    GuideGeometry,
    evaluate_alignment,
    load_config,
    merge_config,
)

_log = logging.getLogger("BoothEngine")

_session_ids = count(1)


@dataclass
class SessionHandle:
    """Shared liveness flag for one camera session."""
    session_id: int = field(default_factory=lambda: next(_session_ids))
    active: bool = True

    def deactivate(self) -> None:
        self.active = False


class BoothEngine:
    """Camera → tracker → state machine → capture → dress-up pipeline."""

    def __init__(
        self,
        config: Optional[dict] = None,
        config_path: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = merge_config(load_config(config_path), config)
        self._clock = clock

        log_cfg = self.config["logging"]
        logging.getLogger().setLevel(getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO))
        self.logger = get_logger(log_cfg.get("log_dir", "logs"))
        self._frame_log_interval = max(1, int(log_cfg.get("frame_log_interval", 30)))

        self.geometry = GuideGeometry.from_config(self.config)
        self.blink = BlinkDetector.from_config(self.config)
        self.state_machine = CaptureStateMachine.from_config(self.config, clock=clock)
        self.state_machine.add_listener(self._on_transition)

        cfg = self.config
        self._tracker_cache = get_model_cache(
            "landmarker", lambda: LandmarkTracker.from_config(cfg))
        self._segmenter_cache = get_model_cache(
            "segmenter", lambda: SegmentationEngine.from_config(cfg))

        self.camera = None
        self.tracker = None
        self.segmenter = None
        self.transform = create_transform(self.config)

        self.handle: Optional[SessionHandle] = None
        self.running = False
        self._lock = threading.RLock()
        self._frame_thread: Optional[threading.Thread] = None
        self._dress_up_thread: Optional[threading.Thread] = None
        self._torn_down = False

        self._aligned = False
        self._latest_frame: Optional[np.ndarray] = None
        self._latest_landmarks = None
        self.crop_result: Optional[CropResult] = None
        self.composite_image: Optional[np.ndarray] = None

        self.result_queue = queue.Queue(maxsize=2)
        self._frame_times = deque(maxlen=60)
        self._frames_processed = 0
        self._memory_baseline = psutil.Process().memory_info().rss

        self.logger.log({"event": "engine_init", "config": self.config})

    # ── Lifecycle ─────────────────────────────────────────────

    def setup(self) -> SessionHandle:
        """Acquire camera and models, then enter Tracking.

        Raises:
            SetupFailure: camera or a model could not be initialized. Any
                          resource acquired before the failure is released.
        """
        if self._torn_down:
            # Previous session closed the transform's HTTP session
            self.transform = create_transform(self.config)
        try:
            self.camera = open_camera(self.config)
            self.tracker = self._tracker_cache.get()
            self.segmenter = self._segmenter_cache.get()
        except SetupFailure as e:
            self.logger.error("Session setup failed", e)
            self.teardown()
            raise

        self._torn_down = False
        self.handle = SessionHandle()
        self.blink.reset()
        self.state_machine.mark_ready()
        self.logger.log({
            "event": "session_started",
            "session_id": self.handle.session_id,
            "camera": self.camera.get_health_status(),
        }, level="SYSTEM")
        return self.handle

    def start(self) -> None:
        """Set up (if needed) and start the frame-loop thread.

        No-op while a frame loop is already running: a second loop would
        put a second tracker inference in flight.
        """
        thread = self._frame_thread
        if thread is not None and thread.is_alive() and self.running:
            _log.debug("Frame loop already running")
            return
        if self.handle is None or not self.handle.active:
            self.setup()
        self.running = True
        self._frame_thread = threading.Thread(
            target=self._frame_loop, args=(self.handle,), daemon=True)
        self._frame_thread.start()
        self.logger.log({"event": "engine_started"})

    def stop(self) -> None:
        self.teardown()

    def teardown(self) -> None:
        """Cancel frame loop, stop the stream, release both models. Idempotent."""
        if self._torn_down:
            return
        self._torn_down = True

        # 1. Cancel pending frame work
        if self.handle is not None:
            self.handle.deactivate()
        self.running = False
        thread = self._frame_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._frame_thread = None

        # 2. Stop the video stream
        if self.camera is not None:
            self.camera.release()
            self.camera = None

        # 3. Release model handles
        self.tracker = None
        self.segmenter = None
        self._tracker_cache.release()
        self._segmenter_cache.release()

        # 4. Close the transform's HTTP session
        self.transform.close()

        with self._lock:
            self.state_machine.reset()
            self.blink.reset()
            self.crop_result = None
            self.composite_image = None
            self._latest_frame = None
            self._latest_landmarks = None

        self.logger.log({"event": "session_teardown"}, level="SYSTEM")
        _log.info("Session torn down")

    # ── Frame processing ──────────────────────────────────────

    def _frame_loop(self, handle: SessionHandle) -> None:
        """Thread 1: one frame in flight at a time."""
        while self.running and handle.active:
            try:
                if not self.step(handle):
                    time.sleep(0.01)
            except Exception as e:
                self.logger.error(f"Frame loop error: {e}", e)
                time.sleep(0.05)

    def step(self, handle: Optional[SessionHandle] = None) -> bool:
        """Read and process one frame. Returns False when nothing was processed."""
        handle = handle or self.handle
        if handle is None or not handle.active or self.camera is None:
            return False
        if self.state_machine.inference_suspended:
            return False

        ok, frame, ts = self.camera.read_validated_frame()
        if not ok:
            return False
        result = self.process_frame(frame, ts, handle)
        return result is not None

    def process_frame(
        self,
        frame: np.ndarray,
        ts: float,
        handle: Optional[SessionHandle] = None,
    ) -> Optional[FrameResult]:
        """Full pipeline for one frame; publishes and returns a FrameResult."""
        handle = handle or self.handle
        t_start = time.monotonic()

        tracker = self.tracker
        landmarks = tracker.detect(frame) if tracker is not None and tracker.is_ready else None

        # Inference may finish after teardown
        if handle is None or not handle.active:
            return None

        captured = False
        with self._lock:
            sm = self.state_machine
            if sm.inference_suspended:
                return None

            aligned = evaluate_alignment(landmarks, self.geometry)
            blink = False
            if sm.blink_enabled and landmarks is not None:
                blink = self.blink.update(landmarks)
            elif not sm.blink_enabled:
                self.blink.reset()

            self._aligned = aligned
            self._latest_frame = frame
            self._latest_landmarks = landmarks

            sm.on_frame(aligned, blink)
            captured = sm.tick()
            state = sm.state.value
            countdown = sm.countdown

        if captured:
            self._run_capture(handle)

        t_total = time.monotonic() - t_start
        self._frame_times.append(t_total)
        fps = len(self._frame_times) / sum(self._frame_times) if sum(self._frame_times) > 0 else 0.0

        result = FrameResult(
            frame=frame,
            timestamp=ts,
            landmarks=landmarks,
            aligned=aligned,
            blink=blink,
            state=state,
            countdown=countdown,
            fps=fps,
            camera_health=self.camera.get_health_status() if self.camera is not None else {},
        )
        self._publish(result)

        self._frames_processed += 1
        if self._frames_processed % self._frame_log_interval == 0:
            self._log_frame(result, t_total)
        return result

    def _publish(self, result: FrameResult) -> None:
        try:
            self.result_queue.put_nowait(result)
        except queue.Full:
            try:
                self.result_queue.get_nowait()  # Drop old result
            except queue.Empty:
                pass
            self.result_queue.put_nowait(result)

    def _log_frame(self, result: FrameResult, t_total: float) -> None:
        current_mem = psutil.Process().memory_info().rss
        if current_mem - self._memory_baseline > 500 * 1024 * 1024:
            gc.collect()
            self.logger.warn("Memory growth > 500MB, GC forced")
        self.logger.log_frame({
            "state": result.state,
            "aligned": result.aligned,
            "face": result.landmarks is not None,
            "fps": result.fps,
            "total_ms": t_total * 1000,
            "memory_mb": current_mem / 1e6,
        })

    def get_latest_result(self) -> Optional[FrameResult]:
        """HUD (main thread) calls this to get render data."""
        try:
            return self.result_queue.get_nowait()
        except queue.Empty:
            return None

    # ── Commands ──────────────────────────────────────────────

    def arm(self) -> bool:
        with self._lock:
            self.blink.reset()
            return self.state_machine.arm(self._aligned)

    def disarm(self) -> bool:
        with self._lock:
            return self.state_machine.disarm()

    def manual_capture(self) -> bool:
        """Capture now; requires alignment. Bypasses blink and countdown."""
        with self._lock:
            if self._latest_frame is None:
                self.state_machine.notify("No camera frame yet")
                return False
            if not self.state_machine.manual_capture(self._aligned):
                return False
        self._run_capture(self.handle, manual=True)
        return True

    def discard(self) -> bool:
        with self._lock:
            ok = self.state_machine.discard()
            if ok:
                self.crop_result = None
                self.composite_image = None
                self.blink.reset()
                self.logger.log({"event": "capture_discarded"})
            return ok

    def dress_up(self, background: bool = True) -> bool:
        """Send the body crop to the transform service and recomposite."""
        with self._lock:
            crop = self.crop_result
            has_body = crop is not None and crop.body_image is not None
            if not self.state_machine.request_dress_up(has_body):
                return False
            handle = self.handle

        # From here on the state is DressUpInFlight; any error must release it
        try:
            self.logger.log_dress_up("requested", endpoint=getattr(self.transform, "endpoint", None))
            if background:
                self._dress_up_thread = threading.Thread(
                    target=self._run_dress_up, args=(handle, crop), daemon=True)
                self._dress_up_thread.start()
            else:
                self._run_dress_up(handle, crop)
        except Exception as e:
            self._dress_up_failed(handle, e)
        return True

    def wait_for_dress_up(self, timeout: Optional[float] = None) -> None:
        thread = self._dress_up_thread
        if thread is not None:
            thread.join(timeout)

    def save_capture(self) -> Optional[str]:
        """Write the raw snapshot to the download directory."""
        frame = self.state_machine.captured_frame
        if frame is None:
            self.state_machine.notify("No captured photo to save")
            return None
        out = self.config["output"]
        return save_download(frame, out["download_dir"], out["capture_filename"])

    def save_composite(self) -> Optional[str]:
        """Write the dressed-up composite to the download directory."""
        if self.composite_image is None:
            self.state_machine.notify("No composite image to save")
            return None
        out = self.config["output"]
        return save_download(self.composite_image, out["download_dir"], out["composite_filename"])

    def pop_messages(self) -> list:
        with self._lock:
            return self.state_machine.pop_messages()

    # ── Capture & dress-up workers ────────────────────────────

    def _run_capture(self, handle: Optional[SessionHandle], manual: bool = False) -> None:
        """Snapshot → segmentation → crop → PreviewReady (or back to Tracking).

        Any failure, expected or not, returns the session to Tracking;
        there is no automatic retry.
        """
        with self._lock:
            snapshot = None if self._latest_frame is None else self._latest_frame.copy()
            landmarks = self._latest_landmarks
            self.state_machine.captured_frame = snapshot
            self.state_machine.begin_segmentation()

        try:
            self.logger.log_capture(landmarks is not None, manual=manual)
            if snapshot is None:
                raise SegmentationFailure("no snapshot")
            segmenter = self.segmenter
            if segmenter is None or not segmenter.is_ready:
                raise SegmentationFailure("segmenter not ready")
            mask = segmenter.segment(snapshot)
            if handle is None or not handle.active:
                return
            crop = crop_from_config(snapshot, landmarks, mask, self.config)
        except SegmentationFailure as e:
            if handle is not None and handle.active:
                with self._lock:
                    self.state_machine.segmentation_failed(str(e))
                self.logger.warn("Capture segmentation failed", {"reason": str(e)})
            return
        except Exception as e:
            if handle is not None and handle.active:
                with self._lock:
                    self.state_machine.segmentation_failed(str(e) or type(e).__name__)
                self.logger.error("Capture processing error", e)
            return

        with self._lock:
            if handle is None or not handle.active:
                return
            self.crop_result = crop
            self.state_machine.segmentation_succeeded(crop.metadata)
        self.logger.log_crop(crop.metadata, has_body=crop.body_image is not None)

    def _run_dress_up(self, handle: Optional[SessionHandle], crop: CropResult) -> None:
        """Body PNG → transform → composite. Every failure returns to PreviewReady."""
        try:
            body_png = encode_png(crop.body_image)
            transformed = self.transform.transform(body_png)
            if handle is None or not handle.active:
                return
            final = composite(crop.head_image, transformed, crop.metadata)
        except Exception as e:
            self._dress_up_failed(handle, e)
            return

        with self._lock:
            if handle is None or not handle.active:
                return
            self.composite_image = final
            self.state_machine.dress_up_succeeded()
        self.logger.log_dress_up("complete", shape=final.shape)

    def _dress_up_failed(self, handle: Optional[SessionHandle], exc: Exception) -> None:
        if handle is None or not handle.active:
            return
        reason = str(exc) or type(exc).__name__
        with self._lock:
            self.state_machine.dress_up_failed(reason)
        if isinstance(exc, (NetworkFailure, CompositionFailure)):
            self.logger.log_dress_up("failed", reason=reason, kind=type(exc).__name__)
        else:
            self.logger.error("Unexpected dress-up error", exc)

    # ── Private helpers ───────────────────────────────────────

    def _on_transition(self, old: CaptureState, new: CaptureState) -> None:
        if new in (CaptureState.TRACKING, CaptureState.COUNTDOWN):
            self.blink.reset()
        session_id = self.handle.session_id if self.handle is not None else None
        self.logger.log_transition(old.value, new.value, session_id)

    def __enter__(self) -> "BoothEngine":
        return self

    def __exit__(self, *args) -> None:
        self.teardown()
