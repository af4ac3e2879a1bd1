# scan_session.py
"""
Scan Session Controller and the frame decode loop it drives.

FrameLoop calls one step per refresh tick on a single thread and sleeps
between ticks. ScanSession.tick() is that step: it applies a finished
verification (if any), then reads the current frame and offers it to the
decode engine when the snapshot says so. A decoded value goes through the
debounce gate; an accepted one is verified on a one-worker executor so the
loop keeps ticking while the request is outstanding.

All state lives in one SessionSnapshot that is replaced wholesale under the
session lock. Entering IDLE or ERRORED releases the camera and cancels the
loop, whoever triggered it.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

import scan_state as st
from camera_helper import CameraError, CameraHandle
from qr_decoder import DecodeEngine, DecoderUnavailable, decode_snapshot, resolve_engine
from scan_state import ScanState, SessionSnapshot, TickPlan
from token_verify import Failed

logger = logging.getLogger(__name__)


class FrameLoop:
    """Cooperative tick scheduler: one `step()` per interval, on one thread.

    threaded=True runs the ticks on a daemon thread. threaded=False leaves the
    driving to the caller through pump() (the CLI does this so its preview
    window is serviced on the main thread).
    """

    def __init__(
        self,
        step: Callable[[], None],
        interval_s: float,
        *,
        threaded: bool = True,
        name: str = "frame-loop",
    ) -> None:
        self._step = step
        self.interval_s = max(0.0, float(interval_s))
        self._threaded = threaded
        self._name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self.ticks = 0

    @property
    def active(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop.clear()
        if self._threaded:
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def _run(self) -> None:
        next_t = time.monotonic()
        while not self._stop.is_set():
            self._tick_once()
            next_t += self.interval_s
            delay = next_t - time.monotonic()
            if delay < 0:
                # fell behind; do not try to catch up with a burst of ticks
                next_t = time.monotonic()
                delay = 0.0
            self._stop.wait(delay)

    def pump(self) -> bool:
        """Run one tick in the caller's thread. False once the loop is stopped."""
        if not self._running:
            return False
        self._tick_once()
        return True

    def _tick_once(self) -> None:
        self.ticks += 1
        try:
            self._step()
        except Exception:
            logger.exception("Frame loop step raised; continuing")

    def stop(self, join: bool = True, timeout: float = 1.0) -> None:
        self._running = False
        self._stop.set()
        thread = self._thread
        if join and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            self._thread = None


class ScanSession:
    def __init__(
        self,
        open_camera: Callable[[str], CameraHandle],
        verifier: Any,
        *,
        engine: Optional[DecodeEngine] = None,
        backend: str = "auto",
        facing: str = "environment",
        tick_interval_s: float = 1.0 / 30,
        threaded_loop: bool = True,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
        rescan_cooldown_s: float = 0.0,
        snapshot_max_dim: int = 1024,
    ) -> None:
        self._open_camera = open_camera
        self._verifier = verifier
        self._engine = engine
        self._backend = backend
        self.facing = facing
        self.tick_interval_s = tick_interval_s
        self._threaded_loop = threaded_loop
        self._executor = executor
        self._owns_executor = executor is None
        self._clock = clock
        self.rescan_cooldown_s = rescan_cooldown_s
        self.snapshot_max_dim = snapshot_max_dim

        self._lock = threading.RLock()
        self._snap = SessionSnapshot()
        self._camera: Optional[CameraHandle] = None
        self._loop: Optional[FrameLoop] = None
        self._pending: Optional[Tuple[int, Future]] = None
        self._last_frame: Optional[np.ndarray] = None
        self._listeners: List[Callable[[SessionSnapshot], None]] = []
        self._torn_down = False

    @classmethod
    def from_settings(cls, settings, verifier, **kwargs) -> "ScanSession":
        from camera_helper import make_camera_opener

        params = dict(
            backend=settings.decoder_backend,
            facing=settings.facing,
            tick_interval_s=settings.tick_interval_s,
            rescan_cooldown_s=settings.rescan_cooldown_s,
            snapshot_max_dim=settings.snapshot_max_dim,
        )
        params.update(kwargs)
        return cls(make_camera_opener(settings), verifier, **params)

    # ---------------- read-only views ----------------
    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snap

    @property
    def state(self) -> ScanState:
        return self._snap.state

    @property
    def camera_open(self) -> bool:
        cam = self._camera
        return cam is not None and cam.is_open

    @property
    def loop(self) -> Optional[FrameLoop]:
        return self._loop

    @property
    def engine(self) -> Optional[DecodeEngine]:
        return self._engine

    @property
    def last_frame(self) -> Optional[np.ndarray]:
        return self._last_frame

    def status(self) -> Dict[str, Any]:
        with self._lock:
            out = self._snap.to_dict()
            cam = self._camera
            out["camera_open"] = cam is not None and cam.is_open
            out["frame_size"] = list(cam.frame_size) if out["camera_open"] else [0, 0]
            out["backend"] = self._engine.name if self._engine is not None else None
        return out

    def subscribe(self, callback: Callable[[SessionSnapshot], None]) -> None:
        """Called with every new snapshot, under the session lock. Keep it quick."""
        self._listeners.append(callback)

    # ---------------- transitions ----------------
    def _apply(self, new: SessionSnapshot) -> bool:
        old = self._snap
        if new is old:
            return False
        self._snap = new
        if new.state != old.state:
            logger.info("Scan state %s -> %s", old.state.value, new.state.value)
        if new.state in st.RELEASED_STATES:
            self._release_resources()
        for cb in list(self._listeners):
            try:
                cb(new)
            except Exception:
                logger.exception("Scan state listener failed")
        return True

    def _release_resources(self) -> None:
        self._pending = None
        loop, self._loop = self._loop, None
        if loop is not None:
            loop.stop(join=False)
        cam, self._camera = self._camera, None
        if cam is not None:
            cam.close()
        self._last_frame = None

    def start(self) -> bool:
        """Idle/Errored -> AcquiringCamera -> Scanning (or Errored)."""
        with self._lock:
            if self._torn_down:
                raise RuntimeError("scan session was torn down")
            if not self._apply(st.start(self._snap)):
                return False

            if self._engine is None:
                try:
                    self._engine = resolve_engine(self._backend)
                except DecoderUnavailable as e:
                    logger.warning("No decoder: %s", e)
                    self._apply(st.fail(self._snap, "decoder_unavailable", str(e)))
                    return False

            try:
                camera = self._open_camera(self.facing)
            except CameraError as e:
                logger.warning("Camera acquisition failed (%s): %s", e.kind, e)
                self._apply(st.fail(self._snap, e.kind, str(e)))
                return False

            self._camera = camera
            self._apply(st.camera_opened(self._snap))
            self._loop = FrameLoop(self.tick, self.tick_interval_s, threaded=self._threaded_loop)
            self._loop.start()
            return True

    def pause(self) -> bool:
        with self._lock:
            return self._apply(st.pause(self._snap))

    def resume(self) -> bool:
        with self._lock:
            return self._apply(st.resume(self._snap))

    def rescan(self) -> bool:
        with self._lock:
            if self._snap.state == ScanState.ERRORED:
                return self.start()
            return self._apply(st.rescan(self._snap))

    def reset(self) -> bool:
        """Back to Idle: camera closed, loop stopped, gate cleared."""
        with self._lock:
            changed = self._apply(st.reset(self._snap))
            self._release_resources()
            return changed

    def teardown(self) -> None:
        """Reset and refuse further starts. Safe to call more than once."""
        with self._lock:
            loop = self._loop
            self.reset()
            self._torn_down = True
            executor, self._executor = self._executor, None
        if loop is not None:
            loop.stop(join=True)
        if executor is not None and self._owns_executor:
            executor.shutdown(wait=False)

    # ---------------- loop body ----------------
    def tick(self) -> None:
        with self._lock:
            self._poll_verification()
            snap = self._snap
            camera = self._camera
            engine = self._engine

        plan = st.plan_tick(snap)
        if plan is TickPlan.NOOP or camera is None:
            return
        frame = camera.current_frame()
        if frame is None or not self._publish_frame(camera, frame):
            return
        if plan is TickPlan.PREVIEW or engine is None:
            return

        payload = engine.try_decode(frame)
        if payload:
            self.offer(payload, generation=snap.generation)

    def _publish_frame(self, camera: CameraHandle, frame: np.ndarray) -> bool:
        """Keep `frame` for preview unless `camera` was released while it was being read."""
        with self._lock:
            if camera is not self._camera:
                return False
            self._last_frame = frame
            return True

    def offer(self, payload: str, *, generation: Optional[int] = None, manual: bool = False) -> bool:
        """Hand a decoded payload to the gate; start verification if accepted."""
        with self._lock:
            if generation is not None and generation != self._snap.generation:
                return False
            new, accepted = st.payload_decoded(
                self._snap,
                payload,
                now=self._clock(),
                cooldown_s=self.rescan_cooldown_s,
                manual=manual,
            )
            if not accepted:
                return False
            self._apply(new)
            logger.info("Code accepted, verifying (%d chars)", len(payload))
            future = self._get_executor().submit(self._verifier.verify, payload)
            self._pending = (new.generation, future)
            return True

    def _get_executor(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="verify")
            self._owns_executor = True
        return self._executor

    def _poll_verification(self) -> None:
        if self._pending is None:
            return
        generation, future = self._pending
        if not future.done():
            return
        self._pending = None
        if generation != self._snap.generation:
            return
        try:
            outcome = future.result()
        except Exception as e:
            logger.warning("Verifier raised: %s", e)
            outcome = Failed(f"verification error: {e}")
        self._apply(st.verification_finished(self._snap, outcome, generation))

    def poll(self) -> None:
        """Apply a finished verification without touching the camera."""
        with self._lock:
            self._poll_verification()

    # ---------------- manual path ----------------
    def snapshot_decode(self) -> Dict[str, Any]:
        """Single-shot decode of one freshly captured, downscaled frame."""
        with self._lock:
            camera = self._camera
            engine = self._engine
            generation = self._snap.generation
            scanning = self._snap.state == ScanState.SCANNING
        if not scanning or camera is None or engine is None:
            return {"code": None, "accepted": False}

        frame = camera.current_frame()
        if frame is None:
            frame = self._last_frame
        code = decode_snapshot(engine, frame, max_dim=self.snapshot_max_dim)
        accepted = bool(code) and self.offer(code, generation=generation, manual=True)
        return {"code": code, "accepted": accepted}
