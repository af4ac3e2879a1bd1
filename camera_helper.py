# camera_helper.py
"""
Exclusive ownership of one live capture device.

open_camera() walks the device indices configured for a facing preference and
hands back a CameraHandle for the first one that opens. The handle is the only
thing that ever reads from or releases the underlying cv2.VideoCapture.
"""

from __future__ import annotations

import logging
import os
import platform
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence

import cv2
import numpy as np

logger = logging.getLogger(__name__)

FACING_MODES = ("environment", "user")


class CameraError(RuntimeError):
    kind = "camera_error"


class PermissionDenied(CameraError):
    kind = "permission_denied"


class DeviceUnavailable(CameraError):
    kind = "device_unavailable"


def _device_node(index: int) -> Optional[Path]:
    if platform.system() != "Linux":
        return None
    return Path(f"/dev/video{index}")


def _check_device_access(index: int) -> None:
    node = _device_node(index)
    if node is None or not node.exists():
        return
    if not os.access(node, os.R_OK | os.W_OK):
        raise PermissionDenied(f"Access to {node} was denied (is the user in the 'video' group?)")


def _open_capture(index: int):
    """Prefer the platform capture API, then fall back to OpenCV's default."""
    if platform.system() == "Windows":
        preferred = getattr(cv2, "CAP_DSHOW", None)
    else:
        preferred = getattr(cv2, "CAP_V4L2", None)
    apis = [api for api in (preferred,) if api is not None] + [None]

    cap = None
    for api in apis:
        cap = cv2.VideoCapture(index, api) if api is not None else cv2.VideoCapture(index)
        if cap is not None and cap.isOpened():
            return cap
        if cap is not None:
            cap.release()
    return cap


def _configure_camera(cap: Any, width: Optional[int], height: Optional[int]) -> None:
    def _set(prop, val):
        try:
            cap.set(prop, float(val))
        except Exception:
            pass

    if width:
        _set(cv2.CAP_PROP_FRAME_WIDTH, width)
    if height:
        _set(cv2.CAP_PROP_FRAME_HEIGHT, height)

    # Reduce latency if supported
    if hasattr(cv2, "CAP_PROP_BUFFERSIZE"):
        _set(cv2.CAP_PROP_BUFFERSIZE, 1)


class CameraHandle:
    """One open capture stream. close() releases it exactly once."""

    def __init__(self, capture: Any, *, index: int = 0, facing: str = "environment") -> None:
        self._cap = capture
        self._lock = threading.Lock()
        self._closed = False
        self._width = 0
        self._height = 0
        self.index = index
        self.facing = facing

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def frame_size(self) -> tuple:
        """(width, height); zero until the stream has reported a size."""
        if not self._width and not self._closed:
            try:
                self._width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
                self._height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
            except Exception:
                pass
        return self._width, self._height

    def current_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._closed:
                return None
            ok, frame = self._cap.read()
        if not ok or frame is None:
            return None
        h, w = frame.shape[:2]
        self._width, self._height = int(w), int(h)
        return frame

    def close(self) -> bool:
        """Release the device. Returns True only for the call that released it."""
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            cap, self._cap = self._cap, None
        try:
            cap.release()
        except Exception as e:
            logger.warning("Camera %s release raised: %s", self.index, e)
        logger.info("Camera %s released", self.index)
        return True

    def __enter__(self) -> "CameraHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"CameraHandle(index={self.index}, facing={self.facing!r}, {state})"


def open_camera(
    preferred_facing: str = "environment",
    *,
    indices: Sequence[int] = (0,),
    width: Optional[int] = 1280,
    height: Optional[int] = 720,
    capture_factory: Optional[Callable[[int], Any]] = None,
) -> CameraHandle:
    """Open the first usable device in `indices`.

    Raises PermissionDenied when every candidate was refused by the OS, and
    DeviceUnavailable for every other failure (nothing attached, busy, ...).
    """
    if preferred_facing not in FACING_MODES:
        raise ValueError(f"preferred_facing must be one of {FACING_MODES}, got {preferred_facing!r}")
    factory = capture_factory or _open_capture
    candidates: Iterable[int] = list(indices) or [0]

    denied = []
    failed = []
    for index in candidates:
        try:
            _check_device_access(index)
            cap = factory(index)
        except PermissionError as e:
            denied.append(f"{index}: {e}")
            continue
        except PermissionDenied as e:
            denied.append(str(e))
            continue

        if cap is None or not cap.isOpened():
            failed.append(str(index))
            if cap is not None:
                cap.release()
            continue

        _configure_camera(cap, width, height)
        logger.info("Camera %s opened (facing=%s)", index, preferred_facing)
        return CameraHandle(cap, index=index, facing=preferred_facing)

    if denied and not failed:
        logger.warning("Camera permission denied: %s", "; ".join(denied))
        raise PermissionDenied("Camera access was denied: " + "; ".join(denied))
    logger.warning("No usable camera among indices %s", list(candidates))
    raise DeviceUnavailable(f"Unable to open camera (tried indices {', '.join(map(str, candidates))})")


def make_camera_opener(settings) -> Callable[[str], CameraHandle]:
    """Bind device indices and capture size from settings to a facing-only opener."""
    def _opener(facing: str) -> CameraHandle:
        indices = settings.environment_cameras if facing == "environment" else settings.user_cameras
        return open_camera(
            facing,
            indices=indices,
            width=settings.frame_width,
            height=settings.frame_height,
        )
    return _opener
