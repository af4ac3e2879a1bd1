"""Shared pytest configuration and fixtures for the scanner test suite."""

import sys
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, List, Optional

import numpy as np
import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from camera_helper import CameraHandle, PermissionDenied  # noqa: E402
from qr_decoder import DecodeEngine  # noqa: E402
from scan_session import ScanSession  # noqa: E402
from token_verify import Validated  # noqa: E402


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    config.addinivalue_line(
        "markers", "hardware: mark test as requiring a physical camera"
    )


def pytest_addoption(parser):
    parser.addoption(
        "--run-hardware",
        action="store_true",
        default=False,
        help="Run tests that require a physical camera",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-hardware"):
        return
    skip_hardware = pytest.mark.skip(reason="Need --run-hardware option to run")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip_hardware)


# =============================================================================
# Fakes
# =============================================================================

def blank_frame(h: int = 48, w: int = 64) -> np.ndarray:
    return np.zeros((h, w, 3), dtype=np.uint8)


class FakeCapture:
    """Stands in for cv2.VideoCapture."""

    def __init__(self, frames: Optional[List[Optional[np.ndarray]]] = None, opened: bool = True):
        self._frames = list(frames) if frames is not None else None
        self.opened = opened
        self.release_count = 0
        self.reads = 0
        self.props = {}

    def isOpened(self):
        return self.opened and self.release_count == 0

    def read(self):
        self.reads += 1
        if self._frames is None:
            return True, blank_frame()
        if not self._frames:
            return False, None
        frame = self._frames.pop(0)
        return (frame is not None), frame

    def release(self):
        self.release_count += 1

    def set(self, prop, value):
        self.props[prop] = value
        return True

    def get(self, prop):
        return self.props.get(prop, 0)


class FakeEngine(DecodeEngine):
    """Yields scripted results; `script` maps tick number (1-based) to a payload."""

    name = "fake"

    def __init__(self, script=None, default: Optional[str] = None):
        self.script = dict(script or {})
        self.default = default
        self.calls = 0

    def _decode(self, frame):
        self.calls += 1
        return self.script.get(self.calls, self.default)


class ManualExecutor:
    """Executor whose jobs run only when the test says so."""

    def __init__(self):
        self.jobs: List[Any] = []

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        fut: Future = Future()
        self.jobs.append((fut, fn, args, kwargs))
        return fut

    def run_next(self) -> Any:
        fut, fn, args, kwargs = self.jobs.pop(0)
        try:
            fut.set_result(fn(*args, **kwargs))
        except Exception as e:
            fut.set_exception(e)
        return fut

    def shutdown(self, wait: bool = True):
        pass


class FakeVerifier:
    def __init__(self, outcome=None):
        self.outcome = outcome if outcome is not None else Validated(data={"objectId": "X"})
        self.calls: List[str] = []

    def verify(self, payload: str):
        self.calls.append(payload)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class CameraOpener:
    """Records every open and hands out handles over FakeCapture."""

    def __init__(self, error: Optional[Exception] = None, frames=None):
        self.error = error
        self.frames = frames
        self.opened: List[CameraHandle] = []
        self.captures: List[FakeCapture] = []

    def __call__(self, facing: str) -> CameraHandle:
        if self.error is not None:
            raise self.error
        cap = FakeCapture(self.frames)
        self.captures.append(cap)
        handle = CameraHandle(cap, index=len(self.opened), facing=facing)
        self.opened.append(handle)
        return handle


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def project_root() -> Path:
    return PROJECT_ROOT


@pytest.fixture
def executor():
    return ManualExecutor()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def opener():
    return CameraOpener()


@pytest.fixture
def denied_opener():
    return CameraOpener(error=PermissionDenied("Camera access was denied"))


@pytest.fixture
def make_session(opener, verifier, executor):
    """Build a manually pumped session; override any collaborator by keyword."""

    def _make(engine=None, **kwargs) -> ScanSession:
        params = dict(
            engine=engine if engine is not None else FakeEngine(),
            executor=executor,
            threaded_loop=False,
            tick_interval_s=0,
        )
        params.update(kwargs)
        cam = params.pop("open_camera", opener)
        ver = params.pop("verifier", verifier)
        return ScanSession(cam, ver, **params)

    return _make


def pump(session: ScanSession, ticks: int = 1) -> None:
    for _ in range(ticks):
        loop = session.loop
        if loop is None:
            return
        loop.pump()
