from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np
import pytest

from yogi.catalog.poses import PoseCatalog
from yogi.detectors.yolo_classifier import ModelUnavailableError, NoPersonDetectedError, PoseClassifier
from yogi.server.session import PracticeSession, SessionEvent
from yogi.utils import camera as camera_module
from yogi.utils.camera import FrameSource
from yogi.utils.permissions import StaticPermissions
from yogi.utils.structures import CameraAuthorizationStatus, InferenceResult

ROOT = Path(__file__).resolve().parents[1]
NO_PERSON = "no-person"

ScriptItem = Union[InferenceResult, str, Exception]


class FakeCapture:
    def __init__(self, index: int, opens: bool = True, readable: bool = True, frame_interval: float = 0.005) -> None:
        self.index = index
        self.opens = opens
        self.readable = readable
        self.frame_interval = frame_interval
        self.released = False
        self.props: Dict[int, float] = {}
        self.reads = 0

    def isOpened(self) -> bool:
        return self.opens and not self.released

    def set(self, prop: int, value: float) -> bool:
        self.props[prop] = value
        return True

    def read(self):
        time.sleep(self.frame_interval)
        if self.released or not self.readable:
            return False, None
        self.reads += 1
        return True, np.full((4, 4, 3), self.reads % 255, dtype=np.uint8)

    def release(self) -> None:
        self.released = True


class FakeCaptureFactory:
    """Opens FakeCaptures; indexes listed in `missing` never open, `broken` ones never deliver frames."""

    def __init__(self, missing: Sequence[int] = (), broken: Sequence[int] = ()) -> None:
        self.missing = set(missing)
        self.broken = set(broken)
        self.opened: List[FakeCapture] = []

    def __call__(self, index: int) -> FakeCapture:
        cap = FakeCapture(index, opens=index not in self.missing, readable=index not in self.broken)
        self.opened.append(cap)
        return cap

    def open_captures(self) -> List[FakeCapture]:
        return [cap for cap in self.opened if not cap.released]


class ScriptedClassifier(PoseClassifier):
    """
    Replays a fixed list of outcomes, one per classify call.

    Once the script runs out, calls block until `release()` and then fail, so
    nothing past the script ever reaches the feedback state.
    """

    def __init__(self, script: Sequence[ScriptItem] = (), delay: float = 0.0, load_error: bool = False) -> None:
        self.script = list(script)
        self.delay = delay
        self.load_error = load_error
        self.calls = 0
        self.loaded = False
        self.closed = False
        self.in_flight = 0
        self.max_in_flight = 0
        self.started = threading.Event()
        self._gate = threading.Event()
        self._lock = threading.Lock()

    def load(self) -> None:
        if self.load_error:
            raise ModelUnavailableError("weights missing")
        self.loaded = True

    def classify(self, frame: np.ndarray) -> InferenceResult:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            index = self.calls
            self.calls += 1
        self.started.set()
        try:
            if self.delay:
                time.sleep(self.delay)
            if index >= len(self.script):
                self._gate.wait(5.0)
                raise RuntimeError("script exhausted")
            item = self.script[index]
            if isinstance(item, Exception):
                raise item
            if item == NO_PERSON:
                raise NoPersonDetectedError("nobody in frame")
            return item
        finally:
            with self._lock:
                self.in_flight -= 1

    def release(self) -> None:
        self._gate.set()

    def close(self) -> None:
        self.closed = True
        self.release()


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def result(label: str, confidence: float) -> InferenceResult:
    return InferenceResult.from_pairs([(label, confidence)])


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class EventRecorder:
    def __init__(self) -> None:
        self.events: List[SessionEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: SessionEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_kind(self, kind: str) -> List[SessionEvent]:
        with self._lock:
            return [event for event in self.events if event.kind == kind]


@pytest.fixture(autouse=True)
def clear_device_registry():
    with camera_module._REGISTRY_LOCK:
        camera_module._CLAIMED_DEVICES.clear()
    yield
    with camera_module._REGISTRY_LOCK:
        camera_module._CLAIMED_DEVICES.clear()


@pytest.fixture
def catalog() -> PoseCatalog:
    return PoseCatalog.from_yaml(ROOT / "configs" / "poses.yaml")


@pytest.fixture
def capture_factory() -> FakeCaptureFactory:
    return FakeCaptureFactory()


@pytest.fixture
def authorized() -> StaticPermissions:
    return StaticPermissions(CameraAuthorizationStatus.AUTHORIZED)


@pytest.fixture
def make_session(catalog, capture_factory):
    sessions: List[PracticeSession] = []

    def factory(
        classifier: Optional[ScriptedClassifier] = None,
        permissions: Optional[StaticPermissions] = None,
        captures: Optional[FakeCaptureFactory] = None,
        authorization_timeout: float = 0.2,
        **kwargs,
    ) -> PracticeSession:
        permissions = permissions or StaticPermissions(CameraAuthorizationStatus.AUTHORIZED)
        source = FrameSource(
            positions={"front": 0, "back": 1},
            permissions=permissions,
            capture_factory=captures or capture_factory,
        )
        session = PracticeSession(
            frame_source=source,
            classifier=classifier or ScriptedClassifier(),
            permissions=permissions,
            catalog=catalog,
            authorization_timeout=authorization_timeout,
            poll_interval=0.01,
            **kwargs,
        )
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.close()
