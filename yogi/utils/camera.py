from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterator, List, Mapping, Optional, Set, Tuple

import cv2
import numpy as np
from loguru import logger

from yogi.utils.permissions import CameraPermissions
from yogi.utils.structures import CameraAuthorizationStatus, CameraPosition, Frame

CaptureFactory = Callable[[int], Any]


class CameraError(RuntimeError):
    code = "camera_error"


class CameraUnauthorizedError(CameraError):
    code = "unauthorized"


class CameraUnavailableError(CameraError):
    code = "unavailable"


class CameraBusyError(CameraError):
    code = "busy"


class CameraDeviceError(CameraError):
    code = "device_error"


class CameraSwitchFailedError(CameraError):
    code = "switch_failed"


# Device indexes held by any FrameSource in this process.
_CLAIMED_DEVICES: Set[int] = set()
_REGISTRY_LOCK = threading.Lock()


def _claim_device(index: int) -> bool:
    with _REGISTRY_LOCK:
        if index in _CLAIMED_DEVICES:
            return False
        _CLAIMED_DEVICES.add(index)
        return True


def _release_device(index: int) -> None:
    with _REGISTRY_LOCK:
        _CLAIMED_DEVICES.discard(index)


def claimed_devices() -> Set[int]:
    with _REGISTRY_LOCK:
        return set(_CLAIMED_DEVICES)


def open_capture(index: int) -> cv2.VideoCapture:
    return cv2.VideoCapture(index)


def enumerate_cameras(max_devices: int = 6, capture_factory: CaptureFactory = open_capture) -> List[int]:
    indices: List[int] = []
    for idx in range(max_devices):
        if idx in claimed_devices():
            indices.append(idx)
            continue
        cap = capture_factory(idx)
        if cap.isOpened():
            indices.append(idx)
        cap.release()
    return indices


class FrameStream:
    """
    Live, non-replayable frame sequence fed by a FrameSource reader thread.

    Holds at most `depth` frames; pushing into a full stream drops the oldest.
    Each frame is handed out once.
    """

    def __init__(self, depth: int = 2) -> None:
        self._frames: Deque[Frame] = deque(maxlen=max(1, depth))
        self._cond = threading.Condition()
        self._closed = False
        self.error: Optional[CameraError] = None
        self.delivered = 0
        self.dropped = 0

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def push(self, frame: Frame) -> bool:
        with self._cond:
            if self._closed:
                return False
            if len(self._frames) == self._frames.maxlen:
                self.dropped += 1
            self._frames.append(frame)
            self._cond.notify_all()
            return True

    def latest(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """Return the newest frame, discarding any older ones still buffered."""
        with self._cond:
            if not self._frames and not self._closed:
                self._cond.wait(timeout)
            if not self._frames:
                return None
            frame = self._frames.pop()
            self.dropped += len(self._frames)
            self._frames.clear()
            self.delivered += 1
            return frame

    def next(self, timeout: Optional[float] = None) -> Optional[Frame]:
        with self._cond:
            self._cond.wait_for(lambda: bool(self._frames) or self._closed, timeout)
            if not self._frames:
                return None
            self.delivered += 1
            return self._frames.popleft()

    def __iter__(self) -> Iterator[Frame]:
        while True:
            frame = self.next()
            if frame is None:
                return
            yield frame

    def close(self, error: Optional[CameraError] = None) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self.error = error
            self._frames.clear()
            self._cond.notify_all()

    def cancel(self) -> None:
        self.close()


class FrameSource:
    """Owns one physical camera at a time and pushes its frames into a FrameStream."""

    def __init__(
        self,
        positions: Mapping[Any, int],
        permissions: CameraPermissions,
        frame_cfg: Optional[Dict[str, Any]] = None,
        capture_factory: CaptureFactory = open_capture,
        queue_depth: int = 2,
        max_read_failures: int = 30,
    ) -> None:
        self.positions: Dict[CameraPosition, int] = {CameraPosition(k): int(v) for k, v in positions.items()}
        self.permissions = permissions
        self.frame_cfg = frame_cfg or {}
        self.capture_factory = capture_factory
        self.queue_depth = max(1, queue_depth)
        self.max_read_failures = max(1, max_read_failures)
        self._lock = threading.RLock()
        self._frame_lock = threading.Lock()
        self._cap: Any = None
        self._device_index: Optional[int] = None
        self._position: Optional[CameraPosition] = None
        self._stream: Optional[FrameStream] = None
        self._reader: Optional[threading.Thread] = None
        self._reader_stop = threading.Event()
        self._frame_id = 0
        self._preview: Optional[Frame] = None

    @property
    def position(self) -> Optional[CameraPosition]:
        return self._position

    @property
    def device_index(self) -> Optional[int]:
        return self._device_index

    def is_configured(self) -> bool:
        return self._cap is not None

    def is_streaming(self) -> bool:
        reader = self._reader
        stream = self._stream
        return reader is not None and reader.is_alive() and stream is not None and not stream.closed

    def configure(self, position: CameraPosition | str) -> None:
        position = CameraPosition(position)
        with self._lock:
            if self._cap is not None:
                if self._position is position:
                    return
                self._teardown(close_stream=True)
            self._acquire(position)

    def start(self) -> FrameStream:
        with self._lock:
            if self.is_streaming():
                assert self._stream is not None
                return self._stream
            self._stop_reader()
            if self._cap is None:
                if self._position is None:
                    raise CameraDeviceError("camera has not been configured; call configure() first")
                self._acquire(self._position)
            assert self._position is not None
            ok, image = self._read(self._cap)
            if not ok or image is None:
                index = self._device_index
                self._teardown(close_stream=True)
                raise CameraDeviceError(
                    f"Camera {index} opened but delivered no frames. "
                    "Check that no other application is using it and that the driver is healthy."
                )
            stream = FrameStream(self.queue_depth)
            self._stream = stream
            self._deliver(image, stream, self._position)
            self._start_reader(stream, self._position)
            logger.info("Camera {} streaming ({})", self._device_index, self._position.value)
            return stream

    def switch_camera(self) -> None:
        with self._lock:
            if self._position is None:
                raise CameraSwitchFailedError("no camera configured to switch from")
            original = self._position
            target = original.opposite()
            stream = self._stream if self.is_streaming() else None
            self._teardown(close_stream=False)
            try:
                self._acquire(target)
                if stream is not None:
                    ok, image = self._read(self._cap)
                    if not ok or image is None:
                        raise CameraDeviceError(f"camera {self._device_index} delivered no frames")
                    self._deliver(image, stream, target)
                    self._start_reader(stream, target)
            except CameraError as exc:
                self._teardown(close_stream=False)
                self._position = original
                error = CameraSwitchFailedError(f"switch to {target.value} camera failed: {exc}")
                if self._stream is not None:
                    self._stream.close(error)
                    self._stream = None
                logger.warning("Camera switch {} -> {} failed: {}", original.value, target.value, exc)
                raise error from exc
            logger.info("Switched camera {} -> {}", original.value, target.value)

    def stop(self) -> None:
        with self._lock:
            self._teardown(close_stream=True)

    def preview(self) -> Optional[Frame]:
        with self._frame_lock:
            return self._preview

    def __enter__(self) -> "FrameSource":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def _acquire(self, position: CameraPosition) -> None:
        status = self.permissions.status()
        if status in (CameraAuthorizationStatus.DENIED, CameraAuthorizationStatus.RESTRICTED):
            raise CameraUnauthorizedError(f"camera access is {status.value}")
        index = self.positions.get(position)
        if index is None:
            raise CameraUnavailableError(f"no camera is mapped to the {position.value} position")
        if not _claim_device(index):
            raise CameraBusyError(f"camera {index} is already in use by another session")
        cap = None
        try:
            cap = self.capture_factory(index)
            if cap is None or not cap.isOpened():
                raise CameraUnavailableError(f"camera {index} ({position.value}) could not be opened")
            self._configure_capture(cap)
        except cv2.error as exc:
            self._release_capture(cap)
            _release_device(index)
            raise CameraUnavailableError(f"camera {index} ({position.value}) failed to open: {exc}") from exc
        except CameraError:
            self._release_capture(cap)
            _release_device(index)
            raise
        self._cap = cap
        self._device_index = index
        self._position = position
        logger.info("Acquired camera {} ({})", index, position.value)

    def _configure_capture(self, cap: Any) -> None:
        target_width = int(self.frame_cfg.get("target_width", 960))
        target_height = int(self.frame_cfg.get("target_height", int(target_width * 0.75)))
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, target_width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, target_height)
        cap.set(cv2.CAP_PROP_FPS, int(self.frame_cfg.get("fps", 30)))

    def _start_reader(self, stream: FrameStream, position: CameraPosition) -> None:
        stop_event = threading.Event()
        self._reader_stop = stop_event
        self._reader = threading.Thread(
            target=self._run_reader,
            name=f"camera-reader-{self._device_index}",
            args=(self._cap, stream, stop_event, position),
            daemon=True,
        )
        self._reader.start()

    def _run_reader(self, cap: Any, stream: FrameStream, stop_event: threading.Event, position: CameraPosition) -> None:
        failures = 0
        while not stop_event.is_set():
            ok, image = self._read(cap)
            if not ok or image is None:
                failures += 1
                if failures >= self.max_read_failures:
                    logger.warning("Camera stopped delivering frames after {} failed reads", failures)
                    stream.close(CameraDeviceError(f"camera stopped delivering frames ({failures} failed reads)"))
                    return
                stop_event.wait(0.01)
                continue
            failures = 0
            self._deliver(image, stream, position)

    def _deliver(self, image: np.ndarray, stream: FrameStream, position: CameraPosition) -> None:
        with self._frame_lock:
            self._frame_id += 1
            frame = Frame(image=image, frame_id=self._frame_id, timestamp=time.monotonic(), position=position)
            self._preview = frame
        stream.push(frame)

    def _stop_reader(self) -> None:
        self._reader_stop.set()
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=2.0)
        self._reader = None

    def _teardown(self, close_stream: bool) -> None:
        self._stop_reader()
        if self._cap is not None:
            index = self._device_index
            try:
                self._release_capture(self._cap)
            finally:
                if index is not None:
                    _release_device(index)
            logger.info("Released camera {}", index)
        self._cap = None
        self._device_index = None
        if close_stream and self._stream is not None:
            self._stream.close()
            self._stream = None

    @staticmethod
    def _read(cap: Any) -> Tuple[bool, Optional[np.ndarray]]:
        try:
            ok, image = cap.read()
        except cv2.error as exc:
            logger.debug("Camera read raised: {}", exc)
            return False, None
        return bool(ok), image

    @staticmethod
    def _release_capture(cap: Any) -> None:
        if cap is not None:
            cap.release()
