from __future__ import annotations

import asyncio
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

from loguru import logger

from yogi.catalog.poses import PoseCatalog, UnknownPoseError
from yogi.detectors.yolo_classifier import (
    InferenceError,
    ModelUnavailableError,
    NoPersonDetectedError,
    PoseClassifier,
    YOLOPoseClassifier,
    resolve_device,
)
from yogi.logic.feedback import FeedbackStateMachine, FeedbackThresholds
from yogi.pose.mediapipe_presence import MediaPipePresenceDetector
from yogi.ui.overlay import feedback_message
from yogi.utils.camera import CameraError, CameraSwitchFailedError, FrameSource, FrameStream
from yogi.utils.config import RuntimeConfig
from yogi.utils.permissions import CameraPermissions, build_permissions
from yogi.utils.profiler import LatencyMeter
from yogi.utils.structures import (
    CameraAuthorizationStatus,
    CameraPosition,
    FeedbackState,
    SuggestTutorial,
)


class SessionError(RuntimeError):
    code = "session_error"


class SessionNotStartedError(SessionError):
    code = "not_started"


class SessionAlreadyActiveError(SessionError):
    code = "already_active"


class SessionPhase(str, Enum):
    IDLE = "idle"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    AUTHORIZATION_UNRESOLVED = "authorization_unresolved"
    UNAUTHORIZED = "unauthorized"
    RUNNING = "running"
    PAUSED = "paused"
    SWITCH_FAILED = "switch_failed"
    FAILED = "failed"


ACTIVE_PHASES = {
    SessionPhase.AWAITING_AUTHORIZATION,
    SessionPhase.RUNNING,
    SessionPhase.PAUSED,
    SessionPhase.SWITCH_FAILED,
}

CAPTURE_PHASES = {SessionPhase.RUNNING, SessionPhase.PAUSED, SessionPhase.SWITCH_FAILED}

REVOKED_STATUSES = {CameraAuthorizationStatus.DENIED, CameraAuthorizationStatus.RESTRICTED}


@dataclass
class SessionSnapshot:
    phase: SessionPhase
    target_pose: Optional[str]
    camera_position: Optional[CameraPosition]
    authorization: CameraAuthorizationStatus
    feedback: FeedbackState = field(default_factory=FeedbackState)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    inference_ms: float = 0.0
    frames_dropped: int = 0
    results_discarded: int = 0


@dataclass(frozen=True)
class SessionEvent:
    kind: str  # phase | feedback | tutorial | authorization | error
    snapshot: SessionSnapshot
    tutorial: Optional[SuggestTutorial] = None


SessionObserver = Callable[[SessionEvent], None]


class PracticeSession:
    """
    Runs one live practice session: camera frames in, debounced feedback out.

    Three lanes cooperate: the FrameSource reader thread produces frames, a
    single-worker executor classifies them, and the session loop thread is the
    only place inference results are applied to the feedback state. At most one
    classification is in flight; the next one always gets the newest frame.
    Every pause, switch or stop bumps an epoch so results submitted before it
    are dropped instead of applied.
    """

    def __init__(
        self,
        frame_source: FrameSource,
        classifier: PoseClassifier,
        permissions: CameraPermissions,
        catalog: Optional[PoseCatalog] = None,
        thresholds: Optional[FeedbackThresholds] = None,
        authorization_timeout: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 0.05,
        join_timeout: float = 5.0,
    ) -> None:
        self.frame_source = frame_source
        self.classifier = classifier
        self.permissions = permissions
        self.catalog = catalog
        self.thresholds = thresholds or FeedbackThresholds()
        self.authorization_timeout = max(0.0, authorization_timeout)
        self.clock = clock
        self.poll_interval = poll_interval
        self.join_timeout = join_timeout
        self._lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._observers: List[SessionObserver] = []
        self._observer_lock = threading.Lock()
        self._machine: Optional[FeedbackStateMachine] = None
        self._phase = SessionPhase.IDLE
        self._target: Optional[str] = None
        self._camera: Optional[CameraPosition] = None
        self._authorization = CameraAuthorizationStatus.NOT_DETERMINED
        self._error: Optional[Exception] = None
        self._pending_start = False
        self._epoch = 0
        self._stream: Optional[FrameStream] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._loop_thread: Optional[threading.Thread] = None
        self._loop_stop = threading.Event()
        self._auth_event = threading.Event()
        self._latency = LatencyMeter()
        self._discarded = 0
        self._remove_auth_observer = permissions.add_observer(self._on_authorization_changed)

    # -- observation -------------------------------------------------------

    def subscribe(self, observer: SessionObserver) -> Callable[[], None]:
        with self._observer_lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._observer_lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def snapshot(self) -> SessionSnapshot:
        with self._state_lock:
            return self._snapshot_locked()

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    # -- lifecycle ---------------------------------------------------------

    def start_session(self, target: str, camera: CameraPosition | str = CameraPosition.FRONT) -> CameraAuthorizationStatus:
        camera = CameraPosition(camera)
        with self._lock:
            if self._phase in ACTIVE_PHASES:
                raise SessionAlreadyActiveError(f"a session for {self._target} is already active")
            if self.catalog is not None and target not in self.catalog:
                raise UnknownPoseError(target)
            status = self.permissions.status()
            with self._state_lock:
                self._target = target
                self._camera = camera
                self._error = None
                self._discarded = 0
                self._latency.reset()
                self._machine = FeedbackStateMachine(target, self.thresholds, self.clock)
                self._pending_start = True
                self._authorization = status
                if status is CameraAuthorizationStatus.NOT_DETERMINED:
                    self._auth_event.clear()
                    self._phase = SessionPhase.AWAITING_AUTHORIZATION
                else:
                    self._phase = SessionPhase.IDLE
            logger.info("Practice session requested for {} ({} camera)", target, camera.value)

        if status is CameraAuthorizationStatus.NOT_DETERMINED:
            self._publish("authorization")
            self.permissions.request()
            if not self._auth_event.wait(self.authorization_timeout):
                logger.warning("Camera authorization unresolved after {:.1f}s", self.authorization_timeout)

        with self._lock:
            if not self._pending_start or self._phase not in (SessionPhase.AWAITING_AUTHORIZATION, SessionPhase.IDLE):
                return self._authorization
            status = self.permissions.status()
            with self._state_lock:
                observed = self._authorization
            # A change delivered to the observer outranks a query that raced it.
            if status is CameraAuthorizationStatus.NOT_DETERMINED:
                status = observed
            return self._resolve_authorization(status)

    def pause(self) -> None:
        with self._lock:
            with self._state_lock:
                if self._phase is SessionPhase.PAUSED:
                    return
                if self._phase is not SessionPhase.RUNNING:
                    raise SessionNotStartedError("no running session to pause")
                assert self._machine is not None
                self._epoch += 1
                self._machine.pause()
                self._phase = SessionPhase.PAUSED
            logger.info("Session paused for {}", self._target)
            self._publish("phase")

    def resume(self) -> None:
        with self._lock:
            with self._state_lock:
                phase = self._phase
                stream = self._stream
            if phase is SessionPhase.RUNNING:
                return
            if phase not in (SessionPhase.PAUSED, SessionPhase.SWITCH_FAILED):
                raise SessionNotStartedError("no paused session to resume")
            if stream is None or stream.closed:
                try:
                    stream = self.frame_source.start()
                except CameraError as exc:
                    with self._state_lock:
                        self._error = exc
                    logger.warning("Unable to restart camera stream: {}", exc)
                    self._publish("error")
                    raise
            with self._state_lock:
                assert self._machine is not None
                self._stream = stream
                self._epoch += 1
                self._machine.resume()
                self._camera = self.frame_source.position or self._camera
                self._error = None
                self._phase = SessionPhase.RUNNING
            logger.info("Session resumed for {}", self._target)
            self._publish("phase")

    def switch_camera(self) -> None:
        with self._lock:
            with self._state_lock:
                if self._phase not in (SessionPhase.RUNNING, SessionPhase.PAUSED):
                    raise SessionNotStartedError("no active session to switch cameras for")
                self._epoch += 1
            try:
                self.frame_source.switch_camera()
            except CameraSwitchFailedError as exc:
                with self._state_lock:
                    self._stream = None
                    self._error = exc
                    self._phase = SessionPhase.SWITCH_FAILED
                self._publish("error")
                raise
            with self._state_lock:
                self._camera = self.frame_source.position
            self._publish("phase")

    def stop_session(self) -> None:
        with self._lock:
            previous = self._phase
            self._auth_event.set()
            self._halt_capture(SessionPhase.IDLE, keep_pending=False)
            if previous is not SessionPhase.IDLE:
                logger.info("Session stopped for {}", self._target)
                self._publish("phase")

    def refresh_authorization(self) -> CameraAuthorizationStatus:
        """Re-query the host; a changed status reaches the session through the permission observer."""
        return self.permissions.refresh()

    def close(self) -> None:
        self.stop_session()
        self._remove_auth_observer()
        self.classifier.close()

    # -- internals ---------------------------------------------------------

    def _resolve_authorization(self, status: CameraAuthorizationStatus) -> CameraAuthorizationStatus:
        with self._state_lock:
            self._authorization = status
        if status is CameraAuthorizationStatus.AUTHORIZED:
            self._start_capture()
            return status
        with self._state_lock:
            if status is CameraAuthorizationStatus.NOT_DETERMINED:
                self._phase = SessionPhase.AUTHORIZATION_UNRESOLVED
            else:
                self._phase = SessionPhase.UNAUTHORIZED
        logger.warning("Camera capture not started: authorization is {}", status.value)
        self._publish("authorization")
        return status

    def _on_authorization_changed(self, status: CameraAuthorizationStatus) -> None:
        self._auth_event.set()
        with self._lock:
            with self._state_lock:
                self._authorization = status
                deferred = self._pending_start and self._phase in (
                    SessionPhase.AUTHORIZATION_UNRESOLVED,
                    SessionPhase.UNAUTHORIZED,
                )
                revoked = status in REVOKED_STATUSES and self._phase in CAPTURE_PHASES
            if revoked:
                logger.warning("Camera access {} during session for {}; capture stopped", status.value, self._target)
                self._halt_capture(SessionPhase.UNAUTHORIZED, keep_pending=True)
                self._publish("authorization")
                return
            if not deferred:
                self._publish("authorization")
                return
            try:
                self._resolve_authorization(status)
            except (CameraError, InferenceError) as exc:
                logger.warning("Deferred session start failed: {}", exc)

    def _halt_capture(self, phase: SessionPhase, keep_pending: bool) -> None:
        """Stop submitting, join the loop, release the camera, then idle the feedback state."""
        with self._state_lock:
            self._epoch += 1
            self._pending_start = keep_pending
            stop_event = self._loop_stop
            thread = self._loop_thread
            executor = self._executor
            self._loop_thread = None
            self._executor = None
        stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.join_timeout)
            if thread.is_alive():
                logger.warning("Session loop did not exit within {:.1f}s", self.join_timeout)
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        try:
            self.frame_source.stop()
        finally:
            with self._state_lock:
                self._stream = None
                if self._machine is not None:
                    self._machine.stop()
                self._phase = phase

    def _start_capture(self) -> None:
        assert self._camera is not None and self._machine is not None
        try:
            self.classifier.load()
            self.frame_source.configure(self._camera)
            stream = self.frame_source.start()
        except (CameraError, InferenceError) as exc:
            self._fail(exc)
            raise
        stop_event = threading.Event()
        with self._state_lock:
            self._pending_start = False
            self._stream = stream
            self._epoch += 1
            self._machine.start()
            self._phase = SessionPhase.RUNNING
            self._loop_stop = stop_event
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pose-inference")
            self._loop_thread = threading.Thread(
                target=self._run_loop,
                name="practice-session",
                args=(stop_event, self._executor),
                daemon=True,
            )
            self._loop_thread.start()
        logger.info("Session started for {} ({} camera)", self._target, self._camera.value)
        self._publish("phase")

    def _fail(self, exc: Exception) -> None:
        self.frame_source.stop()
        with self._state_lock:
            self._pending_start = False
            self._stream = None
            self._error = exc
            self._phase = SessionPhase.FAILED
            if self._machine is not None:
                self._machine.stop()
        logger.warning("Session failed: {}", exc)
        self._publish("error")

    def _run_loop(self, stop_event: threading.Event, executor: ThreadPoolExecutor) -> None:
        pending: Optional[Future] = None
        submitted_epoch = -1
        submitted_at = 0.0
        try:
            while not stop_event.is_set():
                if pending is not None:
                    done, _ = wait([pending], timeout=self.poll_interval)
                    if not done:
                        continue
                    if not self._complete(pending, submitted_epoch, submitted_at):
                        return
                    pending = None
                    continue
                with self._state_lock:
                    phase = self._phase
                    stream = self._stream
                    epoch = self._epoch
                if phase is not SessionPhase.RUNNING or stream is None:
                    stop_event.wait(self.poll_interval)
                    continue
                if stream.closed:
                    if stream.error is None or isinstance(stream.error, CameraSwitchFailedError):
                        stop_event.wait(self.poll_interval)
                        continue
                    self._handle_stream_failure(stream, stream.error)
                    return
                frame = stream.latest(timeout=self.poll_interval)
                if frame is None or stop_event.is_set():
                    continue
                submitted_epoch = epoch
                submitted_at = time.perf_counter()
                try:
                    pending = executor.submit(self.classifier.classify, frame.image)
                except RuntimeError:
                    return
        finally:
            if pending is not None:
                pending.cancel()

    def _complete(self, future: Future, epoch: int, submitted_at: float) -> bool:
        """Apply one finished classification; returns False when the loop must exit."""
        elapsed = time.perf_counter() - submitted_at
        no_person = False
        result = None
        try:
            result = future.result()
        except NoPersonDetectedError:
            no_person = True
        except ModelUnavailableError as exc:
            self._fail(exc)
            return False
        except Exception as exc:
            logger.warning("Pose classification failed for one frame: {}", exc)
            return True

        with self._state_lock:
            if epoch != self._epoch or self._phase is not SessionPhase.RUNNING or self._machine is None:
                self._discarded += 1
                logger.debug("Discarding inference result from epoch {} (current {})", epoch, self._epoch)
                return True
            update = self._machine.observe_no_person() if no_person else self._machine.observe(result)
            self._latency.record(elapsed)
            snapshot = self._snapshot_locked()
        if update is None:
            return True
        self._emit(SessionEvent("feedback", snapshot))
        if update.tutorial is not None:
            self._emit(SessionEvent("tutorial", snapshot, update.tutorial))
        return True

    def _handle_stream_failure(self, stream: FrameStream, error: CameraError) -> None:
        with self._state_lock:
            if self._stream is not stream:
                return
        logger.error("Camera stream failed: {}", error)
        self._fail(error)

    def _snapshot_locked(self) -> SessionSnapshot:
        error = self._error
        return SessionSnapshot(
            phase=self._phase,
            target_pose=self._target,
            camera_position=self._camera,
            authorization=self._authorization,
            feedback=self._machine.state if self._machine is not None else FeedbackState(),
            error_code=getattr(error, "code", None) if error is not None else None,
            error_message=str(error) if error is not None else None,
            inference_ms=self._latency.average_ms(),
            frames_dropped=self._stream.dropped if self._stream is not None else 0,
            results_discarded=self._discarded,
        )

    def _publish(self, kind: str) -> None:
        self._emit(SessionEvent(kind, self.snapshot()))

    def _emit(self, event: SessionEvent) -> None:
        with self._observer_lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception as exc:
                logger.exception("Session observer failed on {} event: {}", event.kind, exc)


def build_practice_session(runtime_cfg: RuntimeConfig, catalog: PoseCatalog) -> PracticeSession:
    camera_cfg = runtime_cfg.camera
    inference_cfg = runtime_cfg.inference
    presence_cfg = runtime_cfg.presence
    permissions = build_permissions(runtime_cfg.authorization)
    frame_source = FrameSource(
        positions=camera_cfg.get("positions", {"front": 0, "back": 1}),
        permissions=permissions,
        frame_cfg=runtime_cfg.frame,
        queue_depth=int(camera_cfg.get("queue_depth", 2)),
        max_read_failures=int(camera_cfg.get("max_read_failures", 30)),
    )
    presence = None
    if presence_cfg.get("enabled", True):
        presence = MediaPipePresenceDetector(
            model_complexity=int(presence_cfg.get("model_complexity", 1)),
            min_detection_confidence=float(presence_cfg.get("min_detection_confidence", 0.5)),
            visibility_threshold=float(presence_cfg.get("visibility_threshold", 0.5)),
            min_visible_ratio=float(presence_cfg.get("min_visible_ratio", 0.5)),
        )
    classifier = YOLOPoseClassifier(
        weights_path=str(inference_cfg.get("weights_path", "weights/yoga-pose-cls.pt")),
        device=resolve_device(inference_cfg.get("device", "auto")),
        top_k=int(inference_cfg.get("top_k", 5)),
        image_size=int(inference_cfg.get("image_size", 224)),
        vocabulary=catalog.labels(),
        presence_detector=presence,
    )
    return PracticeSession(
        frame_source=frame_source,
        classifier=classifier,
        permissions=permissions,
        catalog=catalog,
        thresholds=FeedbackThresholds.from_config(runtime_cfg.feedback),
        authorization_timeout=float(runtime_cfg.authorization.get("request_timeout_seconds", 3.0)),
    )


def snapshot_payload(snapshot: SessionSnapshot) -> Dict[str, Any]:
    feedback = snapshot.feedback
    message = feedback_message(snapshot.phase.value, feedback.status)
    return {
        "phase": snapshot.phase.value,
        "targetPose": snapshot.target_pose,
        "camera": snapshot.camera_position.value if snapshot.camera_position else None,
        "authorization": snapshot.authorization.value,
        "status": feedback.status.value,
        "message": message,
        "consecutiveHits": feedback.consecutive_hits,
        "consecutiveMisses": feedback.consecutive_misses,
        "errorCode": snapshot.error_code,
        "error": snapshot.error_message,
        "inferenceMs": round(snapshot.inference_ms, 2),
        "framesDropped": snapshot.frames_dropped,
    }


def event_payload(event: SessionEvent) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"event": event.kind, "timestamp": time.time()}
    payload.update(snapshot_payload(event.snapshot))
    if event.tutorial is not None:
        payload["suggestTutorial"] = {"pose": event.tutorial.pose, "misses": event.tutorial.misses}
    return payload


class SessionManager:
    """Async facade over a PracticeSession for the web layer."""

    def __init__(self, factory: Callable[[], PracticeSession]) -> None:
        self._factory = factory
        self._session: Optional[PracticeSession] = None
        self._async_lock = asyncio.Lock()

    @property
    def session(self) -> PracticeSession:
        if self._session is None:
            self._session = self._factory()
        return self._session

    async def start(self, target: str, camera: CameraPosition) -> SessionSnapshot:
        async with self._async_lock:
            session = self.session
            await asyncio.to_thread(session.start_session, target, camera)
            return session.snapshot()

    async def stop(self) -> SessionSnapshot:
        async with self._async_lock:
            session = self.session
            await asyncio.to_thread(session.stop_session)
            return session.snapshot()

    async def pause(self) -> SessionSnapshot:
        async with self._async_lock:
            await asyncio.to_thread(self.session.pause)
            return self.session.snapshot()

    async def resume(self) -> SessionSnapshot:
        async with self._async_lock:
            await asyncio.to_thread(self.session.resume)
            return self.session.snapshot()

    async def switch_camera(self) -> SessionSnapshot:
        async with self._async_lock:
            await asyncio.to_thread(self.session.switch_camera)
            return self.session.snapshot()

    def status(self) -> SessionSnapshot:
        return self.session.snapshot()

    async def refresh_authorization(self) -> SessionSnapshot:
        """Re-check camera access for a session waiting on it; a grant completes the deferred start."""
        async with self._async_lock:
            session = self.session
            if session.phase in (SessionPhase.UNAUTHORIZED, SessionPhase.AUTHORIZATION_UNRESOLVED):
                await asyncio.to_thread(session.refresh_authorization)
            return session.snapshot()

    async def event_generator(self) -> AsyncGenerator[Dict[str, Any], None]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=16)

        def on_event(event: SessionEvent) -> None:
            try:
                asyncio.run_coroutine_threadsafe(self._enqueue_event(queue, event_payload(event)), loop)
            except RuntimeError:
                logger.warning("Unable to push session event; consumer likely disconnected")

        unsubscribe = self.session.subscribe(on_event)
        try:
            yield {"event": "status", "timestamp": time.time(), **snapshot_payload(self.session.snapshot())}
            while True:
                yield await queue.get()
        finally:
            unsubscribe()

    async def shutdown(self) -> None:
        if self._session is not None:
            await asyncio.to_thread(self._session.close)

    @staticmethod
    async def _enqueue_event(queue: asyncio.Queue[Dict[str, Any]], payload: Dict[str, Any]) -> None:
        try:
            if queue.full():
                queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        await queue.put(payload)
