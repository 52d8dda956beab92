import time

import pytest

from conftest import NO_PERSON, EventRecorder, FakeCaptureFactory, ScriptedClassifier, result, wait_until
from yogi.catalog.poses import UnknownPoseError
from yogi.detectors.yolo_classifier import ModelUnavailableError
from yogi.server.session import (
    SessionAlreadyActiveError,
    SessionNotStartedError,
    SessionPhase,
    snapshot_payload,
)
from yogi.utils.camera import CameraBusyError, CameraSwitchFailedError, FrameSource, claimed_devices
from yogi.utils import permissions as permissions_module
from yogi.utils.permissions import DeviceNodePermissions, StaticPermissions
from yogi.utils.structures import CameraAuthorizationStatus, CameraPosition, FeedbackStatus

AUTHORIZED = CameraAuthorizationStatus.AUTHORIZED
DENIED = CameraAuthorizationStatus.DENIED
NOT_DETERMINED = CameraAuthorizationStatus.NOT_DETERMINED


class GatedClassifier(ScriptedClassifier):
    """Every call waits for `release()` and then reports a confident plank."""

    def classify(self, frame):
        self.started.set()
        self._gate.wait(5.0)
        return result("plank", 0.9)


def feedback_of(session):
    return session.snapshot().feedback


def test_tree_session_suggests_tutorial_once_then_recovers(make_session):
    script = [result("plank", 0.9)] * 8 + [result("tree", 0.95)]
    session = make_session(ScriptedClassifier(script))
    events = EventRecorder()
    session.subscribe(events)

    assert session.start_session("tree", CameraPosition.FRONT) is AUTHORIZED
    assert session.phase is SessionPhase.RUNNING

    assert wait_until(lambda: len(events.of_kind("feedback")) == 9)
    tutorials = events.of_kind("tutorial")
    assert len(tutorials) == 1
    assert tutorials[0].tutorial.pose == "tree"
    assert tutorials[0].tutorial.misses == 8
    state = feedback_of(session)
    assert state.status is FeedbackStatus.CORRECT
    assert state.consecutive_hits == 1
    assert state.consecutive_misses == 0


def test_one_inference_in_flight_and_newest_frame_wins(make_session):
    classifier = ScriptedClassifier([result("tree", 0.9)] * 15, delay=0.03)
    session = make_session(classifier)
    session.start_session("tree")

    assert wait_until(lambda: feedback_of(session).consecutive_hits >= 10, timeout=5.0)
    assert classifier.max_in_flight == 1
    assert session.snapshot().frames_dropped > 0
    assert session.snapshot().inference_ms > 0


def test_no_person_results_never_count_as_misses(make_session):
    session = make_session(ScriptedClassifier([NO_PERSON] * 10))
    events = EventRecorder()
    session.subscribe(events)
    session.start_session("tree")

    assert wait_until(lambda: len(events.of_kind("feedback")) == 10)
    state = feedback_of(session)
    assert state.status is FeedbackStatus.NO_PERSON_DETECTED
    assert state.consecutive_misses == 0
    assert events.of_kind("tutorial") == []
    assert snapshot_payload(session.snapshot())["message"] == "Move into frame"


def test_failed_frame_is_skipped(make_session):
    session = make_session(ScriptedClassifier([RuntimeError("glitch"), result("tree", 0.9)]))
    session.start_session("tree")
    assert wait_until(lambda: feedback_of(session).consecutive_hits == 1)
    assert session.phase is SessionPhase.RUNNING


def test_model_lost_mid_session_fails_session(make_session):
    session = make_session(ScriptedClassifier([ModelUnavailableError("gpu reset")]))
    session.start_session("tree")
    assert wait_until(lambda: session.phase is SessionPhase.FAILED)
    snapshot = session.snapshot()
    assert snapshot.error_code == "model_unavailable"
    assert claimed_devices() == set()


def test_stop_discards_late_results_and_releases_camera(make_session):
    classifier = GatedClassifier()
    session = make_session(classifier)
    events = EventRecorder()
    session.subscribe(events)
    session.start_session("tree")
    assert classifier.started.wait(2.0)

    session.stop_session()
    assert session.phase is SessionPhase.IDLE
    assert claimed_devices() == set()

    classifier.release()
    time.sleep(0.1)
    state = feedback_of(session)
    assert state.status is FeedbackStatus.IDLE
    assert state.consecutive_misses == 0
    assert events.of_kind("feedback") == []


def test_stop_is_idempotent(make_session):
    session = make_session()
    events = EventRecorder()
    session.subscribe(events)
    session.stop_session()
    session.stop_session()
    assert events.events == []


def test_pause_discards_in_flight_result(make_session):
    classifier = GatedClassifier()
    session = make_session(classifier)
    session.start_session("tree")
    assert classifier.started.wait(2.0)

    session.pause()
    classifier.release()

    assert wait_until(lambda: session.snapshot().results_discarded == 1)
    state = feedback_of(session)
    assert state.status is FeedbackStatus.IDLE
    assert state.consecutive_misses == 0


def test_pause_and_resume_preserve_streaks(make_session):
    session = make_session(ScriptedClassifier([result("plank", 0.9)] * 3))
    session.start_session("tree")
    assert wait_until(lambda: feedback_of(session).consecutive_misses == 3)

    session.pause()
    session.pause()
    assert session.phase is SessionPhase.PAUSED
    paused = feedback_of(session)
    assert paused.status is FeedbackStatus.IDLE
    assert paused.consecutive_misses == 3
    assert snapshot_payload(session.snapshot())["message"] == "Paused"

    session.resume()
    assert session.phase is SessionPhase.RUNNING
    resumed = feedback_of(session)
    assert resumed.status is FeedbackStatus.EVALUATING
    assert resumed.consecutive_misses == 3


def test_pause_and_resume_require_a_session(make_session):
    session = make_session()
    with pytest.raises(SessionNotStartedError):
        session.pause()
    with pytest.raises(SessionNotStartedError):
        session.resume()
    with pytest.raises(SessionNotStartedError):
        session.switch_camera()


def test_start_rejects_unknown_pose_and_double_start(make_session):
    session = make_session()
    with pytest.raises(UnknownPoseError):
        session.start_session("lotus")
    assert session.phase is SessionPhase.IDLE

    session.start_session("tree")
    with pytest.raises(SessionAlreadyActiveError):
        session.start_session("plank")


def test_restart_after_stop_uses_new_target(make_session):
    session = make_session()
    session.start_session("tree")
    session.stop_session()
    session.start_session("plank", "back")
    snapshot = session.snapshot()
    assert snapshot.phase is SessionPhase.RUNNING
    assert snapshot.target_pose == "plank"
    assert snapshot.camera_position is CameraPosition.BACK
    assert claimed_devices() == {1}


def test_denied_never_touches_camera_and_grant_completes_start(make_session):
    permissions = StaticPermissions(DENIED)
    captures = FakeCaptureFactory()
    classifier = ScriptedClassifier()
    session = make_session(classifier, permissions=permissions, captures=captures)

    assert session.start_session("tree") is DENIED
    assert session.phase is SessionPhase.UNAUTHORIZED
    assert captures.opened == []
    assert not classifier.loaded
    assert snapshot_payload(session.snapshot())["message"] == "Camera access required. Please enable in settings."

    permissions.resolve(AUTHORIZED)
    assert session.phase is SessionPhase.RUNNING
    assert claimed_devices() == {0}


def test_unresolved_authorization_times_out(make_session):
    permissions = StaticPermissions(NOT_DETERMINED)
    captures = FakeCaptureFactory()
    session = make_session(permissions=permissions, captures=captures, authorization_timeout=0.05)
    events = EventRecorder()
    session.subscribe(events)

    assert session.start_session("tree") is NOT_DETERMINED
    assert session.phase is SessionPhase.AUTHORIZATION_UNRESOLVED
    assert permissions.requests == 1
    assert captures.opened == []
    assert len(events.of_kind("authorization")) == 2

    permissions.resolve(AUTHORIZED)
    assert session.phase is SessionPhase.RUNNING


def test_request_granted_starts_capture(make_session):
    permissions = StaticPermissions(NOT_DETERMINED, grant_on_request=AUTHORIZED)
    session = make_session(permissions=permissions)
    assert session.start_session("tree") is AUTHORIZED
    assert session.phase is SessionPhase.RUNNING


def test_request_denied_is_unauthorized(make_session):
    permissions = StaticPermissions(NOT_DETERMINED, grant_on_request=DENIED)
    captures = FakeCaptureFactory()
    session = make_session(permissions=permissions, captures=captures)
    assert session.start_session("tree") is DENIED
    assert session.phase is SessionPhase.UNAUTHORIZED
    assert captures.opened == []


def test_missing_model_fails_before_camera_opens(make_session):
    captures = FakeCaptureFactory()
    classifier = ScriptedClassifier(load_error=True)
    session = make_session(classifier, captures=captures)

    with pytest.raises(ModelUnavailableError):
        session.start_session("tree")
    snapshot = session.snapshot()
    assert snapshot.phase is SessionPhase.FAILED
    assert snapshot.error_code == "model_unavailable"
    assert captures.opened == []

    classifier.load_error = False
    session.start_session("tree")
    assert session.phase is SessionPhase.RUNNING


def test_busy_camera_fails_fast(make_session, authorized):
    holder = FrameSource(positions={"front": 0}, permissions=authorized, capture_factory=FakeCaptureFactory())
    holder.configure(CameraPosition.FRONT)
    session = make_session()
    try:
        with pytest.raises(CameraBusyError):
            session.start_session("tree")
        assert session.snapshot().error_code == "busy"
        assert session.phase is SessionPhase.FAILED
    finally:
        holder.stop()


def test_camera_dying_mid_session_fails_session(make_session, capture_factory):
    session = make_session(ScriptedClassifier([result("tree", 0.9)] * 1000))
    session.start_session("tree")
    capture_factory.opened[0].readable = False

    assert wait_until(lambda: session.phase is SessionPhase.FAILED, timeout=5.0)
    assert session.snapshot().error_code == "device_error"
    assert claimed_devices() == set()


def test_switch_camera_keeps_session_running(make_session):
    session = make_session(ScriptedClassifier([result("plank", 0.9)] * 2))
    session.start_session("tree", CameraPosition.FRONT)
    assert wait_until(lambda: feedback_of(session).consecutive_misses == 2)

    session.switch_camera()

    snapshot = session.snapshot()
    assert snapshot.phase is SessionPhase.RUNNING
    assert snapshot.camera_position is CameraPosition.BACK
    assert snapshot.feedback.consecutive_misses == 2
    assert claimed_devices() == {1}


def test_failed_switch_keeps_feedback_and_resume_restarts_original(make_session):
    captures = FakeCaptureFactory(missing=[1])
    session = make_session(ScriptedClassifier([result("plank", 0.9)] * 2), captures=captures)
    events = EventRecorder()
    session.subscribe(events)
    session.start_session("tree", CameraPosition.FRONT)
    assert wait_until(lambda: feedback_of(session).consecutive_misses == 2)

    with pytest.raises(CameraSwitchFailedError):
        session.switch_camera()

    snapshot = session.snapshot()
    assert snapshot.phase is SessionPhase.SWITCH_FAILED
    assert snapshot.error_code == "switch_failed"
    assert snapshot.feedback.consecutive_misses == 2
    assert events.of_kind("error")

    session.resume()
    snapshot = session.snapshot()
    assert snapshot.phase is SessionPhase.RUNNING
    assert snapshot.camera_position is CameraPosition.FRONT
    assert snapshot.error_code is None
    assert claimed_devices() == {0}


def test_broken_observer_does_not_stop_feedback(make_session):
    def explode(event):
        raise ValueError("observer bug")

    session = make_session(ScriptedClassifier([result("tree", 0.9)] * 2))
    session.subscribe(explode)
    session.start_session("tree")
    assert wait_until(lambda: feedback_of(session).consecutive_hits == 2)


def test_close_releases_classifier(make_session):
    classifier = ScriptedClassifier()
    session = make_session(classifier)
    session.start_session("tree")
    session.close()
    assert classifier.closed
    assert session.phase is SessionPhase.IDLE


class LateGrantPermissions(StaticPermissions):
    """Grants access while the session is reading the status, but hands back the value from before the grant."""

    def __init__(self, grant_on_query=2):
        super().__init__(NOT_DETERMINED)
        self.grant_on_query = grant_on_query
        self.queries = 0

    def status(self):
        self.queries += 1
        current = super().status()
        if self.queries == self.grant_on_query:
            self.resolve(AUTHORIZED)
        return current


def test_grant_racing_the_timeout_still_starts_capture(make_session):
    permissions = LateGrantPermissions()
    session = make_session(permissions=permissions, authorization_timeout=0.05)

    assert session.start_session("tree") is AUTHORIZED
    assert permissions.status() is AUTHORIZED
    assert session.phase is SessionPhase.RUNNING
    assert claimed_devices() == {0}


def test_revoked_access_stops_capture_and_regrant_resumes(make_session):
    permissions = StaticPermissions(AUTHORIZED)
    classifier = ScriptedClassifier([result("tree", 0.9)] * 2)
    session = make_session(classifier, permissions=permissions)
    session.start_session("tree")
    assert wait_until(lambda: feedback_of(session).consecutive_hits == 2)

    permissions.resolve(DENIED)

    snapshot = session.snapshot()
    assert snapshot.phase is SessionPhase.UNAUTHORIZED
    assert snapshot.authorization is DENIED
    assert snapshot.feedback.status is FeedbackStatus.IDLE
    assert snapshot.feedback.consecutive_hits == 2
    assert claimed_devices() == set()
    assert snapshot_payload(snapshot)["message"] == "Camera access required. Please enable in settings."

    permissions.resolve(AUTHORIZED)

    snapshot = session.snapshot()
    assert snapshot.phase is SessionPhase.RUNNING
    assert snapshot.target_pose == "tree"
    assert snapshot.feedback.consecutive_hits == 2
    assert claimed_devices() == {0}


def test_revoked_access_while_paused_releases_camera(make_session):
    permissions = StaticPermissions(AUTHORIZED)
    session = make_session(permissions=permissions)
    session.start_session("tree")
    session.pause()

    permissions.resolve(CameraAuthorizationStatus.RESTRICTED)

    assert session.phase is SessionPhase.UNAUTHORIZED
    assert claimed_devices() == set()


def test_device_permissions_grant_found_on_refresh(make_session, tmp_path, monkeypatch):
    (tmp_path / "video0").touch()
    monkeypatch.setattr(permissions_module.os, "access", lambda path, mode: False)
    permissions = DeviceNodePermissions(pattern=str(tmp_path / "video*"), platform="linux")
    session = make_session(permissions=permissions)

    assert session.start_session("tree") is DENIED
    assert session.refresh_authorization() is DENIED
    assert session.phase is SessionPhase.UNAUTHORIZED

    monkeypatch.setattr(permissions_module.os, "access", lambda path, mode: True)
    assert session.refresh_authorization() is AUTHORIZED
    assert session.phase is SessionPhase.RUNNING
    assert claimed_devices() == {0}
