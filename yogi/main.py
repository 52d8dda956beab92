from __future__ import annotations

import argparse
import os
import threading
import time
import warnings
import webbrowser
from pathlib import Path
from typing import Optional

os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")
warnings.filterwarnings("ignore", message=r"SymbolDatabase\.GetPrototype\(\) is deprecated", category=UserWarning)

from absl import logging as absl_logging

absl_logging.set_verbosity(absl_logging.ERROR)

import cv2
from loguru import logger

from yogi.catalog.poses import PoseCatalog, UnknownPoseError
from yogi.detectors.yolo_classifier import InferenceError
from yogi.server.logging_utils import configure_logging
from yogi.server.session import PracticeSession, SessionEvent, SessionPhase, build_practice_session
from yogi.ui.config_panel import ConfigCancelledError, prompt_practice_config
from yogi.ui.overlay import FeedbackOverlay, feedback_message
from yogi.utils.camera import CameraError
from yogi.utils.config import (
    DEFAULT_POSE_CATALOG,
    DEFAULT_RUNTIME_CONFIG,
    POSE_CATALOG_ENV,
    RUNTIME_CONFIG_ENV,
    RuntimeConfig,
    load_runtime_config,
    resolve_config_path,
)
from yogi.utils.profiler import FPSMeter
from yogi.utils.structures import CameraPosition, PoseMetadata, SuggestTutorial

WINDOW_NAME = "Yogi Live Feedback"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Practice a yoga pose with live camera feedback")
    parser.add_argument("--pose", type=str, default=None, help="Target pose label (e.g. tree, warrior2)")
    parser.add_argument("--camera", type=str, default=None, choices=["front", "back"], help="Camera position")
    parser.add_argument("--runtime-config", type=Path, default=None, help="Runtime configuration")
    parser.add_argument("--catalog", type=Path, default=None, help="Pose catalog")
    parser.add_argument("--device", type=str, default=None, choices=["auto", "cpu", "cuda"], help="Inference device preference")
    parser.add_argument("--headless", action="store_true", help="Log feedback without opening a window")
    parser.add_argument("--duration", type=float, default=30.0, help="Seconds to run in headless mode")
    parser.add_argument("--log-level", type=str, default=None, help="Override the configured log level")
    return parser.parse_args()


class TutorialPrompt:
    """Latest tutorial suggestion, handed from the session loop to the display loop."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Optional[SuggestTutorial] = None

    def offer(self, suggestion: SuggestTutorial) -> None:
        with self._lock:
            self._pending = suggestion

    def pending(self) -> Optional[SuggestTutorial]:
        with self._lock:
            return self._pending

    def dismiss(self) -> None:
        with self._lock:
            self._pending = None


def open_tutorial(pose: PoseMetadata) -> None:
    print(f"\n{pose.name}: {pose.description}")
    for idx, step in enumerate(pose.instructions, start=1):
        print(f"  {idx}. {step}")
    if pose.media_url and pose.media_url.startswith(("http://", "https://")):
        webbrowser.open(pose.media_url)


def run_headless(session: PracticeSession, duration: float) -> None:
    def log_event(event: SessionEvent) -> None:
        snapshot = event.snapshot
        if event.kind == "tutorial" and event.tutorial is not None:
            logger.info("Tutorial suggested for {} after {} misses", event.tutorial.pose, event.tutorial.misses)
            return
        logger.info(
            "[{}] {} | hits={} misses={} | {:.1f} ms",
            event.kind,
            feedback_message(snapshot.phase.value, snapshot.feedback.status) or snapshot.phase.value,
            snapshot.feedback.consecutive_hits,
            snapshot.feedback.consecutive_misses,
            snapshot.inference_ms,
        )

    unsubscribe = session.subscribe(log_event)
    try:
        deadline = time.monotonic() + max(0.0, duration)
        while time.monotonic() < deadline and session.phase not in (SessionPhase.IDLE, SessionPhase.FAILED):
            time.sleep(0.2)
    finally:
        unsubscribe()


def run_window(
    session: PracticeSession,
    pose: PoseMetadata,
    overlay: FeedbackOverlay,
    runtime_cfg: RuntimeConfig,
    show_instructions: bool,
    show_fps: bool,
) -> None:
    prompt = TutorialPrompt()
    fps_meter = FPSMeter()
    mirror_front = bool(runtime_cfg.frame.get("mirror_front", True))

    def on_event(event: SessionEvent) -> None:
        if event.kind == "tutorial" and event.tutorial is not None:
            prompt.offer(event.tutorial)

    unsubscribe = session.subscribe(on_event)
    try:
        while True:
            snapshot = session.snapshot()
            preview = session.frame_source.preview()
            if preview is None:
                canvas = None
            else:
                canvas = preview.image
                if mirror_front and preview.position is CameraPosition.FRONT:
                    canvas = cv2.flip(canvas, 1)
            if canvas is not None:
                fps_meter.tick()
                annotated = overlay.draw(
                    canvas,
                    snapshot,
                    pose.name,
                    instructions=pose.instructions if show_instructions else (),
                    tutorial_prompt=prompt.pending() is not None,
                    fps=fps_meter.get_fps() if show_fps else None,
                )
                cv2.imshow(WINDOW_NAME, annotated)
            key = cv2.waitKey(15) & 0xFF
            if key == ord("q"):
                break
            if key == ord("c"):
                try:
                    session.switch_camera()
                except CameraError as exc:
                    print(f"Camera switch failed: {exc}. Press 'p' to restart the camera.")
            elif key == ord("p"):
                if snapshot.phase is SessionPhase.RUNNING:
                    session.pause()
                elif snapshot.phase in (SessionPhase.PAUSED, SessionPhase.SWITCH_FAILED):
                    try:
                        session.resume()
                    except CameraError as exc:
                        print(f"Unable to restart the camera: {exc}")
            elif key == ord("t") and prompt.pending() is not None:
                prompt.dismiss()
                if snapshot.phase is SessionPhase.RUNNING:
                    session.pause()
                open_tutorial(pose)
                print("Press 'p' in the preview window to resume practicing.")
            elif key == ord("k"):
                prompt.dismiss()
            if snapshot.phase in (SessionPhase.FAILED, SessionPhase.IDLE):
                print(feedback_message(snapshot.phase.value, snapshot.feedback.status) or "Session ended.")
                break
    finally:
        unsubscribe()
        cv2.destroyAllWindows()


def main() -> None:
    args = parse_args()
    runtime_path = resolve_config_path(args.runtime_config, RUNTIME_CONFIG_ENV, DEFAULT_RUNTIME_CONFIG)
    runtime_cfg: RuntimeConfig = load_runtime_config(str(runtime_path))
    configure_logging(args.log_level or str(runtime_cfg.logging.get("level", "INFO")))
    if args.device:
        runtime_cfg.inference["device"] = args.device
    catalog = PoseCatalog.from_yaml(resolve_config_path(args.catalog, POSE_CATALOG_ENV, DEFAULT_POSE_CATALOG))
    display_cfg = runtime_cfg.display
    default_camera = CameraPosition(args.camera or runtime_cfg.camera.get("default_position", "front"))
    show_instructions = bool(display_cfg.get("show_instructions", True))
    show_fps = bool(display_cfg.get("show_fps", False))

    if args.headless or args.pose:
        target_pose = args.pose or catalog.labels()[0]
        camera_position = default_camera
    else:
        try:
            selection = prompt_practice_config(
                catalog.poses(),
                catalog.labels()[0],
                default_camera,
                show_instructions,
                show_fps,
            )
        except ConfigCancelledError:
            print("Practice setup cancelled by user. Exiting.")
            return
        target_pose = selection.target_pose
        camera_position = selection.camera_position
        show_instructions = selection.show_instructions
        show_fps = selection.show_fps

    try:
        pose = catalog.lookup(target_pose)
    except UnknownPoseError:
        print(f"Unknown pose '{target_pose}'. Available poses: {', '.join(catalog.labels())}")
        return
    session = build_practice_session(runtime_cfg, catalog)
    overlay = FeedbackOverlay(
        alpha=float(display_cfg.get("overlay_alpha", 0.8)),
        font_scale=float(display_cfg.get("font_scale", 0.7)),
        margin=int(display_cfg.get("hud_margin", 16)),
    )
    try:
        try:
            session.start_session(pose.label, camera_position)
        except (CameraError, InferenceError) as exc:
            print(f"Unable to start practice: {exc}")
            return
        snapshot = session.snapshot()
        if snapshot.phase is not SessionPhase.RUNNING:
            print(feedback_message(snapshot.phase.value, snapshot.feedback.status))
            return
        if args.headless:
            run_headless(session, args.duration)
        else:
            run_window(session, pose, overlay, runtime_cfg, show_instructions, show_fps)
    finally:
        session.close()


if __name__ == "__main__":
    main()
