from __future__ import annotations

from typing import Dict, Optional, Tuple

import cv2
import numpy as np
import mediapipe as mp

POSE_LANDMARKS: Dict[str, int] = {
    "left_shoulder": 11,
    "right_shoulder": 12,
    "left_hip": 23,
    "right_hip": 24,
    "left_knee": 25,
    "right_knee": 26,
    "left_ankle": 27,
    "right_ankle": 28,
}

KEY_JOINTS: Tuple[int, ...] = tuple(POSE_LANDMARKS.values())


def visible_ratio(landmarks: np.ndarray, visibility_threshold: float, joints: Tuple[int, ...] = KEY_JOINTS) -> float:
    """Share of `joints` whose visibility column meets the threshold; landmarks shape (33, 4)."""
    if landmarks.size == 0 or not joints:
        return 0.0
    visible = sum(1 for idx in joints if idx < landmarks.shape[0] and landmarks[idx][3] >= visibility_threshold)
    return visible / len(joints)


class MediaPipePresenceDetector:
    """Decides whether a person is in frame before the pose classifier runs."""

    def __init__(
        self,
        model_complexity: int = 1,
        min_detection_confidence: float = 0.5,
        visibility_threshold: float = 0.5,
        min_visible_ratio: float = 0.5,
    ) -> None:
        # Per-frame detection only; no tracking state carries between calls.
        self.pose = mp.solutions.pose.Pose(
            static_image_mode=True,
            model_complexity=model_complexity,
            smooth_landmarks=False,
            enable_segmentation=False,
            min_detection_confidence=min_detection_confidence,
        )
        self.visibility_threshold = visibility_threshold
        self.min_visible_ratio = min_visible_ratio

    def landmarks(self, frame: np.ndarray) -> Optional[np.ndarray]:
        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        result = self.pose.process(rgb)
        if not result.pose_landmarks:
            return None
        h, w = frame.shape[:2]
        return np.array(
            [
                [lm.x * w, lm.y * h, lm.z * w, lm.visibility]
                for lm in result.pose_landmarks.landmark
            ],
            dtype=np.float32,
        )

    def is_present(self, frame: np.ndarray) -> bool:
        landmarks = self.landmarks(frame)
        if landmarks is None:
            return False
        return visible_ratio(landmarks, self.visibility_threshold) >= self.min_visible_ratio

    def close(self) -> None:
        self.pose.close()
