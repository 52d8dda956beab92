from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from yogi.utils.structures import FeedbackStatus

STATUS_MESSAGES: Dict[FeedbackStatus, str] = {
    FeedbackStatus.IDLE: "",
    FeedbackStatus.EVALUATING: "Analyzing pose...",
    FeedbackStatus.CORRECT: "Great! Keep holding the pose",
    FeedbackStatus.NEEDS_ADJUSTMENT: "Adjust your position",
    FeedbackStatus.NO_PERSON_DETECTED: "Move into frame",
}

# Keyed by session phase value; these override the per-frame status message.
PHASE_MESSAGES: Dict[str, str] = {
    "awaiting_authorization": "Waiting for camera permission...",
    "authorization_unresolved": "Camera permission has not been granted yet.",
    "unauthorized": "Camera access required. Please enable in settings.",
    "paused": "Paused",
    "switch_failed": "Could not switch cameras. Resume to try again.",
    "failed": "Camera or model unavailable. Start the session again to retry.",
}

STATUS_COLORS: Dict[FeedbackStatus, Tuple[int, int, int]] = {
    FeedbackStatus.IDLE: (200, 200, 200),
    FeedbackStatus.EVALUATING: (255, 255, 255),
    FeedbackStatus.CORRECT: (0, 200, 0),  # green
    FeedbackStatus.NEEDS_ADJUSTMENT: (0, 0, 255),  # red
    FeedbackStatus.NO_PERSON_DETECTED: (0, 215, 255),  # amber
}

TUTORIAL_PROMPT = [
    "Need help? Would you like to watch a tutorial on this pose?",
    "Press T to watch the tutorial, K to keep practicing.",
]

__all__ = [
    "FeedbackOverlay",
    "PHASE_MESSAGES",
    "STATUS_MESSAGES",
    "feedback_message",
]


def feedback_message(phase: str, status: FeedbackStatus) -> str:
    return PHASE_MESSAGES.get(phase) or STATUS_MESSAGES.get(status, "")


class FeedbackOverlay:
    def __init__(self, alpha: float = 0.8, font_scale: float = 0.7, margin: int = 16) -> None:
        self.alpha = alpha
        self.font = cv2.FONT_HERSHEY_SIMPLEX
        self.font_scale = font_scale
        self.small_scale = font_scale * 0.75
        self.margin = margin

    def draw(
        self,
        frame: np.ndarray,
        snapshot: Any,
        pose_name: str,
        instructions: Sequence[str] = (),
        tutorial_prompt: bool = False,
        fps: Optional[float] = None,
    ) -> np.ndarray:
        overlay = frame.copy()
        status: FeedbackStatus = snapshot.feedback.status
        header = [pose_name]
        if snapshot.camera_position is not None:
            header.append(f"Camera: {snapshot.camera_position.value}")
        self._draw_text_block(overlay, header, self.font_scale, (255, 255, 255), 2, self.margin, self.margin)
        if fps is not None:
            cv2.putText(
                overlay,
                f"FPS: {fps:.1f}",
                (overlay.shape[1] - 140, 30),
                self.font,
                0.6,
                (255, 255, 0),
                2,
            )
        message = feedback_message(snapshot.phase.value, status)
        lines: List[Tuple[str, Tuple[int, int, int], float]] = []
        if message:
            lines.append((message, STATUS_COLORS.get(status, (255, 255, 255)), self.font_scale))
        if tutorial_prompt:
            lines.extend((text, (90, 255, 255), self.small_scale) for text in TUTORIAL_PROMPT)
        for step in instructions:
            lines.append((f"- {step}", (200, 200, 200), self.small_scale))
        self._draw_bottom_block(overlay, lines)
        return cv2.addWeighted(overlay, self.alpha, frame, 1 - self.alpha, 0)

    def _draw_bottom_block(self, frame: np.ndarray, lines: List[Tuple[str, Tuple[int, int, int], float]]) -> None:
        if not lines:
            return
        block_height = int(sum(self._line_height(scale) for _, _, scale in lines) + 12)
        block_top = frame.shape[0] - block_height - self.margin
        block_left = self.margin
        block_right = frame.shape[1] - self.margin
        bg = frame.copy()
        cv2.rectangle(bg, (block_left, block_top), (block_right, block_top + block_height), (10, 16, 30), -1)
        cv2.addWeighted(bg, 0.45, frame, 0.55, 0, frame)

        cursor_y = block_top + 10
        for text, color, scale in lines:
            cv2.putText(
                frame,
                text,
                (block_left + 12, cursor_y + int(self._line_height(scale) * 0.75)),
                self.font,
                scale,
                color,
                2 if scale >= self.font_scale else 1,
                cv2.LINE_AA,
            )
            cursor_y += self._line_height(scale)

    def _draw_text_block(
        self,
        frame: np.ndarray,
        lines: List[str],
        scale: float,
        color: Tuple[int, int, int],
        thickness: int,
        x: int,
        y: int,
    ) -> None:
        if not lines:
            return
        line_height = self._line_height(scale)
        max_width = max(cv2.getTextSize(line, self.font, scale, thickness)[0][0] for line in lines)
        bottom = y + line_height * len(lines) + 12
        right = x + max_width + 24
        bg = frame.copy()
        cv2.rectangle(bg, (x - 12, y - 8), (right, bottom), (10, 16, 30), -1)
        cv2.addWeighted(bg, 0.45, frame, 0.55, 0, frame)
        for idx, line in enumerate(lines):
            cv2.putText(
                frame,
                line,
                (x, y + 12 + idx * line_height),
                self.font,
                scale,
                color,
                thickness,
                cv2.LINE_AA,
            )

    def _line_height(self, scale: float) -> int:
        return max(18, int(26 * scale))
