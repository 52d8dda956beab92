from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from loguru import logger

from yogi.utils.structures import FeedbackState, FeedbackStatus, InferenceResult, SuggestTutorial

Clock = Callable[[], float]


@dataclass(frozen=True)
class FeedbackThresholds:
    correct_confidence: float = 0.70
    miss_streak: int = 8
    tutorial_cooldown_seconds: float = 60.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.correct_confidence <= 1.0:
            raise ValueError(f"correct_confidence must be within [0, 1], got {self.correct_confidence}")
        if self.miss_streak < 1:
            raise ValueError(f"miss_streak must be at least 1, got {self.miss_streak}")
        if self.tutorial_cooldown_seconds < 0:
            raise ValueError("tutorial_cooldown_seconds cannot be negative")

    @classmethod
    def from_config(cls, feedback_cfg: Optional[Dict[str, Any]]) -> "FeedbackThresholds":
        cfg = feedback_cfg or {}
        return cls(
            correct_confidence=float(cfg.get("correct_confidence", 0.70)),
            miss_streak=int(cfg.get("miss_streak", 8)),
            tutorial_cooldown_seconds=float(cfg.get("tutorial_cooldown_seconds", 60.0)),
        )


@dataclass(frozen=True)
class FeedbackUpdate:
    state: FeedbackState
    tutorial: Optional[SuggestTutorial] = None


class FeedbackStateMachine:
    """
    Debounced match/mismatch tracking against a single target pose.

    Only one thread may drive an instance; `state` hands out copies so other
    lanes never observe a half-applied transition. While idle (before
    `start()`, after `pause()` or `stop()`) incoming results are ignored.
    """

    def __init__(
        self,
        target: str,
        thresholds: Optional[FeedbackThresholds] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        if not target:
            raise ValueError("target pose is required")
        self.target = target
        self.thresholds = thresholds or FeedbackThresholds()
        self.clock = clock
        self._state = FeedbackState()

    @property
    def state(self) -> FeedbackState:
        return self._state.copy()

    @property
    def active(self) -> bool:
        return self._state.status is not FeedbackStatus.IDLE

    def start(self) -> FeedbackState:
        if self._state.session_start_time is None:
            self._state.session_start_time = self.clock()
        self._state.status = FeedbackStatus.EVALUATING
        return self.state

    def pause(self) -> FeedbackState:
        # Streaks survive a pause; only the status drops back to idle.
        self._state.status = FeedbackStatus.IDLE
        return self.state

    def resume(self) -> FeedbackState:
        return self.start()

    def stop(self) -> FeedbackState:
        self._state.status = FeedbackStatus.IDLE
        return self.state

    def observe(self, result: InferenceResult) -> Optional[FeedbackUpdate]:
        if not self.active:
            logger.debug("Ignoring inference result while idle")
            return None
        top = result.top
        state = self._state
        if top is not None and top.label == self.target and top.confidence >= self.thresholds.correct_confidence:
            state.status = FeedbackStatus.CORRECT
            state.consecutive_hits += 1
            state.consecutive_misses = 0
            return FeedbackUpdate(self.state)
        state.status = FeedbackStatus.NEEDS_ADJUSTMENT
        state.consecutive_misses += 1
        state.consecutive_hits = 0
        tutorial = self._maybe_suggest_tutorial()
        return FeedbackUpdate(self.state, tutorial)

    def observe_no_person(self) -> Optional[FeedbackUpdate]:
        if not self.active:
            logger.debug("Ignoring no-person result while idle")
            return None
        # Absence of a subject is missing data, not a wrong pose: misses stay untouched.
        self._state.status = FeedbackStatus.NO_PERSON_DETECTED
        self._state.consecutive_hits = 0
        return FeedbackUpdate(self.state)

    def _maybe_suggest_tutorial(self) -> Optional[SuggestTutorial]:
        state = self._state
        if state.consecutive_misses < self.thresholds.miss_streak:
            return None
        now = self.clock()
        last = state.last_tutorial_prompt_time
        if last is not None and now - last < self.thresholds.tutorial_cooldown_seconds:
            return None
        event = SuggestTutorial(pose=self.target, issued_at=now, misses=state.consecutive_misses)
        state.last_tutorial_prompt_time = now
        state.consecutive_misses = 0
        logger.info("Suggesting tutorial for {} after {} consecutive misses", self.target, event.misses)
        return event
