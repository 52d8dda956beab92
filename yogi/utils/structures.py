from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import Enum
from typing import List, Mapping, Optional, Tuple

import numpy as np

UNKNOWN_LABEL = "unknown"


class CameraPosition(str, Enum):
    FRONT = "front"
    BACK = "back"

    def opposite(self) -> "CameraPosition":
        return CameraPosition.BACK if self is CameraPosition.FRONT else CameraPosition.FRONT


class CameraAuthorizationStatus(str, Enum):
    NOT_DETERMINED = "not_determined"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    RESTRICTED = "restricted"


class FeedbackStatus(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    CORRECT = "correct"
    NEEDS_ADJUSTMENT = "needs_adjustment"
    NO_PERSON_DETECTED = "no_person_detected"


@dataclass
class Frame:
    image: np.ndarray  # BGR, as delivered by OpenCV
    frame_id: int
    timestamp: float
    position: CameraPosition


@dataclass(frozen=True)
class LabelScore:
    label: str
    confidence: float


@dataclass(frozen=True)
class InferenceResult:
    """Ranked classifier output for one sampled frame."""

    predictions: Tuple[LabelScore, ...] = ()

    def __post_init__(self) -> None:
        for score in self.predictions:
            if not 0.0 <= score.confidence <= 1.0:
                raise ValueError(f"confidence for {score.label!r} outside [0, 1]: {score.confidence}")
        ordered = tuple(sorted(self.predictions, key=lambda s: s.confidence, reverse=True))
        object.__setattr__(self, "predictions", ordered)

    @classmethod
    def from_scores(cls, scores: Mapping[str, float]) -> "InferenceResult":
        return cls(tuple(LabelScore(label, float(conf)) for label, conf in scores.items()))

    @classmethod
    def from_pairs(cls, pairs: List[Tuple[str, float]]) -> "InferenceResult":
        return cls(tuple(LabelScore(label, float(conf)) for label, conf in pairs))

    @property
    def top(self) -> Optional[LabelScore]:
        return self.predictions[0] if self.predictions else None


@dataclass
class FeedbackState:
    status: FeedbackStatus = FeedbackStatus.IDLE
    consecutive_misses: int = 0
    consecutive_hits: int = 0
    session_start_time: Optional[float] = None
    last_tutorial_prompt_time: Optional[float] = None

    def copy(self) -> "FeedbackState":
        return copy.copy(self)


@dataclass(frozen=True)
class SuggestTutorial:
    pose: str
    issued_at: float
    misses: int


@dataclass(frozen=True)
class PoseMetadata:
    label: str
    name: str
    description: str
    difficulty: str  # beginner | intermediate | advanced
    instructions: Tuple[str, ...] = ()
    media_url: Optional[str] = None
    is_video: bool = False
