from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PoseResponse(BaseModel):
    label: str
    name: str
    description: str
    difficulty: str
    instructions: List[str]
    media_url: Optional[str] = None
    is_video: bool = False


class PoseListResponse(BaseModel):
    poses: List[PoseResponse]


class StartSessionRequest(BaseModel):
    target_pose: str = Field(min_length=1, max_length=64)
    camera_position: str = Field(default="front", pattern="^(front|back)$")


class SessionStatusResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    phase: str
    targetPose: Optional[str] = None
    camera: Optional[str] = None
    authorization: str
    status: str
    message: str
    consecutiveHits: int = 0
    consecutiveMisses: int = 0
    errorCode: Optional[str] = None
    error: Optional[str] = None
    inferenceMs: float = 0.0
    framesDropped: int = 0


class TutorialSuggestion(BaseModel):
    pose: str
    misses: int


class WebsocketEvent(SessionStatusResponse):
    event: str
    timestamp: float
    suggestTutorial: Optional[TutorialSuggestion] = None
