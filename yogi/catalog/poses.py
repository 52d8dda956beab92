from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from yogi.utils.structures import PoseMetadata

DIFFICULTIES = ("beginner", "intermediate", "advanced")


class UnknownPoseError(KeyError):
    code = "unknown_pose"


class PoseCatalog:
    """Read-only pose metadata keyed by the classifier's label vocabulary."""

    def __init__(self, poses: Iterable[PoseMetadata]) -> None:
        self._poses: Dict[str, PoseMetadata] = {}
        for pose in poses:
            if pose.label in self._poses:
                raise ValueError(f"Duplicate pose label in catalog: {pose.label}")
            if pose.difficulty not in DIFFICULTIES:
                raise ValueError(f"Unsupported difficulty for {pose.label}: {pose.difficulty}")
            self._poses[pose.label] = pose

    @classmethod
    def from_yaml(cls, path: str | Path) -> "PoseCatalog":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoseCatalog":
        poses: List[PoseMetadata] = []
        for entry in data.get("poses", []):
            label = str(entry["label"])
            poses.append(
                PoseMetadata(
                    label=label,
                    name=str(entry.get("name", label.capitalize())),
                    description=str(entry.get("description", "")),
                    difficulty=str(entry.get("difficulty", "beginner")),
                    instructions=tuple(str(step) for step in entry.get("instructions", [])),
                    media_url=entry.get("media_url"),
                    is_video=bool(entry.get("is_video", False)),
                )
            )
        return cls(poses)

    def __contains__(self, label: object) -> bool:
        return label in self._poses

    def __len__(self) -> int:
        return len(self._poses)

    def lookup(self, label: str) -> PoseMetadata:
        try:
            return self._poses[label]
        except KeyError:
            raise UnknownPoseError(label) from None

    def labels(self) -> List[str]:
        return list(self._poses.keys())

    def poses(self, difficulty: Optional[str] = None) -> List[PoseMetadata]:
        if difficulty is None:
            return list(self._poses.values())
        return [pose for pose in self._poses.values() if pose.difficulty == difficulty]
