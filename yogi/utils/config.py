from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_RUNTIME_CONFIG = Path("configs/runtime.yaml")
DEFAULT_POSE_CATALOG = Path("configs/poses.yaml")
RUNTIME_CONFIG_ENV = "YOGI_RUNTIME_CONFIG"
POSE_CATALOG_ENV = "YOGI_POSE_CATALOG"


@dataclass
class RuntimeConfig:
    camera: Dict[str, Any] = field(default_factory=dict)
    frame: Dict[str, Any] = field(default_factory=dict)
    inference: Dict[str, Any] = field(default_factory=dict)
    presence: Dict[str, Any] = field(default_factory=dict)
    feedback: Dict[str, Any] = field(default_factory=dict)
    authorization: Dict[str, Any] = field(default_factory=dict)
    display: Dict[str, Any] = field(default_factory=dict)
    logging: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RuntimeConfig":
        data = data or {}
        return cls(
            camera=data.get("camera") or {},
            frame=data.get("frame") or {},
            inference=data.get("inference") or {},
            presence=data.get("presence") or {},
            feedback=data.get("feedback") or {},
            authorization=data.get("authorization") or {},
            display=data.get("display") or {},
            logging=data.get("logging") or {},
        )


def load_runtime_config(path: str) -> RuntimeConfig:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return RuntimeConfig.from_dict(data)


def resolve_config_path(explicit: Optional[str | Path], env_var: str, default: Path) -> Path:
    if explicit:
        return Path(explicit)
    from_env = os.getenv(env_var)
    if from_env:
        return Path(from_env)
    return default
