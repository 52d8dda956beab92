from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, List, Optional, Set

import numpy as np
import torch
from loguru import logger
from ultralytics import YOLO

from yogi.utils.structures import UNKNOWN_LABEL, InferenceResult, LabelScore


class InferenceError(RuntimeError):
    code = "inference_error"


class ModelUnavailableError(InferenceError):
    code = "model_unavailable"


class NoPersonDetectedError(InferenceError):
    code = "no_person_detected"


def normalize_label(raw_label: str) -> str:
    return raw_label.lower().replace(" ", "").replace("-", "").replace("_", "")


def resolve_device(preference: str | bool | None) -> str:
    pref = str(preference).lower()
    if pref == "cpu":
        return "cpu"
    if pref in {"auto", "cuda", "gpu", "true", "1"} and torch.cuda.is_available():
        return "cuda"
    return "cpu"


class PoseClassifier(ABC):
    """
    Model boundary: image in, ranked pose labels out.

    `classify` must be deterministic for a fixed frame and model version.
    """

    @abstractmethod
    def load(self) -> None: ...

    @abstractmethod
    def classify(self, frame: np.ndarray) -> InferenceResult: ...

    def close(self) -> None:
        pass


class YOLOPoseClassifier(PoseClassifier):
    def __init__(
        self,
        weights_path: str,
        device: str = "cpu",
        top_k: int = 5,
        image_size: int = 224,
        vocabulary: Optional[Iterable[str]] = None,
        presence_detector: Any = None,
    ) -> None:
        self.weights_path = Path(weights_path)
        self.device = device
        self.top_k = max(1, top_k)
        self.image_size = image_size
        self.vocabulary: Optional[Set[str]] = {normalize_label(v) for v in vocabulary} if vocabulary else None
        self.presence_detector = presence_detector
        self.model: Any = None
        self.class_names: dict = {}

    @property
    def loaded(self) -> bool:
        return self.model is not None

    def load(self) -> None:
        if self.model is not None:
            return
        if not self.weights_path.is_file():
            raise ModelUnavailableError(f"Expected pose classifier weights at {self.weights_path}")
        try:
            model = YOLO(str(self.weights_path))
        except Exception as exc:
            raise ModelUnavailableError(f"Failed to load pose classifier from {self.weights_path}: {exc}") from exc
        if getattr(model, "task", "classify") != "classify":
            raise ModelUnavailableError(
                f"{self.weights_path} is a '{model.task}' model; a classification checkpoint is required"
            )
        model.to(self.device)
        self.model = model
        self.class_names = dict(model.names)
        logger.info("Loaded pose classifier {} on {} ({} classes)", self.weights_path.name, self.device, len(self.class_names))

    def classify(self, frame: np.ndarray) -> InferenceResult:
        if self.model is None:
            raise ModelUnavailableError("pose classifier is not loaded")
        if self.presence_detector is not None and not self.presence_detector.is_present(frame):
            raise NoPersonDetectedError("no person detected in frame")
        results = self.model.predict(source=frame, imgsz=self.image_size, device=self.device, verbose=False)
        if not results or results[0].probs is None:
            return InferenceResult()
        scores = results[0].probs.data.cpu().numpy()
        return InferenceResult(self._rank(scores))

    def _rank(self, scores: np.ndarray) -> tuple:
        order = np.argsort(-scores, kind="stable")[: self.top_k]
        ranked: List[LabelScore] = []
        for idx in order:
            raw_label = self.class_names.get(int(idx), str(int(idx)))
            label = normalize_label(raw_label)
            if self.vocabulary is not None and label not in self.vocabulary:
                label = UNKNOWN_LABEL
            confidence = float(min(1.0, max(0.0, scores[idx])))
            ranked.append(LabelScore(label, confidence))
        return tuple(ranked)

    def close(self) -> None:
        if self.presence_detector is not None:
            self.presence_detector.close()
        self.model = None
