from types import SimpleNamespace

import numpy as np
import pytest

from yogi.detectors.yolo_classifier import (
    ModelUnavailableError,
    NoPersonDetectedError,
    YOLOPoseClassifier,
    normalize_label,
    resolve_device,
)
from yogi.pose.mediapipe_presence import KEY_JOINTS, POSE_LANDMARKS, visible_ratio
from yogi.utils.structures import UNKNOWN_LABEL

CLASS_NAMES = {0: "downdog", 1: "goddess", 2: "plank", 3: "tree", 4: "warrior2", 5: "Lotus"}


class FakeProbs:
    def __init__(self, scores):
        self.data = SimpleNamespace(cpu=lambda: SimpleNamespace(numpy=lambda: np.asarray(scores, dtype=np.float32)))


class FakeYOLO:
    def __init__(self, scores):
        self.scores = scores
        self.calls = []

    def predict(self, source, imgsz, device, verbose):
        self.calls.append((imgsz, device))
        return [SimpleNamespace(probs=FakeProbs(self.scores))]


class FakePresence:
    def __init__(self, present):
        self.present = present
        self.closed = False

    def is_present(self, frame):
        return self.present

    def close(self):
        self.closed = True


def loaded_classifier(scores, presence=None, top_k=5):
    classifier = YOLOPoseClassifier(
        "weights/none.pt",
        top_k=top_k,
        vocabulary=["downdog", "goddess", "plank", "tree", "warrior2"],
        presence_detector=presence,
    )
    classifier.model = FakeYOLO(scores)
    classifier.class_names = dict(CLASS_NAMES)
    return classifier


@pytest.fixture
def frame():
    return np.zeros((8, 8, 3), dtype=np.uint8)


def test_normalize_label():
    assert normalize_label("Warrior-2") == "warrior2"
    assert normalize_label("Down_Dog") == "downdog"
    assert normalize_label("tree pose") == "treepose"


def test_resolve_device_cpu():
    assert resolve_device("cpu") == "cpu"
    assert resolve_device("unknown") == "cpu"


def test_classify_ranks_and_truncates(frame):
    classifier = loaded_classifier([0.05, 0.10, 0.15, 0.60, 0.08, 0.02], top_k=3)

    ranked = classifier.classify(frame)

    assert [p.label for p in ranked.predictions] == ["tree", "plank", "goddess"]
    assert ranked.top.confidence == pytest.approx(0.60)
    assert classifier.model.calls == [(224, "cpu")]


def test_classify_is_deterministic_for_same_frame(frame):
    classifier = loaded_classifier([0.2, 0.2, 0.2, 0.2, 0.2, 0.0])
    first = classifier.classify(frame)
    second = classifier.classify(frame)
    assert first == second
    assert [p.label for p in first.predictions] == ["downdog", "goddess", "plank", "tree", "warrior2"]


def test_labels_outside_vocabulary_are_unknown(frame):
    classifier = loaded_classifier([0.0, 0.0, 0.1, 0.1, 0.0, 0.8])
    assert classifier.classify(frame).top.label == UNKNOWN_LABEL


def test_absent_person_raises(frame):
    presence = FakePresence(False)
    classifier = loaded_classifier([0.1] * 6, presence=presence)
    with pytest.raises(NoPersonDetectedError):
        classifier.classify(frame)
    assert classifier.model.calls == []

    classifier.close()
    assert presence.closed
    assert not classifier.loaded


def test_classify_before_load_raises(frame):
    classifier = YOLOPoseClassifier("weights/none.pt")
    with pytest.raises(ModelUnavailableError):
        classifier.classify(frame)


def test_load_missing_weights_raises(tmp_path):
    classifier = YOLOPoseClassifier(str(tmp_path / "missing.pt"))
    with pytest.raises(ModelUnavailableError, match="missing.pt"):
        classifier.load()


def test_visible_ratio_counts_key_joints():
    landmarks = np.zeros((33, 4), dtype=np.float32)
    for name in ("left_shoulder", "right_shoulder", "left_hip", "right_hip"):
        landmarks[POSE_LANDMARKS[name], 3] = 0.9
    assert visible_ratio(landmarks, 0.5) == pytest.approx(4 / len(KEY_JOINTS))
    assert visible_ratio(np.empty((0, 4)), 0.5) == 0.0
