from __future__ import annotations

import threading
import time
from collections import deque
from typing import Deque, Optional


class FPSMeter:
    def __init__(self, window: int = 30) -> None:
        self.window = max(1, window)
        self.buffer: Deque[float] = deque(maxlen=self.window)
        self.last_time: Optional[float] = None

    def tick(self, now: Optional[float] = None) -> float:
        now = time.perf_counter() if now is None else now
        if self.last_time is None:
            self.last_time = now
            return 0.0
        delta = now - self.last_time
        self.last_time = now
        fps = 0.0 if delta <= 0 else 1.0 / delta
        self.buffer.append(fps)
        return fps

    def get_fps(self) -> float:
        if not self.buffer:
            return 0.0
        return float(sum(self.buffer) / len(self.buffer))


class LatencyMeter:
    """Rolling average of inference durations, safe to read from any lane."""

    def __init__(self, window: int = 30) -> None:
        self.samples: Deque[float] = deque(maxlen=max(1, window))
        self._lock = threading.Lock()

    def record(self, seconds: float) -> None:
        with self._lock:
            self.samples.append(max(0.0, seconds))

    def average_ms(self) -> float:
        with self._lock:
            if not self.samples:
                return 0.0
            return float(sum(self.samples) / len(self.samples) * 1000.0)

    def reset(self) -> None:
        with self._lock:
            self.samples.clear()
