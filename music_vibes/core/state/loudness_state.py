# music_vibes/core/state/loudness_state.py
from __future__ import annotations
from collections import deque
from typing import Deque, Optional
import threading

from music_vibes.core.level_estimator import LoudnessSample


class LoudnessState:
    """
    Overwrite-on-write slot for the latest LoudnessSample; not a queue.

    Written by the capture thread, read by the dispatcher tick and the log line.
    Keeps a short history for the periodic level log.
    """

    def __init__(self, history: int = 32):
        self._lock = threading.Lock()
        self._latest: Optional[LoudnessSample] = None
        self._hist: Deque[float] = deque(maxlen=history)

    def update(self, sample: LoudnessSample) -> None:
        with self._lock:
            self._latest = sample
            self._hist.append(sample.level)

    def latest(self) -> Optional[LoudnessSample]:
        with self._lock:
            return self._latest

    def level(self) -> float:
        """Latest level, 0.0 before the first window completes."""
        with self._lock:
            return self._latest.level if self._latest is not None else 0.0

    def peak(self) -> float:
        with self._lock:
            return max(self._hist) if self._hist else 0.0
