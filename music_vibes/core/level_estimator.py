# music_vibes/core/level_estimator.py
# Windowed RMS loudness (time domain only, no FFT).
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Iterator, List
import numpy as np

from music_vibes.core.audio_source import AudioBlock

DEFAULT_WINDOW_S = 0.020


@dataclass(frozen=True)
class LoudnessSample:
    ts: float       # monotonic timestamp of the block that completed the window
    level: float    # RMS in [0, 1]


def rms(samples: np.ndarray) -> float:
    """RMS over every sample and channel; 0.0 for empty or silent input."""
    if samples.size == 0:
        return 0.0
    x = samples.astype(np.float64, copy=False)
    value = float(np.sqrt(np.mean(x * x)))
    if not np.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, value))


class LevelEstimator:
    """
    Accumulates AudioBlocks and emits one LoudnessSample per fixed window.

    The window is round(samplerate * window_s) frames. A block may complete
    more than one window; leftovers carry into the next window.
    """

    def __init__(self, samplerate: int, channels: int, window_s: float = DEFAULT_WINDOW_S):
        if samplerate <= 0 or channels <= 0:
            raise ValueError("samplerate and channels must be positive")
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        self.samplerate = int(samplerate)
        self.channels = int(channels)
        self.window_frames = max(1, int(round(self.samplerate * window_s)))

        self._buf = np.zeros((self.window_frames, self.channels), dtype=np.float32)
        self._filled = 0

    def push(self, block: AudioBlock) -> List[LoudnessSample]:
        if block.samplerate != self.samplerate or block.channels != self.channels:
            raise ValueError(
                f"Block format {block.channels}ch@{block.samplerate} does not match "
                f"estimator {self.channels}ch@{self.samplerate}"
            )
        out: List[LoudnessSample] = []
        data = block.samples.reshape(-1, self.channels)
        pos = 0
        while pos < data.shape[0]:
            take = min(self.window_frames - self._filled, data.shape[0] - pos)
            self._buf[self._filled:self._filled + take] = data[pos:pos + take]
            self._filled += take
            pos += take
            if self._filled == self.window_frames:
                out.append(LoudnessSample(ts=block.ts, level=rms(self._buf)))
                self._filled = 0
        return out

    def stream(self, blocks: Iterable[AudioBlock]) -> Iterator[LoudnessSample]:
        """Lazy form of push(): one sample per completed window, in arrival order."""
        for block in blocks:
            yield from self.push(block)
