# music_vibes/core/intensity.py
# Loudness -> actuator intensity policy (cutoff + linear rescale, no smoothing).
from __future__ import annotations
from dataclasses import dataclass


def _clamp(x: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return lo if x < lo else hi if x > hi else x


@dataclass(frozen=True)
class CutoffConfig:
    """
    Output range and cutoff for one device (or the global default).

    Invariant: 0 <= cutoff <= min <= max <= 1.
    """
    min: float = 0.0
    max: float = 1.0
    cutoff: float = 0.0

    def __post_init__(self) -> None:
        if not (0.0 <= self.cutoff <= self.min <= self.max <= 1.0):
            raise ValueError(
                "CutoffConfig requires 0 <= cutoff <= min <= max <= 1 "
                f"(got cutoff={self.cutoff}, min={self.min}, max={self.max})"
            )


def apply_gain(loudness: float, gain: float) -> float:
    """Pre-mapping gain stage; result stays in [0, 1]."""
    return _clamp(loudness * gain)


def map_intensity(loudness: float, config: CutoffConfig) -> float:
    """
    Map one loudness value onto [config.min, config.max].

    Below the cutoff the output is exactly 0.0. At and above it the value
    [cutoff, 1.0) is rescaled linearly onto [min, max], so the output jumps
    straight from 0.0 to min at the cutoff.
    """
    if loudness < config.cutoff:
        return 0.0
    span = 1.0 - config.cutoff
    if span <= 0.0:
        return config.max
    scaled = config.min + (loudness - config.cutoff) / span * (config.max - config.min)
    return _clamp(scaled, config.min, config.max)
