from __future__ import annotations

import numpy as np
import pytest

from music_vibes.core.intensity import CutoffConfig, apply_gain, map_intensity


@pytest.fixture()
def cfg() -> CutoffConfig:
    return CutoffConfig(min=0.2, max=1.0, cutoff=0.1)


def test_below_cutoff_is_silent(cfg: CutoffConfig) -> None:
    for level in np.linspace(0.0, 0.0999, 50):
        assert map_intensity(float(level), cfg) == 0.0


def test_range_and_monotonic_above_cutoff(cfg: CutoffConfig) -> None:
    levels = np.linspace(cfg.cutoff, 1.0, 200)
    out = [map_intensity(float(l), cfg) for l in levels]
    assert all(cfg.min <= v <= cfg.max for v in out)
    assert all(b >= a for a, b in zip(out, out[1:]))


def test_jump_at_cutoff_has_no_intermediate_values(cfg: CutoffConfig) -> None:
    just_below = np.nextafter(cfg.cutoff, 0.0)
    assert map_intensity(just_below, cfg) == 0.0
    assert map_intensity(cfg.cutoff, cfg) == pytest.approx(cfg.min)
    values = {map_intensity(float(l), cfg) for l in np.linspace(0.0, 1.0, 1001)}
    assert not any(0.0 < v < cfg.min for v in values)


def test_reference_sequence(cfg: CutoffConfig) -> None:
    out = [round(map_intensity(l, cfg), 3) for l in (0.05, 0.1, 0.3, 1.0)]
    assert out == [0.0, 0.2, 0.378, 1.0]


def test_full_cutoff_maps_to_max() -> None:
    cfg = CutoffConfig(min=1.0, max=1.0, cutoff=1.0)
    assert map_intensity(0.99, cfg) == 0.0
    assert map_intensity(1.0, cfg) == 1.0


def test_default_config_is_identity() -> None:
    cfg = CutoffConfig()
    for level in (0.0, 0.25, 0.5, 1.0):
        assert map_intensity(level, cfg) == pytest.approx(level)


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(min=0.1, max=0.5, cutoff=0.2),   # cutoff above min
        dict(min=0.6, max=0.5, cutoff=0.0),   # min above max
        dict(min=0.0, max=1.5, cutoff=0.0),
        dict(min=0.0, max=1.0, cutoff=-0.1),
    ],
)
def test_invalid_configs_rejected(kwargs) -> None:
    with pytest.raises(ValueError):
        CutoffConfig(**kwargs)


def test_gain_clamps() -> None:
    assert apply_gain(0.3, 2.0) == pytest.approx(0.6)
    assert apply_gain(0.8, 4.0) == 1.0
    assert apply_gain(0.5, 0.0) == 0.0
