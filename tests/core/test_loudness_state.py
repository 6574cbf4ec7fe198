from __future__ import annotations

import threading

from music_vibes.core.level_estimator import LoudnessSample
from music_vibes.core.state.loudness_state import LoudnessState


def test_zero_before_first_sample() -> None:
    st = LoudnessState()
    assert st.latest() is None
    assert st.level() == 0.0
    assert st.peak() == 0.0


def test_latest_overwrites() -> None:
    st = LoudnessState(history=4)
    for i, lvl in enumerate((0.9, 0.1, 0.2, 0.3, 0.4)):
        st.update(LoudnessSample(ts=float(i), level=lvl))
    assert st.level() == 0.4
    assert st.latest().ts == 4.0
    # 0.9 fell out of the 4-entry history
    assert st.peak() == 0.4


def test_concurrent_writer_never_tears() -> None:
    st = LoudnessState()
    stop = threading.Event()

    def writer():
        i = 0
        while not stop.is_set():
            st.update(LoudnessSample(ts=float(i), level=(i % 100) / 100.0))
            i += 1

    t = threading.Thread(target=writer, daemon=True)
    t.start()
    try:
        for _ in range(2000):
            s = st.latest()
            if s is not None:
                assert s.level == (int(s.ts) % 100) / 100.0
    finally:
        stop.set()
        t.join(timeout=1.0)
