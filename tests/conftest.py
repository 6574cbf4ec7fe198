"""Shared fixtures: audio blocks, fake links, a polling helper."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, List, Sequence

import numpy as np
import pytest

from music_vibes.core.audio_source import AudioBlock
from music_vibes.devices.link import ActuatorCommand


def make_block(values: Sequence[float] | np.ndarray, *, samplerate: int = 1000, channels: int = 1) -> AudioBlock:
    samples = np.asarray(values, dtype=np.float32).reshape(-1, channels)
    samples.setflags(write=False)
    return AudioBlock(ts=time.monotonic(), samples=samples, samplerate=samplerate, channels=channels)


class RecordingLink:
    """Stands in for ServerLink on the dispatcher side."""

    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.batches: List[List[ActuatorCommand]] = []
        self.is_open = True

    def send_commands(self, commands: Sequence[ActuatorCommand]) -> bool:
        if not self.accept:
            return False
        self.batches.append(list(commands))
        return True


@pytest.fixture()
def block() -> Callable[..., AudioBlock]:
    return make_block


@pytest.fixture()
def recording_link() -> RecordingLink:
    return RecordingLink()


@pytest.fixture()
def wait_until() -> Callable[..., bool]:
    def _wait(cond: Callable[[], bool], timeout: float = 2.0, step: float = 0.01) -> bool:
        end = time.monotonic() + timeout
        while time.monotonic() < end:
            if cond():
                return True
            time.sleep(step)
        return cond()

    return _wait


async def poll(cond: Callable[[], bool], timeout: float = 2.0, step: float = 0.01) -> bool:
    end = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < end:
        if cond():
            return True
        await asyncio.sleep(step)
    return cond()


@pytest.fixture()
def apoll() -> Callable[..., "asyncio.Future[bool]"]:
    return poll
