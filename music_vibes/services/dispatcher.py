# music_vibes/services/dispatcher.py
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Iterable, List, Optional

from music_vibes.core.intensity import apply_gain, map_intensity
from music_vibes.core.state.loudness_state import LoudnessState
from music_vibes.devices.link import ActuatorCommand, ServerLink
from music_vibes.devices.registry import Device, DeviceRegistry, NotFound
from music_vibes.settings import DeviceProfile

_LOG = logging.getLogger(__name__)

LinkProvider = Callable[[], Optional[ServerLink]]
ProfileLookup = Callable[[str], DeviceProfile]


def _default_profile(_name: str) -> DeviceProfile:
    return DeviceProfile()


class CommandDispatcher:
    """
    Fixed-rate actuator output, independent of the audio window cadence.

    Every tick reads the latest loudness and the current device snapshot, builds
    fresh ActuatorCommands and hands them to the link in one batch. No link means
    the tick does nothing: commands are dropped, never queued.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        loudness: LoudnessState,
        link_provider: LinkProvider,
        *,
        profile_for: ProfileLookup = _default_profile,
        main_gain: float = 1.0,
        tick_s: float = 0.03,
    ):
        self.registry = registry
        self.loudness = loudness
        self._link_provider = link_provider
        self._profile_for = profile_for
        self._main_gain = float(main_gain)
        self._tick = float(tick_s)

        self.sent_batches = 0
        self.dropped_batches = 0

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- public API ---
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._worker, name="CommandDispatcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=1.0)

    def commands_for(self, device: Device, level: float) -> List[ActuatorCommand]:
        profile = self._profile_for(device.name)
        if not profile.enabled:
            return []
        value = map_intensity(apply_gain(level, self._main_gain * profile.multiplier), profile.config)
        return [
            ActuatorCommand(device.id, i, 0.0 if i in profile.disabled_actuators else value)
            for i in range(device.actuator_count)
        ]

    def build_commands(self, devices: Iterable[Device], level: float) -> List[ActuatorCommand]:
        commands: List[ActuatorCommand] = []
        for dev in devices:
            try:
                self.registry.get(dev.id)
            except NotFound:
                _LOG.debug("Device %d left before dispatch, skipping", dev.id)
                continue
            commands.extend(self.commands_for(dev, level))
        return commands

    def tick(self) -> List[ActuatorCommand]:
        """One control tick. Returns the commands handed to the link."""
        link = self._link_provider()
        if link is None:
            return []
        commands = self.build_commands(self.registry.list(), self.loudness.level())
        if not commands:
            return []
        if link.send_commands(commands):
            self.sent_batches += 1
            return commands
        self.dropped_batches += 1
        return []

    # --- internal ---
    def _worker(self) -> None:
        while not self._stop.is_set():
            t0 = time.monotonic()
            try:
                self.tick()
            except Exception:
                _LOG.exception("Dispatch tick failed")
            # pace
            dt = time.monotonic() - t0
            self._stop.wait(max(0.0, self._tick - dt))
