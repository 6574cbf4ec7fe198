# music_vibes/services/orchestrator.py
# Capture -> level -> dispatcher, with the connection manager keeping devices current alongside.
from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from music_vibes.core.audio_source import AudioFrameSource, CaptureUnavailable, DeviceLost, StreamEnded
from music_vibes.core.level_estimator import LevelEstimator, LoudnessSample
from music_vibes.core.state.loudness_state import LoudnessState
from music_vibes.devices.registry import DeviceRegistry
from music_vibes.services.connection_manager import Backoff, ConnectionManager
from music_vibes.services.dispatcher import CommandDispatcher
from music_vibes.settings import Settings, parse_server_addr

_LOG = logging.getLogger(__name__)


class Orchestrator:
    """
    Owns every worker and their shutdown order.

    Threads: audio capture (blocking reads + level estimation), connection
    manager (asyncio loop), device registry (event inbox), dispatcher (tick).
    """

    def __init__(
        self,
        settings: Settings,
        *,
        source: Optional[AudioFrameSource] = None,
        connection: Optional[ConnectionManager] = None,
    ):
        self.settings = settings
        self.source = source or AudioFrameSource(
            device=settings.audio_device,
            samplerate=settings.samplerate,
            blocksize=settings.blocksize,
        )
        self.state = LoudnessState()
        self.registry = DeviceRegistry()

        host, port = parse_server_addr(settings.host_addr)
        self.connection = connection or ConnectionManager(
            settings.server_url,
            sink=self.registry.post,
            connect_timeout=settings.connect_timeout,
            host=host,
            host_port=port,
            start_scanning=settings.start_scanning,
            backoff=Backoff(settings.backoff_initial, settings.backoff_max),
        )
        self.dispatcher = CommandDispatcher(
            self.registry,
            self.state,
            self.connection.link,
            profile_for=settings.profile_for,
            main_gain=settings.main_gain,
            tick_s=settings.tick_ms / 1000.0,
        )

        self._stop = threading.Event()
        self._capture_thread: Optional[threading.Thread] = None
        self._last_log = 0.0
        self._log_every = float(settings.log_every)

    def start(self) -> None:
        # Raises CaptureUnavailable when no loopback source exists; that one is fatal.
        self.source.open()
        self._stop.clear()
        self.registry.start()
        self.connection.start()
        self.dispatcher.start()
        self._capture_thread = threading.Thread(target=self._capture_loop, name="AudioCapture", daemon=True)
        self._capture_thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._capture_thread:
            self._capture_thread.join(timeout=2.0)
        self.dispatcher.stop()
        self.connection.stop()
        self.registry.stop()
        self.source.close()

    def run(self) -> None:
        try:
            self.start()
            while not self._stop.is_set():
                time.sleep(0.2)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    # Capture thread
    def _capture_loop(self) -> None:
        live = True
        while not self._stop.is_set():
            if live:
                try:
                    self._pump()
                except (StreamEnded, DeviceLost) as e:
                    _LOG.warning("%s Reopening capture.", e)
            # No audio means no vibration, not the last level forever.
            self._publish_silence()
            self.source.close()
            if self._stop.wait(self.settings.reopen_delay):
                break
            live = self._reopen()
        self.source.close()

    def _reopen(self) -> bool:
        try:
            self.source.open()
            return True
        except CaptureUnavailable as e:
            _LOG.warning("Capture still unavailable: %s", e)
        except Exception:
            _LOG.exception("Reopening capture failed, retrying")
        return False

    def _publish_silence(self) -> None:
        self.state.update(LoudnessSample(ts=time.monotonic(), level=0.0))

    def _pump(self) -> None:
        source = self.source
        estimator = LevelEstimator(source.samplerate, source.channels, window_s=self.settings.window_ms / 1000.0)
        while not self._stop.is_set():
            block = source.read_next()
            for sample in estimator.push(block):
                self._on_sample(sample)

    def _on_sample(self, sample: LoudnessSample) -> None:
        self.state.update(sample)
        if self._log_every <= 0:
            return
        now = sample.ts
        if now - self._last_log >= self._log_every:
            self._last_log = now
            _LOG.info(
                "[AUDIO] level=%.3f peak=%.3f devices=%d",
                sample.level, self.state.peak(), len(self.registry),
            )
