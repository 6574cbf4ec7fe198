# music_vibes/core/audio_source.py
# Headless loopback capture: blocking reads of what the system is currently playing.
from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Union
import logging
import time
import numpy as np

try:
    import sounddevice as sd
    from sounddevice import PortAudioError
except Exception:
    # PortAudio missing on this host; open() reports CaptureUnavailable.
    sd = None
    PortAudioError = OSError

_LOG = logging.getLogger(__name__)

# Name fragments that mark an input device as a loopback / monitor of the output.
LOOPBACK_HINTS = ("monitor", "loopback", "stereo mix", "what u hear", "blackhole", "soundflower")


class CaptureUnavailable(RuntimeError):
    """No audio source could be opened."""


class StreamEnded(RuntimeError):
    """The capture stream stopped delivering blocks."""


class DeviceLost(RuntimeError):
    """The capture device went away mid-stream (unplugged, reconfigured, ...)."""


@dataclass(frozen=True)
class AudioBlock:
    ts: float               # monotonic timestamp
    samples: np.ndarray     # (frames, channels) float32 in [-1, 1], read-only
    samplerate: int
    channels: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])


@dataclass(frozen=True)
class InputDevice:
    index: int
    name: str
    max_input_channels: int
    default_samplerate: float

    @property
    def is_loopback(self) -> bool:
        name = self.name.lower()
        return any(h in name for h in LOOPBACK_HINTS)


def list_input_devices() -> List[InputDevice]:
    if sd is None:
        raise CaptureUnavailable("sounddevice / PortAudio is not available in this environment.")
    try:
        infos = sd.query_devices()
    except PortAudioError as e:
        raise CaptureUnavailable(f"Could not query audio devices: {e}") from e
    out: List[InputDevice] = []
    for idx, info in enumerate(infos):
        if int(info["max_input_channels"]) <= 0:
            continue
        out.append(InputDevice(
            index=idx,
            name=str(info["name"]),
            max_input_channels=int(info["max_input_channels"]),
            default_samplerate=float(info["default_samplerate"]),
        ))
    return out


def find_loopback_device(hint: Optional[Union[int, str]] = None) -> InputDevice:
    """
    Pick the capture device.

    An explicit hint (index or case-insensitive name fragment) wins; otherwise the
    first input whose name looks like a loopback/monitor of the system output.
    """
    devices = list_input_devices()
    if isinstance(hint, int) or (isinstance(hint, str) and hint.isdigit()):
        wanted = int(hint)
        for dev in devices:
            if dev.index == wanted:
                return dev
        raise CaptureUnavailable(f"No input device with index {wanted}.")
    if hint:
        for dev in devices:
            if hint.lower() in dev.name.lower():
                return dev
        raise CaptureUnavailable(f"No input device matching '{hint}'.")
    for dev in devices:
        if dev.is_loopback:
            return dev
    raise CaptureUnavailable(
        "No loopback/monitor input found; pass --audio-device to pick one explicitly."
    )


class AudioFrameSource:
    """
    Blocking loopback capture.

    - read_next() waits inside PortAudio until a full block is available.
    - Holds the input stream exclusively between open() and close().
    - Usable as a context manager.
    """

    def __init__(
        self,
        device: Optional[Union[int, str]] = None,
        samplerate: Optional[int] = None,
        blocksize: int = 480,
        max_channels: int = 2,
    ):
        self.device_hint = device
        self.blocksize = int(blocksize)
        self.max_channels = int(max_channels)
        self._requested_samplerate = samplerate

        self.samplerate: int = 0
        self.channels: int = 0
        self.device_name: str = ""
        self._stream = None

    # ---------- Public API ----------

    def open(self) -> "AudioFrameSource":
        if self._stream is not None:
            return self
        dev = find_loopback_device(self.device_hint)
        self.channels = max(1, min(self.max_channels, dev.max_input_channels))
        self.samplerate = int(self._requested_samplerate or dev.default_samplerate)
        self.device_name = dev.name
        try:
            stream = sd.InputStream(
                device=dev.index,
                channels=self.channels,
                samplerate=self.samplerate,
                blocksize=self.blocksize,
                dtype="float32",
            )
            stream.start()
        except (PortAudioError, ValueError) as e:
            raise CaptureUnavailable(f"Could not open '{dev.name}': {e}") from e
        self._stream = stream
        _LOG.info("Capturing '%s' (%d ch @ %d Hz)", dev.name, self.channels, self.samplerate)
        return self

    def read_next(self) -> AudioBlock:
        stream = self._stream
        if stream is None or not stream.active:
            raise StreamEnded("Capture stream is not running.")
        try:
            data, overflowed = stream.read(self.blocksize)
        except PortAudioError as e:
            raise DeviceLost(f"Audio device error: {e}") from e
        if overflowed:
            _LOG.debug("Input overflow on '%s'", self.device_name)
        samples = np.array(data, dtype=np.float32, copy=True).reshape(-1, self.channels)
        samples.setflags(write=False)
        return AudioBlock(
            ts=time.monotonic(),
            samples=samples,
            samplerate=self.samplerate,
            channels=self.channels,
        )

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except PortAudioError as e:
            _LOG.debug("Ignoring error while closing capture: %s", e)

    def __enter__(self) -> "AudioFrameSource":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
