# music_vibes/settings.py
# Run configuration. Built once from the command line; nothing is persisted.
from __future__ import annotations
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

from music_vibes.core.intensity import CutoffConfig

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 12345
DEFAULT_SERVER_ADDR = f"{DEFAULT_HOST}:{DEFAULT_PORT}"


def parse_server_addr(raw: str) -> Tuple[str, int]:
    """
    "host:port", "host", "[::1]:port" or "ws://host:port" -> (host, port).
    Missing port means DEFAULT_PORT.
    """
    text = raw.strip()
    if not text:
        raise ValueError("empty server address")
    if "://" not in text:
        text = "ws://" + text
    parsed = urlparse(text)
    if parsed.scheme not in ("ws", "wss"):
        raise ValueError(f"unsupported scheme '{parsed.scheme}' in {raw!r}")
    host = parsed.hostname
    if not host:
        raise ValueError(f"no host in {raw!r}")
    port = parsed.port if parsed.port is not None else DEFAULT_PORT
    return host, port


def to_ws_url(raw: str) -> str:
    host, port = parse_server_addr(raw)
    scheme = "wss" if raw.strip().startswith("wss://") else "ws"
    if ":" in host:
        host = f"[{host}]"
    return f"{scheme}://{host}:{port}"


@dataclass(frozen=True)
class DeviceProfile:
    """Per-device output shaping; devices without their own profile use the default one."""
    config: CutoffConfig = CutoffConfig()
    multiplier: float = 1.0
    enabled: bool = True
    disabled_actuators: FrozenSet[int] = frozenset()

    def __post_init__(self) -> None:
        if self.multiplier < 0:
            raise ValueError("multiplier must be >= 0")


@dataclass(frozen=True)
class Settings:
    server_addr: str = DEFAULT_SERVER_ADDR
    connect_timeout: float = 3.0
    host_addr: str = DEFAULT_SERVER_ADDR      # where the fallback server listens
    start_scanning: bool = True

    audio_device: Optional[Union[int, str]] = None
    samplerate: Optional[int] = None
    blocksize: int = 480
    window_ms: float = 20.0
    reopen_delay: float = 1.0

    tick_ms: float = 30.0
    main_volume: float = 1.0                  # squared before use, like a fader
    default_profile: DeviceProfile = DeviceProfile()
    profiles: Mapping[str, DeviceProfile] = field(default_factory=dict)

    backoff_initial: float = 0.5
    backoff_max: float = 10.0
    log_every: float = 0.0                    # seconds between level log lines, 0 = off

    def __post_init__(self) -> None:
        parse_server_addr(self.server_addr)
        parse_server_addr(self.host_addr)
        if not 10.0 <= self.window_ms <= 50.0:
            raise ValueError("window_ms must be within 10..50")
        if self.tick_ms <= 0 or self.connect_timeout <= 0:
            raise ValueError("tick_ms and connect_timeout must be positive")
        if self.main_volume < 0:
            raise ValueError("main_volume must be >= 0")

    @property
    def server_url(self) -> str:
        return to_ws_url(self.server_addr)

    @property
    def main_gain(self) -> float:
        return self.main_volume ** 2

    def profile_for(self, device_name: str) -> DeviceProfile:
        profile = self.profiles.get(device_name)
        if profile is not None:
            return profile
        lowered = device_name.lower()
        for name, profile in self.profiles.items():
            if name.lower() == lowered:
                return profile
        return self.default_profile
