# music_vibes/app.py
# Entrypoint: parse flags, configure logging, run the orchestrator until Ctrl+C.
from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from typing import Dict, Optional, Sequence, Set, Tuple

from music_vibes.core.audio_source import CaptureUnavailable, list_input_devices
from music_vibes.core.intensity import CutoffConfig
from music_vibes.services.orchestrator import Orchestrator
from music_vibes.settings import DEFAULT_SERVER_ADDR, DeviceProfile, Settings

_LOG = logging.getLogger("music_vibes")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="music-vibes",
        description="Feel whatever your computer is playing: system audio -> vibration devices.",
    )
    p.add_argument("-s", "--server-addr", default=DEFAULT_SERVER_ADDR,
                   help=f"Device-control server host:port (default: {DEFAULT_SERVER_ADDR})")
    p.add_argument("--connect-timeout", type=float, default=3.0,
                   help="Seconds to wait for the server before hosting our own (default: 3)")
    p.add_argument("--host-addr", default=DEFAULT_SERVER_ADDR,
                   help="Where the fallback server listens (default: %(default)s)")
    p.add_argument("--no-scan", action="store_true", help="Do not ask the server to scan for devices")

    p.add_argument("--audio-device", help="Input device index or name fragment (default: first loopback/monitor)")
    p.add_argument("--list-audio-devices", action="store_true", help="List capture devices and exit")
    p.add_argument("--samplerate", type=int, help="Capture samplerate (default: device default)")
    p.add_argument("--window-ms", type=float, default=20.0, help="Loudness window, 10..50 ms (default: 20)")
    p.add_argument("--tick-ms", type=float, default=30.0, help="Command tick interval (default: 30)")

    p.add_argument("--cutoff", type=float, default=0.0, help="Loudness below this is silence (default: 0)")
    p.add_argument("--min", dest="min_out", type=float, default=0.0, help="Lowest non-zero intensity (default: 0)")
    p.add_argument("--max", dest="max_out", type=float, default=1.0, help="Highest intensity (default: 1)")
    p.add_argument("--multiplier", type=float, default=1.0, help="Default per-device gain (default: 1)")
    p.add_argument("--main-volume", type=float, default=1.0,
                   help="Global volume; applied squared, so 2.0 is 4x stronger (default: 1)")
    p.add_argument("--device", action="append", default=[], metavar="NAME=CUTOFF,MIN,MAX[,MULTIPLIER]",
                   help="Per-device profile (repeatable)")
    p.add_argument("--disable-device", action="append", default=[], metavar="NAME",
                   help="Never send commands to this device (repeatable)")
    p.add_argument("--disable-vibrator", action="append", default=[], metavar="NAME:INDEX",
                   help="Keep one vibrator of a device at zero (repeatable)")

    p.add_argument("--log-every", type=float, default=0.0, help="Log the audio level every N seconds (0 = off)")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return p


def _parse_device_profile(raw: str, base: DeviceProfile) -> Tuple[str, DeviceProfile]:
    name, sep, values = raw.rpartition("=")
    if not sep or not name:
        raise ValueError(f"--device expects NAME=CUTOFF,MIN,MAX[,MULTIPLIER], got {raw!r}")
    nums = [float(v) for v in values.split(",")]
    if len(nums) not in (3, 4):
        raise ValueError(f"--device expects 3 or 4 numbers, got {raw!r}")
    config = CutoffConfig(cutoff=nums[0], min=nums[1], max=nums[2])
    multiplier = nums[3] if len(nums) == 4 else base.multiplier
    return name, replace(base, config=config, multiplier=multiplier)


def settings_from_args(args: argparse.Namespace) -> Settings:
    default = DeviceProfile(
        config=CutoffConfig(cutoff=args.cutoff, min=args.min_out, max=args.max_out),
        multiplier=args.multiplier,
    )
    profiles: Dict[str, DeviceProfile] = {}
    for raw in args.device:
        name, profile = _parse_device_profile(raw, default)
        profiles[name] = profile
    for name in args.disable_device:
        profiles[name] = replace(profiles.get(name, default), enabled=False)

    muted: Dict[str, Set[int]] = {}
    for raw in args.disable_vibrator:
        name, sep, index = raw.rpartition(":")
        if not sep or not name:
            raise ValueError(f"--disable-vibrator expects NAME:INDEX, got {raw!r}")
        muted.setdefault(name, set()).add(int(index))
    for name, indices in muted.items():
        profile = profiles.get(name, default)
        profiles[name] = replace(profile, disabled_actuators=profile.disabled_actuators | frozenset(indices))

    audio_device = args.audio_device
    if audio_device is not None and audio_device.isdigit():
        audio_device = int(audio_device)

    return Settings(
        server_addr=args.server_addr,
        connect_timeout=args.connect_timeout,
        host_addr=args.host_addr,
        start_scanning=not args.no_scan,
        audio_device=audio_device,
        samplerate=args.samplerate,
        window_ms=args.window_ms,
        tick_ms=args.tick_ms,
        main_volume=args.main_volume,
        default_profile=default,
        profiles=profiles,
        log_every=args.log_every,
    )


def _print_audio_devices() -> None:
    for dev in list_input_devices():
        mark = "*" if dev.is_loopback else " "
        print(f"{mark} [{dev.index:2d}] {dev.name} ({dev.max_input_channels} ch, {dev.default_samplerate:.0f} Hz)")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s - %(levelname)s - %(message)s")

    try:
        if args.list_audio_devices:
            _print_audio_devices()
            return 0
        try:
            settings = settings_from_args(args)
        except ValueError as e:
            parser.error(str(e))
        Orchestrator(settings).run()
    except CaptureUnavailable as e:
        _LOG.error("Audio capture unavailable: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
