"""
examples/demo_sweep.py

Drives every connected vibration device through a fixed intensity sweep, without
any audio. Handy for checking a device setup before running the full app:
- connects to a device-control server (Intiface Central on 127.0.0.1:12345 by
  default), or hosts the in-process one if nothing answers
- waits a few seconds for devices to show up
- ramps loudness 0 -> 1 -> 0, then pulses, then stops everything

Usage:
    python examples/demo_sweep.py [host:port]
"""

import sys
import time

from music_vibes.core.level_estimator import LoudnessSample
from music_vibes.core.state.loudness_state import LoudnessState
from music_vibes.devices.local_server import DEVICE_PATH
from music_vibes.devices.registry import DeviceRegistry
from music_vibes.services.connection_manager import ConnectionManager, HostingOwnServer
from music_vibes.services.dispatcher import CommandDispatcher
from music_vibes.settings import DEFAULT_SERVER_ADDR, to_ws_url


def main():
    # --------------------------------------------------------------------
    # 1) Link + registry
    # --------------------------------------------------------------------
    addr = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_SERVER_ADDR
    registry = DeviceRegistry()
    loudness = LoudnessState()
    conn = ConnectionManager(to_ws_url(addr), sink=registry.post, connect_timeout=3.0)
    dispatcher = CommandDispatcher(registry, loudness, conn.link, tick_s=0.03)

    registry.start()
    conn.start()
    dispatcher.start()

    def level(x):
        loudness.update(LoudnessSample(ts=time.monotonic(), level=x))

    try:
        print(f"→ Step 1: Connecting to {addr} (falls back to an in-process server)")
        deadline = time.monotonic() + 8.0
        while time.monotonic() < deadline and conn.link() is None:
            time.sleep(0.1)
        state = conn.state()
        if isinstance(state, HostingOwnServer):
            print(f"  hosting; bridges connect to {state.server.url}{DEVICE_PATH}")

        print("→ Step 2: Waiting for devices")
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline and not len(registry):
            time.sleep(0.2)
        for dev in registry.list():
            print(f"  ({dev.id}) {dev.name}: {dev.actuator_count} vibrator(s)")
        if not len(registry):
            print("  no devices, the sweep will go nowhere")

        # ----------------------------------------------------------------
        # 3) Ramp up and back down over ~4 s
        # ----------------------------------------------------------------
        print("→ Step 3: Ramp")
        for i in range(41):
            level(i / 40.0)
            time.sleep(0.05)
        for i in range(40, -1, -1):
            level(i / 40.0)
            time.sleep(0.05)

        # ----------------------------------------------------------------
        # 4) Beat-like pulses
        # ----------------------------------------------------------------
        print("→ Step 4: Pulses")
        for _ in range(6):
            level(0.9)
            time.sleep(0.15)
            level(0.0)
            time.sleep(0.35)

        print(f"✅ Sweep complete ({dispatcher.sent_batches} batches sent, "
              f"{dispatcher.dropped_batches} dropped).")

    finally:
        # Closing the link sends StopAllDevices before the connection goes away.
        level(0.0)
        dispatcher.stop()
        conn.stop()
        registry.stop()


if __name__ == "__main__":
    main()
