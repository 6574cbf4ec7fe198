# music_vibes/devices/registry.py
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

_LOG = logging.getLogger(__name__)


class NotFound(LookupError):
    """Device is not (or no longer) registered."""


@dataclass(frozen=True)
class Device:
    id: int                 # protocol device index, unique per link
    actuator_count: int
    name: str


@dataclass(frozen=True)
class DeviceArrived:
    device: Device


@dataclass(frozen=True)
class DeviceDeparted:
    device_id: int


@dataclass(frozen=True)
class DevicesReset:
    """The link that announced the current devices is gone."""
    reason: str = ""


DeviceEvent = Union[DeviceArrived, DeviceDeparted, DevicesReset]


class DeviceRegistry:
    """
    Devices currently announced by the server link.

    - Events arrive through post() and are applied one at a time, in order,
      by a single worker thread.
    - Readers get immutable snapshots; an update swaps the whole mapping under
      the lock, so a half-applied add/remove is never visible.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._devices: Dict[int, Device] = {}
        self._snapshot: Tuple[Device, ...] = ()

        self._q: "queue.Queue[Optional[DeviceEvent]]" = queue.Queue()
        self._drained = threading.Condition()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- Lifecycle ----------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="DeviceRegistry", daemon=True)
        self._thread.start()

    def stop(self, join: bool = True) -> None:
        self._stop.set()
        self._q.put(None)  # wake up
        if join and self._thread:
            self._thread.join(timeout=2.0)

    # ---------- Writers ----------

    def post(self, event: DeviceEvent) -> None:
        """Hand an event to the worker; safe from any thread."""
        self._q.put(event)

    def apply(self, event: DeviceEvent) -> None:
        """Apply one event synchronously (the worker calls this)."""
        with self._lock:
            devices = dict(self._devices)
            if isinstance(event, DeviceArrived):
                dev = event.device
                devices[dev.id] = dev
                _LOG.info("Device connected: (%d) %s, %d vibrator(s)", dev.id, dev.name, dev.actuator_count)
            elif isinstance(event, DeviceDeparted):
                dev = devices.pop(event.device_id, None)
                if dev is None:
                    _LOG.debug("Departure for unknown device %d", event.device_id)
                else:
                    _LOG.info("Device disconnected: (%d) %s", dev.id, dev.name)
            elif isinstance(event, DevicesReset):
                if devices:
                    _LOG.info("Dropping %d device(s): %s", len(devices), event.reason or "link reset")
                devices = {}
            else:
                raise TypeError(f"Unsupported device event: {event!r}")
            self._devices = devices
            self._snapshot = tuple(sorted(devices.values(), key=lambda d: d.id))

    def flush(self, timeout: float = 2.0) -> bool:
        """
        Wait until every posted event has been applied.
        Returns True if the inbox drained before timeout.
        """
        with self._drained:
            return self._drained.wait_for(lambda: self._q.unfinished_tasks == 0, timeout=timeout)

    # ---------- Readers ----------

    def list(self) -> Tuple[Device, ...]:
        with self._lock:
            return self._snapshot

    def get(self, device_id: int) -> Device:
        with self._lock:
            dev = self._devices.get(device_id)
        if dev is None:
            raise NotFound(f"Device {device_id} is not connected")
        return dev

    def __len__(self) -> int:
        return len(self.list())

    # ---------- Internal ----------

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._q.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                if event is not None:
                    self.apply(event)
            except Exception:
                _LOG.exception("Failed to apply device event %r", event)
            finally:
                with self._drained:
                    self._q.task_done()
                    self._drained.notify_all()
