# music_vibes/devices/link.py

from __future__ import annotations

import asyncio
import concurrent.futures
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from music_vibes.devices import protocol
from music_vibes.devices.registry import Device, DeviceArrived, DeviceDeparted, DeviceEvent

_LOG = logging.getLogger(__name__)

CLIENT_NAME = "music-vibes"

EventSink = Callable[[DeviceEvent], None]


class LinkError(RuntimeError):
    pass


class ConnectTimeout(LinkError):
    """Server did not complete the handshake before the deadline."""


class ConnectRefused(LinkError):
    """Server is not listening, or rejected the handshake."""


class TransportFailure(LinkError):
    """An established link dropped."""


@dataclass(frozen=True)
class ActuatorCommand:
    device_id: int
    actuator_index: int
    intensity: float


def _to_device(info: protocol.DeviceInfo) -> Device:
    return Device(id=info.index, actuator_count=info.actuator_count, name=info.name)


class ServerLink:
    """
    Protocol client on one WebSocket connection.

    - Device arrival/departure messages are forwarded to the sink in order.
    - send_commands() is callable from any thread and never waits: the batch is
      scheduled on the link's event loop, and a new batch is dropped while the
      previous one is still being written.
    - Each write is bounded by send_timeout.
    """

    def __init__(
        self,
        url: str,
        *,
        sink: EventSink,
        client_name: str = CLIENT_NAME,
        send_timeout: float = 0.05,
    ) -> None:
        self.url = url
        self.client_name = client_name
        self.server_name = ""
        self._sink = sink
        self._send_timeout = float(send_timeout)

        self._ws: Optional[ClientConnection] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._ids = itertools.count(1)
        self._inflight: Optional[concurrent.futures.Future] = None
        self._closing = False

    @classmethod
    async def open(
        cls,
        url: str,
        *,
        sink: EventSink,
        client_name: str = CLIENT_NAME,
        start_scanning: bool = True,
        send_timeout: float = 0.05,
    ) -> "ServerLink":
        """Connect, handshake, import the current device list and start reading."""
        link = cls(url, sink=sink, client_name=client_name, send_timeout=send_timeout)
        await link._connect(start_scanning)
        return link

    # ---------- Public API ----------

    @property
    def is_open(self) -> bool:
        return self._reader is not None and not self._reader.done() and not self._closing

    def send_commands(self, commands: Sequence[ActuatorCommand]) -> bool:
        """
        Send one tick's commands as a single frame (one ScalarCmd per device).
        Returns True if accepted for sending, False if dropped.
        """
        if not self.is_open or self._loop is None:
            return False
        if self._inflight is not None and not self._inflight.done():
            _LOG.debug("Previous batch still in flight, dropping tick")
            return False

        by_device: Dict[int, List[Tuple[int, float]]] = {}
        for cmd in commands:
            by_device.setdefault(cmd.device_id, []).append((cmd.actuator_index, cmd.intensity))
        if not by_device:
            return True

        messages = [protocol.scalar_cmd(next(self._ids), dev, scalars) for dev, scalars in by_device.items()]
        payload = protocol.encode(messages)
        self._inflight = asyncio.run_coroutine_threadsafe(self._send(payload), self._loop)
        return True

    async def stop_all(self) -> None:
        if self._ws is None:
            return
        try:
            await asyncio.wait_for(
                self._ws.send(protocol.encode([protocol.stop_all_devices(next(self._ids))])),
                timeout=0.5,
            )
        except (asyncio.TimeoutError, ConnectionClosed) as e:
            _LOG.debug("StopAllDevices not delivered: %s", e)

    async def wait_closed(self) -> None:
        """Return once the connection is gone (does not close it)."""
        if self._reader is not None:
            await asyncio.shield(self._reader)

    async def close(self) -> None:
        if self._closing:
            return
        if self.is_open:
            await self.stop_all()
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)

    # ---------- Internal ----------

    async def _connect(self, start_scanning: bool) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            self._ws = await connect(self.url, open_timeout=None, compression=None, max_size=2**20)
        except (OSError, InvalidHandshake, InvalidURI) as e:
            raise ConnectRefused(f"{self.url}: {e}") from e

        try:
            info = await self._request(protocol.request_server_info(next(self._ids), self.client_name), "ServerInfo")
            self.server_name = str(info.get("ServerName", "")) or "<unknown>"

            listing = await self._request(protocol.request_device_list(next(self._ids)), "DeviceList")
            known = [_to_device(protocol.parse_device(fields)) for fields in listing.get("Devices", [])]

            if start_scanning:
                await self._request(protocol.start_scanning(next(self._ids)), "Ok")
        except ConnectionClosed as e:
            raise ConnectRefused(f"{self.url}: closed during handshake ({e})") from e
        except protocol.ProtocolError as e:
            await self._ws.close()
            raise ConnectRefused(f"{self.url}: {e}") from e
        except BaseException:
            await self._ws.close()
            raise

        # Only a completed handshake publishes the listed devices.
        for dev in known:
            self._sink(DeviceArrived(dev))
        self._reader = asyncio.create_task(self._read_loop(), name="ServerLinkReader")
        _LOG.info("Server name: %s", self.server_name)

    async def _request(self, message: protocol.Message, expect: str) -> Dict[str, Any]:
        (kind, fields), = message.items()
        msg_id = fields["Id"]
        await self._ws.send(protocol.encode([message]))
        while True:
            raw = await self._ws.recv()
            for reply_kind, reply in protocol.decode(raw):
                if reply.get("Id") != msg_id:
                    self._handle(reply_kind, reply)
                    continue
                if reply_kind == expect:
                    return reply
                if reply_kind == "Error":
                    raise ConnectRefused(f"{kind} rejected: {reply.get('ErrorMessage', '')}")
                raise protocol.ProtocolError(f"Expected {expect} for {kind}, got {reply_kind}")

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for raw in self._ws:
                try:
                    messages = protocol.decode(raw)
                except protocol.ProtocolError as e:
                    _LOG.warning("Ignoring malformed frame from server: %s", e)
                    continue
                for kind, fields in messages:
                    self._handle(kind, fields)
        except ConnectionClosed as e:
            if not self._closing:
                _LOG.warning("Server link lost: %s", e)

    def _handle(self, kind: str, fields: Dict[str, Any]) -> None:
        if kind == "DeviceAdded":
            try:
                self._sink(DeviceArrived(_to_device(protocol.parse_device(fields))))
            except protocol.ProtocolError as e:
                _LOG.warning("%s", e)
        elif kind == "DeviceRemoved" and "DeviceIndex" in fields:
            self._sink(DeviceDeparted(int(fields["DeviceIndex"])))
        elif kind == "Error":
            _LOG.debug("Server error for message %s: %s", fields.get("Id"), fields.get("ErrorMessage"))
        elif kind == "ScanningFinished":
            _LOG.info("Server finished scanning")
        elif kind != "Ok":
            _LOG.debug("Unhandled %s message", kind)

    async def _send(self, payload: str) -> None:
        assert self._ws is not None
        try:
            await asyncio.wait_for(self._ws.send(payload), timeout=self._send_timeout)
        except asyncio.TimeoutError:
            _LOG.debug("Slow send: stopped waiting after %.0f ms, frame stays buffered", self._send_timeout * 1000)
        except ConnectionClosed:
            pass
