# music_vibes/devices/local_server.py

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Set, Tuple
from urllib.parse import urlparse

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from music_vibes.devices import protocol

_LOG = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 12345
DEVICE_PATH = "/device"
HELLO_TIMEOUT_S = 5.0


@dataclass
class _DevicePeer:
    conn: ServerConnection
    info: protocol.DeviceInfo
    pending: Optional[asyncio.Task[None]] = field(default=None, repr=False)


class LocalDeviceServer:
    """
    Minimal in-process device-control server, started when no external one answers.

    Routes:
      /        protocol clients (our own ServerLink, or anything speaking the same messages)
      /device  hardware bridges; first frame is {"name": str, "actuators": int},
               afterwards they receive {"Scalars": [{"Index": i, "Scalar": x}, ...]}

    Relays to each device run in their own task with a timeout, so a stalled
    bridge never delays the others. While a relay to a bridge is still pending,
    newer commands for that bridge are dropped; stop commands replace it.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        name: str = "music-vibes (in-process)",
        relay_timeout: float = 0.05,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.name = name
        self._relay_timeout = float(relay_timeout)

        self._server: Optional[Server] = None
        self._clients: Set[ServerConnection] = set()
        self._peers: Dict[int, _DevicePeer] = {}
        self._indices = itertools.count(0)

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def device_count(self) -> int:
        return len(self._peers)

    async def start(self) -> "LocalDeviceServer":
        self._server = await serve(self._route, self.host, self.port, compression=None)
        sock = next(iter(self._server.sockets))
        self.port = int(sock.getsockname()[1])
        _LOG.info("Local device server listening on %s (devices connect to %s%s)", self.url, self.url, DEVICE_PATH)
        return self

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        for peer in list(self._peers.values()):
            if peer.pending is not None:
                peer.pending.cancel()
        _LOG.info("Local device server stopped")

    # ---------- Routing ----------

    async def _route(self, conn: ServerConnection) -> None:
        path = urlparse(conn.request.path).path
        if path in ("", "/"):
            await self._handle_client(conn)
            return
        if path == DEVICE_PATH:
            await self._handle_device(conn)
            return
        _LOG.warning("Unknown websocket path %s from %s", path, conn.remote_address)
        await conn.close(code=1008, reason="Unknown path")

    async def _handle_client(self, conn: ServerConnection) -> None:
        self._clients.add(conn)
        _LOG.debug("Client connected from %s", conn.remote_address)
        try:
            async for raw in conn:
                try:
                    messages = protocol.decode(raw)
                except protocol.ProtocolError as e:
                    await conn.send(protocol.encode([protocol.error(protocol.SYSTEM_ID, str(e), protocol.ERROR_MSG)]))
                    continue
                replies = [self._reply(kind, fields) for kind, fields in messages]
                await conn.send(protocol.encode(replies))
        except ConnectionClosed:
            pass
        finally:
            self._clients.discard(conn)

    async def _handle_device(self, conn: ServerConnection) -> None:
        try:
            raw = await asyncio.wait_for(conn.recv(), timeout=HELLO_TIMEOUT_S)
            hello = json.loads(raw)
            name = str(hello["name"])
            actuators = max(0, int(hello.get("actuators", 1)))
        except (asyncio.TimeoutError, ValueError, KeyError, TypeError, AttributeError, ConnectionClosed) as e:
            _LOG.warning("Rejecting device bridge %s: bad hello (%s)", conn.remote_address, e)
            await conn.close(code=1008, reason="Bad hello")
            return

        info = protocol.DeviceInfo(index=next(self._indices), name=name, actuator_count=actuators)
        self._peers[info.index] = _DevicePeer(conn=conn, info=info)
        _LOG.info("Device bridge attached: (%d) %s", info.index, info.name)
        await self._broadcast(protocol.encode([protocol.device_added(info)]))
        try:
            async for _ in conn:
                pass  # bridges have nothing to report after the hello
        except ConnectionClosed:
            pass
        finally:
            self._peers.pop(info.index, None)
            _LOG.info("Device bridge detached: (%d) %s", info.index, info.name)
            await self._broadcast(protocol.encode([protocol.device_removed(info.index)]))

    # ---------- Messages ----------

    def _reply(self, kind: str, fields: Dict[str, Any]) -> protocol.Message:
        msg_id = int(fields.get("Id", protocol.SYSTEM_ID))
        if kind == "RequestServerInfo":
            return protocol.server_info(msg_id, self.name)
        if kind == "RequestDeviceList":
            return protocol.device_list(msg_id, [p.info for p in self._peers.values()])
        if kind in ("StartScanning", "StopScanning", "Ping"):
            return protocol.ok(msg_id)
        if kind == "StopAllDevices":
            for peer in list(self._peers.values()):
                self._relay(peer, [(i, 0.0) for i in range(peer.info.actuator_count)], force=True)
            return protocol.ok(msg_id)
        if kind in ("ScalarCmd", "StopDeviceCmd"):
            peer = self._peers.get(fields.get("DeviceIndex"))
            if peer is None:
                return protocol.error(msg_id, f"Unknown device {fields.get('DeviceIndex')}", protocol.ERROR_DEVICE)
            if kind == "StopDeviceCmd":
                scalars = [(i, 0.0) for i in range(peer.info.actuator_count)]
            else:
                try:
                    scalars = protocol.parse_scalars(fields)
                except protocol.ProtocolError as e:
                    return protocol.error(msg_id, str(e), protocol.ERROR_MSG)
            self._relay(peer, scalars, force=(kind == "StopDeviceCmd"))
            return protocol.ok(msg_id)
        return protocol.error(msg_id, f"Unsupported message {kind}", protocol.ERROR_MSG)

    def _relay(self, peer: _DevicePeer, scalars: Sequence[Tuple[int, float]], force: bool = False) -> None:
        if peer.pending is not None and not peer.pending.done():
            if not force:
                _LOG.debug("Device (%d) %s still busy, command dropped", peer.info.index, peer.info.name)
                return
            peer.pending.cancel()
        payload = json.dumps({"Scalars": [{"Index": i, "Scalar": v} for i, v in scalars]})
        peer.pending = asyncio.create_task(self._send_to_peer(peer, payload))

    async def _send_to_peer(self, peer: _DevicePeer, payload: str) -> None:
        try:
            await asyncio.wait_for(peer.conn.send(payload), timeout=self._relay_timeout)
        except asyncio.TimeoutError:
            _LOG.debug("Device (%d) %s is slow, command dropped", peer.info.index, peer.info.name)
        except ConnectionClosed:
            pass

    async def _broadcast(self, payload: str) -> None:
        dead = []
        for c in list(self._clients):
            try:
                await c.send(payload)
            except ConnectionClosed:
                dead.append(c)
        for c in dead:
            self._clients.discard(c)
