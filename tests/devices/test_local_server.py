from __future__ import annotations

import asyncio
import json
import socket

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from music_vibes.devices import protocol
from music_vibes.devices.link import ActuatorCommand, ConnectRefused, ServerLink
from music_vibes.devices.local_server import DEVICE_PATH, LocalDeviceServer, _DevicePeer
from music_vibes.devices.registry import DeviceArrived, DeviceDeparted


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def _bridge(server: LocalDeviceServer, name: str, actuators: int):
    ws = await connect(server.url + DEVICE_PATH)
    await ws.send(json.dumps({"name": name, "actuators": actuators}))
    return ws


def test_commands_reach_bridge_and_departures_are_reported(apoll) -> None:
    async def scenario():
        server = await LocalDeviceServer(port=0).start()
        events = []
        link = await ServerLink.open(server.url, sink=events.append)
        bridge = await _bridge(server, "Bridge", 2)
        try:
            assert await apoll(lambda: any(isinstance(e, DeviceArrived) for e in events))
            arrived = next(e for e in events if isinstance(e, DeviceArrived))
            assert arrived.device.name == "Bridge"
            assert arrived.device.actuator_count == 2

            dev_id = arrived.device.id
            assert link.send_commands([ActuatorCommand(dev_id, 0, 0.5), ActuatorCommand(dev_id, 1, 1.2)])
            frame = json.loads(await asyncio.wait_for(bridge.recv(), 2.0))
            assert frame == {"Scalars": [{"Index": 0, "Scalar": 0.5}, {"Index": 1, "Scalar": 1.0}]}

            await bridge.close()
            assert await apoll(lambda: DeviceDeparted(dev_id) in events)
            assert server.device_count == 0
        finally:
            await link.close()
            await server.stop()

    asyncio.run(scenario())


def test_existing_devices_are_listed_on_connect(apoll) -> None:
    async def scenario():
        server = await LocalDeviceServer(port=0).start()
        bridge = await _bridge(server, "Early", 1)
        try:
            assert await apoll(lambda: server.device_count == 1)
            events = []
            link = await ServerLink.open(server.url, sink=events.append, start_scanning=False)
            assert [e.device.name for e in events if isinstance(e, DeviceArrived)] == ["Early"]
            assert link.server_name == server.name
            await link.close()
        finally:
            await bridge.close()
            await server.stop()

    asyncio.run(scenario())


def test_close_stops_all_devices(apoll) -> None:
    async def scenario():
        server = await LocalDeviceServer(port=0).start()
        link = await ServerLink.open(server.url, sink=lambda e: None)
        bridge = await _bridge(server, "Bridge", 3)
        try:
            assert await apoll(lambda: server.device_count == 1)
            await link.close()
            frame = json.loads(await asyncio.wait_for(bridge.recv(), 2.0))
            assert [s["Scalar"] for s in frame["Scalars"]] == [0.0, 0.0, 0.0]
            assert not link.is_open
            assert not link.send_commands([ActuatorCommand(0, 0, 1.0)])
        finally:
            await bridge.close()
            await server.stop()

    asyncio.run(scenario())


def test_link_reports_drop_through_wait_closed() -> None:
    async def scenario():
        server = await LocalDeviceServer(port=0).start()
        link = await ServerLink.open(server.url, sink=lambda e: None)
        await server.stop()
        await asyncio.wait_for(link.wait_closed(), 2.0)
        assert not link.is_open
        await link.close()

    asyncio.run(scenario())


def test_nothing_listening_is_refused() -> None:
    async def scenario():
        with pytest.raises(ConnectRefused):
            await ServerLink.open(f"ws://127.0.0.1:{_free_port()}", sink=lambda e: None)

    asyncio.run(scenario())


def test_malformed_client_frame_gets_error_reply() -> None:
    async def scenario():
        server = await LocalDeviceServer(port=0).start()
        try:
            async with connect(server.url) as ws:
                await ws.send("definitely not json")
                ((kind, fields),) = protocol.decode(await asyncio.wait_for(ws.recv(), 2.0))
                assert kind == "Error"
                assert fields["ErrorCode"] == protocol.ERROR_MSG
        finally:
            await server.stop()

    asyncio.run(scenario())


@pytest.mark.parametrize("path, first", [("/nope", None), (DEVICE_PATH, "not a hello")])
def test_unknown_path_and_bad_hello_are_closed(path, first) -> None:
    async def scenario():
        server = await LocalDeviceServer(port=0).start()
        try:
            async with connect(server.url + path) as ws:
                if first is not None:
                    await ws.send(first)
                with pytest.raises(ConnectionClosed):
                    await asyncio.wait_for(ws.recv(), 2.0)
            assert server.device_count == 0
        finally:
            await server.stop()

    asyncio.run(scenario())


def test_replies_to_control_messages() -> None:
    server = LocalDeviceServer()
    assert server._reply("RequestServerInfo", {"Id": 1}) == protocol.server_info(1, server.name)
    assert server._reply("Ping", {"Id": 2}) == protocol.ok(2)
    assert server._reply("RequestDeviceList", {"Id": 3}) == protocol.device_list(3, [])

    unknown = server._reply("ScalarCmd", {"Id": 4, "DeviceIndex": 9, "Scalars": []})
    assert unknown["Error"]["ErrorCode"] == protocol.ERROR_DEVICE
    unsupported = server._reply("LinearCmd", {"Id": 5})
    assert unsupported["Error"]["ErrorCode"] == protocol.ERROR_MSG
    stop_unknown = server._reply("StopDeviceCmd", {"Id": 6, "DeviceIndex": 9})
    assert stop_unknown["Error"]["ErrorCode"] == protocol.ERROR_DEVICE


class _StalledConn:
    def __init__(self) -> None:
        self.sent = []
        self.gate = asyncio.Event()

    async def send(self, payload: str) -> None:
        self.sent.append(json.loads(payload))
        await self.gate.wait()


def test_busy_bridge_drops_commands_but_not_stops() -> None:
    async def scenario():
        server = LocalDeviceServer(relay_timeout=5.0)
        conn = _StalledConn()
        peer = _DevicePeer(conn=conn, info=protocol.DeviceInfo(index=0, name="Slow", actuator_count=1))

        server._relay(peer, [(0, 0.5)])
        await asyncio.sleep(0.01)
        server._relay(peer, [(0, 0.9)])
        await asyncio.sleep(0.01)
        assert [f["Scalars"][0]["Scalar"] for f in conn.sent] == [0.5]

        server._relay(peer, [(0, 0.0)], force=True)
        await asyncio.sleep(0.01)
        assert [f["Scalars"][0]["Scalar"] for f in conn.sent] == [0.5, 0.0]
        conn.gate.set()
        await peer.pending

    asyncio.run(scenario())


def test_slow_bridge_times_out_and_frees_slot() -> None:
    async def scenario():
        server = LocalDeviceServer(relay_timeout=0.05)
        conn = _StalledConn()
        peer = _DevicePeer(conn=conn, info=protocol.DeviceInfo(index=0, name="Slow", actuator_count=1))

        server._relay(peer, [(0, 0.5)])
        await asyncio.wait_for(peer.pending, 1.0)
        server._relay(peer, [(0, 0.7)])
        await asyncio.sleep(0.01)
        assert len(conn.sent) == 2
        peer.pending.cancel()

    asyncio.run(scenario())
