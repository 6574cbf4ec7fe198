# music_vibes/devices/protocol.py
#
# Device-control messages (Buttplug JSON, message version 3).
# Every frame is a JSON array of single-key objects: [{"ScalarCmd": {...}}, ...]

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple, Union

MESSAGE_VERSION = 3
SYSTEM_ID = 0           # Id used by server-originated events (DeviceAdded, ...)
VIBRATE = "Vibrate"

# Error codes
ERROR_UNKNOWN = 0
ERROR_MSG = 3
ERROR_DEVICE = 4

Message = Dict[str, Dict[str, Any]]


class ProtocolError(ValueError):
    """Frame is not a valid message array."""


@dataclass(frozen=True)
class DeviceInfo:
    index: int
    name: str
    actuator_count: int


def _clamp01(x: float) -> float:
    x = float(x)
    return 0.0 if x < 0.0 else 1.0 if x > 1.0 else x


# ----------------------------------------------------------------------
# Framing
# ----------------------------------------------------------------------

def encode(messages: Sequence[Message]) -> str:
    return json.dumps(list(messages), separators=(",", ":"))


def decode(raw: Union[str, bytes]) -> List[Tuple[str, Dict[str, Any]]]:
    """Split a frame into (message type, fields) pairs."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Not JSON: {e}") from e
    if not isinstance(data, list):
        raise ProtocolError("Frame must be a JSON array")
    out: List[Tuple[str, Dict[str, Any]]] = []
    for item in data:
        if not isinstance(item, dict) or len(item) != 1:
            raise ProtocolError(f"Message must be a single-key object: {item!r}")
        (kind, fields), = item.items()
        if not isinstance(fields, dict):
            raise ProtocolError(f"{kind} fields must be an object")
        out.append((kind, fields))
    return out


# ----------------------------------------------------------------------
# Client -> server
# ----------------------------------------------------------------------

def request_server_info(msg_id: int, client_name: str) -> Message:
    return {"RequestServerInfo": {"Id": msg_id, "ClientName": client_name, "MessageVersion": MESSAGE_VERSION}}


def request_device_list(msg_id: int) -> Message:
    return {"RequestDeviceList": {"Id": msg_id}}


def start_scanning(msg_id: int) -> Message:
    return {"StartScanning": {"Id": msg_id}}


def ping(msg_id: int) -> Message:
    return {"Ping": {"Id": msg_id}}


def scalar_cmd(msg_id: int, device_index: int, scalars: Sequence[Tuple[int, float]]) -> Message:
    return {
        "ScalarCmd": {
            "Id": msg_id,
            "DeviceIndex": int(device_index),
            "Scalars": [
                {"Index": int(i), "Scalar": _clamp01(v), "ActuatorType": VIBRATE}
                for i, v in scalars
            ],
        }
    }


def stop_all_devices(msg_id: int) -> Message:
    return {"StopAllDevices": {"Id": msg_id}}


# ----------------------------------------------------------------------
# Server -> client
# ----------------------------------------------------------------------

def server_info(msg_id: int, server_name: str) -> Message:
    return {"ServerInfo": {"Id": msg_id, "ServerName": server_name, "MessageVersion": MESSAGE_VERSION, "MaxPingTime": 0}}


def ok(msg_id: int) -> Message:
    return {"Ok": {"Id": msg_id}}


def error(msg_id: int, text: str, code: int = ERROR_UNKNOWN) -> Message:
    return {"Error": {"Id": msg_id, "ErrorMessage": text, "ErrorCode": code}}


def device_messages(actuator_count: int) -> Dict[str, Any]:
    return {
        "ScalarCmd": [
            {"FeatureDescriptor": f"Vibrator {i}", "StepCount": 20, "ActuatorType": VIBRATE}
            for i in range(actuator_count)
        ],
        "StopDeviceCmd": {},
    }


def _device_fields(dev: DeviceInfo) -> Dict[str, Any]:
    return {
        "DeviceIndex": dev.index,
        "DeviceName": dev.name,
        "DeviceMessages": device_messages(dev.actuator_count),
    }


def device_added(dev: DeviceInfo) -> Message:
    return {"DeviceAdded": {"Id": SYSTEM_ID, **_device_fields(dev)}}


def device_removed(device_index: int) -> Message:
    return {"DeviceRemoved": {"Id": SYSTEM_ID, "DeviceIndex": int(device_index)}}


def device_list(msg_id: int, devices: Sequence[DeviceInfo]) -> Message:
    return {"DeviceList": {"Id": msg_id, "Devices": [_device_fields(d) for d in devices]}}


# ----------------------------------------------------------------------
# Parsing helpers
# ----------------------------------------------------------------------

def vibrate_actuator_count(messages: Dict[str, Any]) -> int:
    """Number of ScalarCmd features whose actuator type is Vibrate."""
    features = messages.get("ScalarCmd") or []
    return sum(1 for f in features if isinstance(f, dict) and f.get("ActuatorType") == VIBRATE)


def parse_device(fields: Dict[str, Any]) -> DeviceInfo:
    try:
        return DeviceInfo(
            index=int(fields["DeviceIndex"]),
            name=str(fields.get("DeviceName", "")),
            actuator_count=vibrate_actuator_count(fields.get("DeviceMessages") or {}),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Bad device description: {fields!r}") from e


def parse_scalars(fields: Dict[str, Any]) -> List[Tuple[int, float]]:
    try:
        return [(int(s["Index"]), _clamp01(s["Scalar"])) for s in fields["Scalars"]]
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Bad ScalarCmd: {fields!r}") from e
