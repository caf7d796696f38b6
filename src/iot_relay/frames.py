"""
JSON frame shapes exchanged with devices and dashboards.

Frame types:
    Server -> Device:    config, command
    Device -> Server:    sensorData
    Server -> Dashboard: initialData, sensorUpdate, stateUpdate, deviceDisconnected
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from .exceptions import MalformedFrame
from .types import FieldValue

# Frame type tags
FRAME_CONFIG = "config"
FRAME_COMMAND = "command"
FRAME_SENSOR_DATA = "sensorData"
FRAME_INITIAL_DATA = "initialData"
FRAME_SENSOR_UPDATE = "sensorUpdate"
FRAME_STATE_UPDATE = "stateUpdate"
FRAME_DEVICE_DISCONNECTED = "deviceDisconnected"

CONNECTED_MESSAGE = "Connected to cloud server"

# WebSocket close code for rejected peers (RFC 6455 policy violation)
POLICY_VIOLATION = 1008
INVALID_CLIENT_TYPE_REASON = "Invalid client type"


def encode(frame: Mapping[str, Any]) -> str:
    return json.dumps(frame, separators=(",", ":"))


def parse(raw: str | bytes) -> dict[str, Any]:
    """Decode an inbound frame into a dict carrying a string ``type`` tag.

    Raises:
        MalformedFrame: If the payload is not decodable JSON, not an object, or
            lacks a string type tag.
    """
    try:
        frame = json.loads(raw)
    except (ValueError, RecursionError, UnicodeDecodeError) as e:
        raise MalformedFrame(f"Invalid JSON: {e}", raw=raw) from e

    if not isinstance(frame, dict):
        raise MalformedFrame(
            f"Frame must be a JSON object, got {type(frame).__name__}", raw=raw
        )
    if not isinstance(frame.get("type"), str):
        raise MalformedFrame("Frame is missing a string 'type' field", raw=raw)
    return frame


def sensor_fields(frame: Mapping[str, Any]) -> dict[str, FieldValue]:
    """Extract the field mapping of a ``sensorData`` frame."""
    data = frame.get("data")
    if not isinstance(data, dict):
        raise MalformedFrame("sensorData frame must carry an object in 'data'")
    if not all(isinstance(key, str) for key in data):
        raise MalformedFrame("sensorData field names must be strings")
    return data


def config_frame(device_id: str) -> dict[str, Any]:
    return {"type": FRAME_CONFIG, "message": CONNECTED_MESSAGE, "deviceId": device_id}


def command_frame(command: str, value: Any, timestamp: str) -> dict[str, Any]:
    return {
        "type": FRAME_COMMAND,
        "command": command,
        "value": value,
        "timestamp": timestamp,
    }


def initial_data_frame(
    devices: Sequence[Mapping[str, Any]],
    sensors: Mapping[str, Any],
    timestamp: str,
) -> dict[str, Any]:
    return {
        "type": FRAME_INITIAL_DATA,
        "devices": list(devices),
        "sensors": dict(sensors),
        "timestamp": timestamp,
    }


def sensor_update_frame(
    device_id: str, data: Mapping[str, FieldValue], timestamp: str
) -> dict[str, Any]:
    return {
        "type": FRAME_SENSOR_UPDATE,
        "deviceId": device_id,
        "data": dict(data),
        "timestamp": timestamp,
    }


def state_update_frame(
    device_id: str, command: str, value: Any, timestamp: str
) -> dict[str, Any]:
    return {
        "type": FRAME_STATE_UPDATE,
        "deviceId": device_id,
        "command": command,
        "value": value,
        "timestamp": timestamp,
    }


def device_disconnected_frame(device_id: str, timestamp: str) -> dict[str, Any]:
    return {
        "type": FRAME_DEVICE_DISCONNECTED,
        "deviceId": device_id,
        "timestamp": timestamp,
    }
