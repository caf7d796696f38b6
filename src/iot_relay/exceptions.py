"""Exception hierarchy for the IoT relay server."""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class DeviceNotConnected(RelayError):
    """Command target has no live, open connection."""

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"Device {device_id} is not connected")


class MalformedFrame(RelayError):
    """Inbound frame is not a JSON object of the expected tagged shape."""

    def __init__(self, reason: str, *, raw: str | bytes | None = None) -> None:
        self.reason = reason
        self.raw = raw
        super().__init__(reason)


class InvalidRole(RelayError):
    """Connecting peer supplied an unknown role or a device role without an id."""

    def __init__(self, role: str | None, device_id: str | None = None) -> None:
        self.role = role
        self.device_id = device_id
        super().__init__(f"Invalid client type: role={role!r}, deviceId={device_id!r}")
