"""Command gateway: synchronous query/command surface over the relay core."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from . import frames
from .exceptions import DeviceNotConnected
from .relay import RelayEngine
from .types import utc_timestamp

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of a command pushed to a device."""

    device_id: str
    command: str
    value: Any
    state_updated: bool

    @property
    def message(self) -> str:
        return f"Command sent to {self.device_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "command": self.command,
            "value": self.value,
        }


class CommandGateway:
    """Query state and issue commands to a specific device by id.

    Commands are fire-and-forget: the gateway returns once the frame is
    queued for the device and never waits for a confirmation.
    """

    def __init__(
        self, relay: RelayEngine, clock: Callable[[], str] = utc_timestamp
    ) -> None:
        self.relay = relay
        self._clock = clock

    def health(self) -> dict[str, Any]:
        connections = self.relay.connections
        return {
            "status": "online",
            "timestamp": self._clock(),
            "connectedDevices": connections.device_count(),
            "connectedClients": connections.dashboard_count(),
        }

    def ping(self) -> dict[str, Any]:
        return {"message": "Server is running", "timestamp": self._clock()}

    def list_devices(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self.relay.devices.list()]

    def current_state(self) -> dict[str, Any]:
        return self.relay.state.snapshot()

    def issue_command(
        self, device_id: str, command: str, value: Any
    ) -> CommandResult:
        """Push a command frame to a connected device and update shared state.

        Raises:
            DeviceNotConnected: If the device has no registered, open connection.
                Shared state is left untouched in that case.
        """
        logger.info(f"Web command: device {device_id} - {command}: {value}")

        conn = self.relay.connections.lookup_device(device_id)
        if conn is None or not conn.is_open:
            raise DeviceNotConnected(device_id)

        if not self.relay.send_to(conn, frames.command_frame(command, value, self._clock())):
            logger.warning(f"Command frame for {device_id} could not be queued")

        state_updated = self.relay.state.set_field(command, value)
        self.relay.broadcast_to_dashboards(
            frames.state_update_frame(device_id, command, value, self._clock())
        )
        return CommandResult(
            device_id=device_id,
            command=command,
            value=value,
            state_updated=state_updated,
        )
