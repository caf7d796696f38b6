"""
Relay engine: per-connection lifecycle handling and fan-out between devices
and dashboards.

Device connection:    register -> mark online -> send config -> relay
                      sensorData -> on close unregister, mark offline and
                      broadcast deviceDisconnected.
Dashboard connection: register under an ephemeral id -> send initialData ->
                      on close unregister.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from . import frames
from .exceptions import InvalidRole, MalformedFrame
from .registry import ConnectionRegistry, DeviceRegistry
from .state import SharedStateStore
from .types import Connection, PeerRole, utc_timestamp

logger = logging.getLogger(__name__)


class RelayEngine:
    """Routes frames between the device and dashboard populations."""

    def __init__(
        self,
        state: SharedStateStore,
        devices: DeviceRegistry,
        connections: ConnectionRegistry,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        self.state = state
        self.devices = devices
        self.connections = connections
        self._clock = clock

        # Statistics. frames_queued counts frames a connection accepted;
        # frames_sent and the later part of failed_sends are reported back by
        # the transport once each accepted frame is written or dropped.
        self.frames_received = 0
        self.malformed_frames = 0
        self.frames_queued = 0
        self.frames_sent = 0
        self.failed_sends = 0
        self._stats_lock = threading.Lock()

    def _increment_stat(self, stat_name: str, amount: int = 1) -> None:
        with self._stats_lock:
            setattr(self, stat_name, getattr(self, stat_name) + amount)

    def record_frame_sent(self) -> None:
        self._increment_stat("frames_sent")

    def record_frame_dropped(self) -> None:
        self._increment_stat("failed_sends")

    @staticmethod
    def classify(role: str | None, device_id: str | None) -> PeerRole:
        """Map the ``type``/``deviceId`` query parameters to a peer role.

        Raises:
            InvalidRole: For an unknown role or a device without an id.
        """
        if role == PeerRole.DEVICE.value and device_id:
            return PeerRole.DEVICE
        if role == PeerRole.DASHBOARD.value:
            return PeerRole.DASHBOARD
        raise InvalidRole(role, device_id)

    # Device lifecycle

    def device_connected(self, device_id: str, conn: Connection) -> None:
        # config must be queued before any command a lookup can route here
        with self.connections.lock:
            self.connections.register_device(device_id, conn)
            self.devices.mark_online(device_id, self._clock())
            self._send(conn, frames.config_frame(device_id))
        logger.info(f"IoT device connected: {device_id}")

    def device_frame(self, device_id: str, raw: str | bytes) -> None:
        """Handle one inbound device frame. Malformed frames are logged and dropped."""
        self._increment_stat("frames_received")
        try:
            frame = frames.parse(raw)
            logger.debug(f"Data from {device_id}: {frame}")
            if frame["type"] == frames.FRAME_SENSOR_DATA:
                self._apply_sensor_data(device_id, frames.sensor_fields(frame))
            else:
                logger.debug(f"Ignoring '{frame['type']}' frame from {device_id}")
        except MalformedFrame as e:
            self._increment_stat("malformed_frames")
            logger.warning(f"Malformed frame from device {device_id}: {e.reason}")

    def _apply_sensor_data(self, device_id: str, fields: Mapping[str, Any]) -> None:
        self.state.merge(fields)
        self.broadcast_to_dashboards(
            frames.sensor_update_frame(device_id, fields, self._clock())
        )

    def device_disconnected(self, device_id: str, conn: Connection | None = None) -> bool:
        """Tear down a device connection.

        A close from a handle that a reconnect has already replaced is stale
        and leaves the registries untouched. Returns whether teardown ran.
        """
        if not self.connections.unregister_device(device_id, conn):
            logger.info(f"Ignoring stale close for device {device_id}")
            return False

        now = self._clock()
        self.devices.mark_offline(device_id, now)
        logger.info(f"IoT device disconnected: {device_id}")
        self.broadcast_to_dashboards(frames.device_disconnected_frame(device_id, now))
        return True

    # Dashboard lifecycle

    def dashboard_connected(self, conn: Connection) -> str:
        client_id = self.connections.new_client_id()
        # initialData must be queued before any broadcast that sees this client
        with self.connections.lock:
            self.connections.register_dashboard(client_id, conn)
            self._send(
                conn,
                frames.initial_data_frame(
                    [record.to_dict() for record in self.devices.list()],
                    self.state.snapshot(),
                    self._clock(),
                ),
            )
        logger.info(f"Web client connected: {client_id}")
        return client_id

    def dashboard_frame(self, client_id: str, raw: str | bytes) -> None:
        self._increment_stat("frames_received")
        logger.debug(f"Ignoring inbound frame from web client {client_id}")

    def dashboard_disconnected(self, client_id: str) -> None:
        self.connections.unregister_dashboard(client_id)
        logger.info(f"Web client disconnected: {client_id}")

    # Fan-out

    def broadcast_to_dashboards(self, frame: Mapping[str, Any]) -> int:
        return self._broadcast(self.connections.all_dashboards(), frame)

    def broadcast_to_devices(self, frame: Mapping[str, Any]) -> int:
        return self._broadcast(self.connections.all_devices(), frame)

    def send_to(self, conn: Connection, frame: Mapping[str, Any]) -> bool:
        return self._send(conn, frame)

    def _broadcast(self, targets: Iterable[Connection], frame: Mapping[str, Any]) -> int:
        """Best-effort delivery to every open handle in ``targets``."""
        text = frames.encode(frame)
        delivered = 0
        for conn in targets:
            if self._send_text(conn, text):
                delivered += 1
        return delivered

    def _send(self, conn: Connection, frame: Mapping[str, Any]) -> bool:
        return self._send_text(conn, frames.encode(frame))

    def _send_text(self, conn: Connection, text: str) -> bool:
        if not conn.is_open:
            return False
        try:
            sent = conn.send(text)
        except Exception as e:
            logger.debug(f"Send failed: {e}")
            sent = False
        if sent:
            self._increment_stat("frames_queued")
        else:
            self._increment_stat("failed_sends")
        return sent
