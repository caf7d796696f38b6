"""Device metadata registry and live connection registry."""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Iterable
from dataclasses import replace

from .types import Connection, DeviceRecord

logger = logging.getLogger(__name__)

CLIENT_ID_BYTES = 16


class DeviceRegistry:
    """Pre-seeded, fixed set of known devices.

    Only ``online`` and ``last_seen`` change after construction. Unknown ids
    passed to ``mark_online``/``mark_offline`` are ignored.
    """

    def __init__(self, records: Iterable[DeviceRecord] = ()) -> None:
        self._records: dict[str, DeviceRecord] = {}
        self._lock = threading.RLock()
        for record in records:
            if record.id in self._records:
                raise ValueError(f"Duplicate device id in registry: {record.id}")
            self._records[record.id] = replace(record)

    def list(self) -> list[DeviceRecord]:
        """Return copies of all records in insertion order."""
        with self._lock:
            return [replace(record) for record in self._records.values()]

    def find(self, device_id: str) -> DeviceRecord | None:
        with self._lock:
            record = self._records.get(device_id)
            return replace(record) if record is not None else None

    def mark_online(self, device_id: str, when: str) -> bool:
        return self._set_online(device_id, True, when)

    def mark_offline(self, device_id: str, when: str) -> bool:
        return self._set_online(device_id, False, when)

    def _set_online(self, device_id: str, online: bool, when: str) -> bool:
        with self._lock:
            record = self._records.get(device_id)
            if record is None:
                logger.debug(f"Device {device_id} is not in the registry")
                return False
            record.online = online
            record.last_seen = when
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class ConnectionRegistry:
    """Live connection handles for devices (by id) and dashboards (by ephemeral id).

    Handles are owned by the transport; the registry never closes them and
    never checks whether they are still open.
    """

    def __init__(self) -> None:
        self._devices: dict[str, Connection] = {}
        self._dashboards: dict[str, Connection] = {}
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """Reentrant lock guarding both maps.

        Hold it to make a registration and the first frame to that peer atomic
        with respect to lookups and broadcast snapshots.
        """
        return self._lock

    @staticmethod
    def new_client_id() -> str:
        return secrets.token_hex(CLIENT_ID_BYTES)

    def register_device(self, device_id: str, conn: Connection) -> Connection | None:
        """Register a device handle, returning the handle it replaced (if any)."""
        with self._lock:
            previous = self._devices.get(device_id)
            self._devices[device_id] = conn
        if previous is not None and previous is not conn:
            logger.info(f"Device {device_id} reconnected; replacing previous connection")
        return previous

    def unregister_device(self, device_id: str, conn: Connection | None = None) -> bool:
        """Remove a device entry.

        When ``conn`` is given, the entry is removed only if it still refers to
        that handle. Returns whether an entry was removed.
        """
        with self._lock:
            current = self._devices.get(device_id)
            if current is None:
                return False
            if conn is not None and current is not conn:
                return False
            del self._devices[device_id]
            return True

    def register_dashboard(self, client_id: str, conn: Connection) -> None:
        with self._lock:
            self._dashboards[client_id] = conn

    def unregister_dashboard(self, client_id: str) -> bool:
        with self._lock:
            return self._dashboards.pop(client_id, None) is not None

    def lookup_device(self, device_id: str) -> Connection | None:
        with self._lock:
            return self._devices.get(device_id)

    def all_dashboards(self) -> list[Connection]:
        with self._lock:
            return list(self._dashboards.values())

    def all_devices(self) -> list[Connection]:
        with self._lock:
            return list(self._devices.values())

    def dashboard_ids(self) -> list[str]:
        with self._lock:
            return list(self._dashboards)

    def device_count(self) -> int:
        with self._lock:
            return len(self._devices)

    def dashboard_count(self) -> int:
        with self._lock:
            return len(self._dashboards)
