"""Shared state store holding the last-known device telemetry and actuator values."""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from typing import Any

from .types import FieldValue, utc_timestamp

LAST_UPDATE_KEY = "lastUpdate"


class SharedStateStore:
    """In-memory snapshot of device fields plus the time of the last write.

    Field names are open-ended; any device may report any field. ``set_field``
    only touches names that already exist, so commands naming an unknown field
    leave the store unchanged.
    """

    def __init__(
        self,
        initial: Mapping[str, FieldValue] | None = None,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        self._clock = clock
        self._fields: dict[str, FieldValue] = {
            name: value
            for name, value in (initial or {}).items()
            if name != LAST_UPDATE_KEY
        }
        self._last_update = clock()
        self._lock = threading.RLock()

    @property
    def last_update(self) -> str:
        with self._lock:
            return self._last_update

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of every field plus ``lastUpdate``."""
        with self._lock:
            result: dict[str, Any] = dict(self._fields)
            result[LAST_UPDATE_KEY] = self._last_update
            return result

    def merge(self, fields: Mapping[str, FieldValue]) -> None:
        """Insert or overwrite each key, then refresh the timestamp."""
        with self._lock:
            for name, value in fields.items():
                if name == LAST_UPDATE_KEY:
                    continue
                self._fields[name] = value
            self._last_update = self._clock()

    def set_field(self, name: str, value: Any) -> bool:
        """Overwrite an existing field. Returns False for unknown names."""
        with self._lock:
            if name not in self._fields:
                return False
            self._fields[name] = value
            self._last_update = self._clock()
            return True
