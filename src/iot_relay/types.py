"""
Data types shared by the relay core.

Wire-facing dictionaries keep the camelCase keys used by devices and dashboards.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, Union

# Value held by a single telemetry/actuator field
FieldValue = Union[bool, int, float, str]


def utc_timestamp() -> str:
    """Return the current UTC time as ISO-8601 with milliseconds and a Z suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PeerRole(str, Enum):
    """Role a connecting peer declares through the ``type`` query parameter."""

    DEVICE = "device"
    DASHBOARD = "web"


@dataclass
class DeviceRecord:
    """Registry metadata for a known device."""

    id: str
    name: str
    type: str
    location: str
    online: bool = False
    last_seen: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "location": self.location,
            "online": self.online,
            "lastSeen": self.last_seen,
        }


class Connection(Protocol):
    """Live duplex connection handle owned by the transport layer."""

    @property
    def is_open(self) -> bool: ...

    def send(self, text: str) -> bool:
        """Queue one serialized frame; return False when it was not queued."""
        ...
