"""
IoT Relay Server Package

A WebSocket relay hub between IoT devices that report sensor readings and
accept commands, and web dashboards that observe state and issue commands
through a small HTTP API.

Main Classes:
    RelayServer: Owns the shared state, registries and HTTP/WebSocket front end
    RelayEngine: Routes frames between devices and dashboards
    CommandGateway: Query state and issue commands to a device by id

Examples:
    # Run server via CLI (after installation)
    iot-relay-server --port 3000

    # Use server programmatically
    from iot_relay import RelayServer
    server = RelayServer()
    server.start()
    server.gateway.issue_command("device_002", "led", True)
"""

from .config import RelayConfig, load_default_config
from .exceptions import DeviceNotConnected, InvalidRole, MalformedFrame, RelayError
from .gateway import CommandGateway, CommandResult
from .registry import ConnectionRegistry, DeviceRegistry
from .relay import RelayEngine
from .server import RelayServer, get_version
from .state import SharedStateStore
from .types import DeviceRecord, PeerRole

# Export public API
__all__ = [
    # Server API
    "RelayServer",
    "RelayConfig",
    "load_default_config",
    "get_version",
    # Core
    "RelayEngine",
    "CommandGateway",
    "CommandResult",
    "SharedStateStore",
    "DeviceRegistry",
    "ConnectionRegistry",
    # Data types
    "DeviceRecord",
    "PeerRole",
    # Errors
    "RelayError",
    "DeviceNotConnected",
    "MalformedFrame",
    "InvalidRole",
]

__version__ = get_version()
