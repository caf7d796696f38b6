# server.py
import sys

# ruff: noqa: E402, I001

# Python version check - must be at the very beginning
MIN_PY = (3, 11)
if sys.version_info < MIN_PY:
    sys.stderr.write(
        f"ERROR: IoT Relay Server requires Python {MIN_PY[0]}.{MIN_PY[1]}+ "
        f"(current: {sys.version.split()[0]}).\n"
    )
    sys.exit(1)

import argparse
import logging
import platform
import signal
import threading
import time
import traceback
from collections.abc import Callable
from functools import lru_cache
from pathlib import Path

from . import network_utils
from .config import ConfigOverride, RelayConfig, create_config_from_args, load_default_config
from .gateway import CommandGateway
from .logging_utils import configure_logging
from .registry import ConnectionRegistry, DeviceRegistry
from .relay import RelayEngine
from .rest_bridge import create_app, run_uvicorn_in_thread
from .state import SharedStateStore
from .types import utc_timestamp

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_version() -> str:
    """
    Return the server version.
    Priority:
      1) importlib.metadata for 'iot-relay-server' (when installed)
      2) parse nearest pyproject.toml (when running from source)
      3) 'unknown'
    """
    import importlib.metadata as im
    import tomllib

    try:
        return im.version("iot-relay-server")
    except im.PackageNotFoundError:
        pass

    for parent in Path(__file__).resolve().parents:
        toml_path = parent / "pyproject.toml"
        if toml_path.exists():
            data = tomllib.loads(toml_path.read_text(encoding="utf-8"))
            v = (data.get("project") or {}).get("version")
            if v:
                return v
            break

    return "unknown"


class RelayServer:
    """Owns the relay state, registries and HTTP/WebSocket front end.

    Everything mutable lives on this object: construct it at startup, call
    ``start()`` to serve and ``stop()`` to tear down.
    """

    STARTUP_TIMEOUT = 5.0  # seconds to wait for uvicorn to bind
    SHUTDOWN_TIMEOUT = 5.0

    def __init__(
        self,
        config: RelayConfig | None = None,
        clock: Callable[[], str] = utc_timestamp,
    ):
        self.config = config if config is not None else load_default_config()
        self.version = get_version()

        self.state = SharedStateStore(self.config.initial_state, clock=clock)
        self.devices = DeviceRegistry(self.config.device_records())
        self.connections = ConnectionRegistry()
        self.relay = RelayEngine(self.state, self.devices, self.connections, clock=clock)
        self.gateway = CommandGateway(self.relay, clock=clock)
        self.app = create_app(self)

        # Threading
        self.running = False
        self._stop_event = threading.Event()
        self.heartbeat_thread: threading.Thread | None = None
        self.http_thread: threading.Thread | None = None
        self.http_server = None

    def start(self):
        """Start the HTTP/WebSocket server and the heartbeat thread."""
        host, port = self.config.host, self.config.port
        logger.info(f"Starting server on {host}:{port}")

        if not network_utils.is_port_available(host, port):
            _log_port_in_use(port)
            raise SystemExit(1)

        try:
            self.http_thread, self.http_server = run_uvicorn_in_thread(
                self.app, host=host, port=port
            )
            deadline = time.monotonic() + self.STARTUP_TIMEOUT
            while not self.http_server.started:
                if not self.http_thread.is_alive():
                    raise RuntimeError(f"HTTP server failed to bind {host}:{port}")
                if time.monotonic() > deadline:
                    raise RuntimeError(
                        "Timed out waiting for the HTTP server to start"
                    )
                time.sleep(0.05)
        except Exception as e:
            logger.error(f"Failed to start server: {e}")
            logger.error(traceback.format_exc())
            self._stop_http()
            raise

        self.running = True
        self._stop_event.clear()
        self.heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop, name="HeartbeatThread", daemon=True
        )
        self.heartbeat_thread.start()

        logger.info("Server is ready and waiting for connections...")

    def stop(self):
        """Stop the server"""
        logger.info("Stopping server...")
        self.running = False
        self._stop_event.set()

        if self.heartbeat_thread:
            self.heartbeat_thread.join(timeout=self.SHUTDOWN_TIMEOUT)
            self.heartbeat_thread = None
            logger.info("Heartbeat thread stopped")

        self._stop_http()

        logger.info(
            f"Server stopped. Frames received: {self.relay.frames_received}, "
            f"frames queued: {self.relay.frames_queued}, "
            f"frames sent: {self.relay.frames_sent}, "
            f"malformed frames: {self.relay.malformed_frames}, "
            f"failed sends: {self.relay.failed_sends}"
        )

    def _stop_http(self):
        if self.http_server is not None:
            self.http_server.should_exit = True
        if self.http_thread is not None:
            self.http_thread.join(timeout=self.SHUTDOWN_TIMEOUT)
            logger.info("HTTP server stopped")
        self.http_thread = None
        self.http_server = None

    def log_heartbeat(self) -> tuple[int, int]:
        """Log and return (device connections, dashboard connections)."""
        devices = self.connections.device_count()
        dashboards = self.connections.dashboard_count()
        logger.info(f"Server heartbeat - Devices: {devices}, Clients: {dashboards}")
        return devices, dashboards

    def _heartbeat_loop(self):
        """Periodic connection-count log; never touches relay state."""
        while not self._stop_event.wait(self.config.heartbeat_interval):
            try:
                self.log_heartbeat()
            except Exception as e:
                logger.error(f"Error in heartbeat loop: {e}")


def _log_port_in_use(port: int) -> None:
    logger.error(f"Error: Another process is already listening on port {port}")
    logger.error("Please stop the existing server or choose another port with --port.")
    if platform.system() == "Windows":
        logger.error(f"You can find the process using: netstat -ano | findstr :{port}")
        logger.error("And stop it using: taskkill /PID <PID> /F")
    else:
        logger.error(f"You can find the process using: lsof -i :{port}")
        logger.error("And stop it using: kill <PID>")


def _log_startup(config: RelayConfig, overrides: list[ConfigOverride]) -> None:
    logger.info("=" * 80)
    logger.info("IoT Relay Server Starting")
    logger.info("=" * 80)
    logger.info(f"  Version: {get_version()}")
    logger.info(f"  Listening: {config.host}:{config.port}")
    logger.info(f"  Heartbeat interval: {config.heartbeat_interval}s")
    logger.info(f"  Known devices: {', '.join(d['id'] for d in config.devices) or '-'}")
    for override in overrides:
        if override.key in ("initial_state", "devices"):
            logger.info(f"  Override: {override.key} (custom)")
        else:
            logger.info(
                f"  Override: {override.key} = {override.new_value} "
                f"(default: {override.default_value})"
            )

    addresses = network_utils.get_local_ip_addresses()
    if addresses:
        logger.info("  Reachable at:")
        for ip in addresses:
            urls = network_utils.connection_urls(ip, config.port)
            logger.info(f"    {urls['api']}")
            logger.info(f"    {urls['dashboard']}")
            logger.info(f"    {urls['device']}")
    logger.info("=" * 80)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="IoT Relay Server")
    parser.add_argument(
        "--config", type=Path, default=None, help="Path to a TOML configuration file"
    )
    parser.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0)")
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="HTTP/WebSocket port (default: $PORT or 3000)",
    )
    parser.add_argument(
        "--heartbeat-interval",
        type=float,
        default=None,
        help="Seconds between heartbeat log lines (default: 30)",
    )
    parser.add_argument(
        "--log-dir", type=Path, default=None, help="Directory for rotated JSON log files"
    )
    parser.add_argument(
        "--log-level-console",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Console log level (default: INFO)",
    )
    parser.add_argument(
        "--log-json-console", action="store_true", help="Emit console logs as JSON"
    )
    parser.add_argument(
        "--log-rotation", default=None, help="loguru rotation rule, e.g. '10 MB'"
    )
    parser.add_argument(
        "--log-retention", default=None, help="loguru retention rule, e.g. '1 week'"
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {get_version()}",
        help="Show version and exit",
    )
    return parser


def main(argv: list[str] | None = None):
    args = build_parser().parse_args(argv)

    config, overrides = create_config_from_args(args)

    configure_logging(
        log_dir=Path(config.log_dir) if config.log_dir else None,
        console_level=config.log_level_console,
        console_json=config.log_json_console,
        rotation=config.log_rotation,
        retention=config.log_retention,
    )

    _log_startup(config, overrides)

    server = RelayServer(config=config)

    shutdown = threading.Event()
    previous_sigterm = None
    if threading.current_thread() is threading.main_thread():
        previous_sigterm = signal.signal(
            signal.SIGTERM, lambda signum, frame: shutdown.set()
        )

    try:
        server.start()

        logger.info("Server started successfully. Press Ctrl+C to stop.")

        while not shutdown.is_set():
            try:
                time.sleep(1)
            except KeyboardInterrupt:
                logger.info("Received interrupt signal (Ctrl+C)...")
                break
        if shutdown.is_set():
            logger.info("Received SIGTERM, shutting down server...")

    except SystemExit:
        logger.info("Server startup failed. Exiting...")
        raise
    except KeyboardInterrupt:
        logger.info("Received interrupt signal during startup...")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        logger.error(traceback.format_exc())
    finally:
        try:
            server.stop()
        except Exception as e:
            logger.error(f"Error during server shutdown: {e}")
        if previous_sigterm is not None:
            signal.signal(signal.SIGTERM, previous_sigterm)
        logger.info("Server shutdown complete.")
