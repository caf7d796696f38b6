"""Tests for server lifecycle, heartbeat, CLI entry point and logging setup."""

import logging
import socket
import threading
import unittest.mock as mock
from dataclasses import replace

import pytest

from iot_relay import cli, logging_utils, network_utils
from iot_relay import server as server_module
from iot_relay.config import ConfigurationError, load_default_config
from iot_relay.server import RelayServer


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestRelayServer:
    def test_components_share_state(self, server):
        assert server.relay.state is server.state
        assert server.relay.devices is server.devices
        assert server.relay.connections is server.connections
        assert server.gateway.relay is server.relay

    def test_servers_do_not_share_state(self):
        first, second = RelayServer(), RelayServer()
        first.state.merge({"temperature": 99})
        assert second.state.snapshot()["temperature"] == 24.5

    def test_heartbeat_reports_counts_without_touching_state(
        self, server, connection_factory
    ):
        server.relay.device_connected("device_001", connection_factory())
        server.relay.dashboard_connected(connection_factory())
        before = server.state.snapshot()

        with mock.patch("iot_relay.server.logger") as mock_logger:
            assert server.log_heartbeat() == (1, 1)

        assert server.state.snapshot() == before
        message = str(mock_logger.info.call_args)
        assert "Devices: 1" in message
        assert "Clients: 1" in message

    def test_heartbeat_loop_stops_on_event(self, server):
        server.config = replace(server.config, heartbeat_interval=0.01)
        ticked = threading.Event()

        def fake_heartbeat():
            ticked.set()
            return 0, 0

        server.log_heartbeat = fake_heartbeat
        server._stop_event.clear()

        thread = threading.Thread(target=server._heartbeat_loop)
        thread.start()
        assert ticked.wait(timeout=2)
        server._stop_event.set()
        thread.join(timeout=2)

        assert not thread.is_alive()

    def test_port_in_use_exits_with_hint(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen()
            port = blocker.getsockname()[1]

            config = replace(load_default_config(), host="127.0.0.1", port=port)
            relay_server = RelayServer(config=config)
            with mock.patch("platform.system", return_value="Linux"):
                with mock.patch("iot_relay.server.logger") as mock_logger:
                    with pytest.raises(SystemExit):
                        relay_server.start()

        error_calls = [str(call) for call in mock_logger.error.call_args_list]
        assert any(f"lsof -i :{port}" in call for call in error_calls)
        assert any("kill <PID>" in call for call in error_calls)

    @pytest.mark.integration
    def test_start_serves_http_and_stops(self):
        import httpx

        port = _free_port()
        config = replace(load_default_config(), host="127.0.0.1", port=port)
        relay_server = RelayServer(config=config)
        relay_server.start()
        try:
            response = httpx.get(f"http://127.0.0.1:{port}/api/ping", timeout=5)
            assert response.status_code == 200
            assert response.json()["message"] == "Server is running"
        finally:
            relay_server.stop()

        assert relay_server.http_thread is None
        assert relay_server.heartbeat_thread is None


def _patch_quick_exit(monkeypatch):
    monkeypatch.setattr(server_module.network_utils, "get_local_ip_addresses", lambda: [])

    # Force the main loop to exit immediately
    def _raise_keyboard_interrupt(seconds):
        raise KeyboardInterrupt

    monkeypatch.setattr(server_module.time, "sleep", _raise_keyboard_interrupt)


def _patch_dummy_server(monkeypatch, store):
    class DummyServer:
        def __init__(self, **kwargs):
            store["init_kwargs"] = kwargs

        def start(self):
            store["started"] = True

        def stop(self):
            store["stopped"] = True

    monkeypatch.setattr(server_module, "RelayServer", DummyServer)


class TestMain:
    def test_main_passes_layered_config(self, monkeypatch, tmp_path):
        _patch_quick_exit(monkeypatch)
        store: dict[str, object] = {}
        _patch_dummy_server(monkeypatch, store)
        monkeypatch.setenv("PORT", "4000")

        def fake_configure_logging(**kwargs):
            store["configure_args"] = kwargs

        monkeypatch.setattr(server_module, "configure_logging", fake_configure_logging)

        server_module.main(
            ["--port", "4567", "--log-dir", str(tmp_path), "--log-level-console", "DEBUG"]
        )

        assert store["started"] is True
        assert store["stopped"] is True
        config = store["init_kwargs"]["config"]
        assert config.port == 4567
        assert store["configure_args"]["log_dir"] == tmp_path
        assert store["configure_args"]["console_level"] == "DEBUG"

    def test_main_uses_env_port(self, monkeypatch):
        _patch_quick_exit(monkeypatch)
        store: dict[str, object] = {}
        _patch_dummy_server(monkeypatch, store)
        monkeypatch.setenv("PORT", "4000")
        monkeypatch.setattr(server_module, "configure_logging", lambda **kwargs: None)

        server_module.main([])

        assert store["init_kwargs"]["config"].port == 4000

    def test_version_flag(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            server_module.main(["--version"])
        assert exc_info.value.code == 0
        assert server_module.get_version() in capsys.readouterr().out


class TestConfigureLogging:
    def test_file_sink_receives_stdlib_logs(self, tmp_path):
        from loguru import logger as loguru_logger

        try:
            log_file = logging_utils.configure_logging(
                log_dir=tmp_path, console_level="WARNING"
            )
            assert log_file == tmp_path / logging_utils.DEFAULT_LOG_FILENAME

            logging.getLogger("iot_relay.test").info("relay log line")
            loguru_logger.complete()

            assert "relay log line" in log_file.read_text()
        finally:
            loguru_logger.remove()
            logging.basicConfig(handlers=[], force=True)

    def test_console_only(self):
        from loguru import logger as loguru_logger

        try:
            assert logging_utils.configure_logging(log_dir=None) is None
        finally:
            loguru_logger.remove()
            logging.basicConfig(handlers=[], force=True)


class TestCliMain:
    @pytest.mark.parametrize(
        "error, code",
        [
            (KeyboardInterrupt(), 0),
            (ConfigurationError(["port must be between 1 and 65535, got 0"]), 2),
            (RuntimeError("boom"), 1),
        ],
    )
    def test_exit_codes(self, monkeypatch, error, code):
        def fake_main():
            raise error

        monkeypatch.setattr(cli, "main", fake_main)
        with pytest.raises(SystemExit) as exc_info:
            cli.cli_main()
        assert exc_info.value.code == code

    def test_system_exit_passes_through(self, monkeypatch):
        def fake_main():
            raise SystemExit(1)

        monkeypatch.setattr(cli, "main", fake_main)
        with pytest.raises(SystemExit) as exc_info:
            cli.cli_main()
        assert exc_info.value.code == 1


def test_connection_urls():
    urls = network_utils.connection_urls("192.168.1.20", 3000)
    assert urls["api"] == "http://192.168.1.20:3000/api/health"
    assert urls["dashboard"] == "ws://192.168.1.20:3000/?type=web"
    assert urls["device"].startswith("ws://192.168.1.20:3000/?type=device")
