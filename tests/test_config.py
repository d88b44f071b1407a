"""Tests for settings resolution."""

import pytest
from pydantic import ValidationError

from devtools_bridge.config import Settings
from devtools_bridge.main import build_parser, resolve_settings
from devtools_bridge.utils.errors import ConfigurationError


class TestSettings:

    def test_defaults(self, monkeypatch, temp_dir):
        monkeypatch.chdir(temp_dir)
        settings = Settings()
        assert settings.port_range == (27125, 27135)
        assert settings.request_timeout == 15.0
        assert settings.ping_interval == 5.0
        assert settings.max_restarts == 5
        assert settings.restart_cooldown == 60.0
        assert settings.relay_dedupe is True
        assert settings.max_message_size == 100 * 1024 * 1024

    def test_env_overrides(self, monkeypatch, temp_dir):
        monkeypatch.chdir(temp_dir)
        monkeypatch.setenv("DEVTOOLS_PORT_MIN", "30000")
        monkeypatch.setenv("DEVTOOLS_PORT_MAX", "30005")
        monkeypatch.setenv("DEVTOOLS_STATE_DIR", str(temp_dir))
        monkeypatch.setenv("DEVTOOLS_RELAY_DEDUPE", "false")
        monkeypatch.setenv("DEVTOOLS_MAX_MESSAGE_SIZE", "4096")

        settings = Settings()

        assert settings.port_range == (30000, 30005)
        assert settings.relay_dedupe is False
        assert settings.max_message_size == 4096
        assert settings.resolved_port_file == temp_dir / "active_port.txt"
        assert settings.resolved_log_file == temp_dir / "mcp_service.log"
        assert settings.service_pid_file == temp_dir / "service.pid"
        assert settings.bridge_pid_file == temp_dir / "bridge.pid"

    def test_inverted_port_range_rejected(self):
        with pytest.raises(ValidationError):
            Settings(port_min=27135, port_max=27125)

    def test_explicit_port_file_wins(self, temp_dir):
        settings = Settings(state_dir=temp_dir, port_file=temp_dir / "elsewhere.txt")
        assert settings.resolved_port_file == temp_dir / "elsewhere.txt"


class TestCli:

    def test_flags_override_settings(self, temp_dir):
        args = build_parser().parse_args(
            ["--state-dir", str(temp_dir), "bridge", "--port-min", "28000", "--port-max", "28002", "--timeout", "3"]
        )
        settings = resolve_settings(args)

        assert args.command == "bridge"
        assert settings.port_range == (28000, 28002)
        assert settings.request_timeout == 3.0
        assert settings.state_dir == temp_dir

    def test_inverted_flags_are_a_configuration_error(self, temp_dir):
        args = build_parser().parse_args(
            ["--state-dir", str(temp_dir), "bridge", "--port-min", "28002", "--port-max", "28000"]
        )
        with pytest.raises(ConfigurationError):
            resolve_settings(args)

    def test_no_log_file_after_subcommand(self):
        args = build_parser().parse_args(["bridge", "--no-log-file"])
        assert args.no_log_file is True
        args = build_parser().parse_args(["service"])
        assert args.no_log_file is False
