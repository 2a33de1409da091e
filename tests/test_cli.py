"""Unit tests for CLI commands.

Tests for:
- serve / join argument handling
- new-code
- config output
"""

import json
from unittest import mock

import pytest
from click.testing import CliRunner

from roomlink.cli import cli
from roomlink.client.room_client import RoomClientError
from roomlink.config import Config
from roomlink.protocol import ROOM_CODE_ALPHABET


@pytest.fixture
def runner():
    """Create a CLI runner for testing."""
    return CliRunner()


class TestHelp:
    def test_group_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("serve", "join", "new-code", "config"):
            assert command in result.output

    def test_join_help(self, runner):
        result = runner.invoke(cli, ["join", "--help"])
        assert result.exit_code == 0
        assert "ROOM_CODE" in result.output


class TestNewCode:
    def test_default_length(self, runner):
        result = runner.invoke(cli, ["new-code"])
        assert result.exit_code == 0
        code = result.output.strip()
        assert len(code) == 6
        assert all(c in ROOM_CODE_ALPHABET for c in code)

    def test_custom_length(self, runner):
        result = runner.invoke(cli, ["new-code", "--length", "8"])
        assert result.exit_code == 0
        assert len(result.output.strip()) == 8

    def test_length_out_of_range(self, runner):
        result = runner.invoke(cli, ["new-code", "--length", "3"])
        assert result.exit_code == 2


class TestServe:
    def test_passes_options_through(self, runner):
        with mock.patch("roomlink.rtc_server.run_server") as run_server:
            result = runner.invoke(cli, ["serve", "--host", "0.0.0.0", "--port", "9000"])

        assert result.exit_code == 0
        run_server.assert_called_once_with(host="0.0.0.0", port=9000)

    def test_defaults_left_to_config(self, runner):
        with mock.patch("roomlink.rtc_server.run_server") as run_server:
            result = runner.invoke(cli, ["serve"])

        assert result.exit_code == 0
        run_server.assert_called_once_with(host=None, port=None)


class TestJoin:
    def test_normalizes_code(self, runner):
        with mock.patch("roomlink.rtc_room.run_room_client") as run_room_client:
            result = runner.invoke(cli, ["join", "ab12", "--name", "Ada", "--role", "guest"])

        assert result.exit_code == 0
        run_room_client.assert_called_once_with(
            "AB12", server=None, name="Ada", role="guest", video=None, audio=None
        )

    def test_invalid_code_exits_1(self, runner):
        with mock.patch("roomlink.rtc_room.run_room_client") as run_room_client:
            result = runner.invoke(cli, ["join", "a!"])

        assert result.exit_code == 1
        run_room_client.assert_not_called()

    def test_rejected_join_exits_1(self, runner):
        with mock.patch(
            "roomlink.rtc_room.run_room_client",
            side_effect=RoomClientError("nope", code="malformed-envelope"),
        ):
            result = runner.invoke(cli, ["join", "AB12"])

        assert result.exit_code == 1

    def test_unreachable_server_exits_1(self, runner):
        with mock.patch(
            "roomlink.rtc_room.run_room_client",
            side_effect=ConnectionRefusedError("refused"),
        ):
            result = runner.invoke(cli, ["join", "AB12"])

        assert result.exit_code == 1


class TestConfigCommand:
    def test_prints_effective_config(self, runner):
        config = Config()
        config.port = 9300
        with mock.patch("roomlink.config.get_config", return_value=config):
            result = runner.invoke(cli, ["config"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["port"] == 9300
        assert data["signaling_websocket"] == config.signaling_websocket
