"""Smoke tests for the roomlink package.

These tests verify that the installed package is structurally sound: all
subpackages importable and the CLI entry point reachable. They are
intentionally lightweight and fast.
"""

import pytest
from click.testing import CliRunner

from roomlink.cli import cli


# ── Subpackage imports ────────────────────────────────────────────────────────


class TestSubpackageImports:
    """Each roomlink subpackage must be importable without error."""

    def test_import_server(self):
        from roomlink.server import RoomRegistry, SignalingServer  # noqa: F401

    def test_import_client(self):
        from roomlink.client import MeshCoordinator, PeerLink, RoomClient  # noqa: F401

    def test_import_protocol(self):
        import roomlink.protocol  # noqa: F401

    def test_version(self):
        import roomlink

        assert roomlink.__version__


# ── CLI entry point ───────────────────────────────────────────────────────────


class TestCliEntryPoint:

    @pytest.mark.parametrize("command", ["serve", "join", "new-code", "config"])
    def test_subcommand_help(self, command):
        result = CliRunner().invoke(cli, [command, "--help"])
        assert result.exit_code == 0, result.output
