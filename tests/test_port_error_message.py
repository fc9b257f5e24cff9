#!/usr/bin/env python3
"""
Test platform-specific error messages when port is already in use.
"""

import unittest.mock as mock
from dataclasses import replace

import pytest

from xrwall.config import load_default_config
from xrwall.network_utils import find_free_port
from xrwall.server import RelayServer


def _config(port: int):
    return replace(
        load_default_config(), port=port, bind_address="127.0.0.1", shutdown_timeout=0.5
    )


def _conflict_errors(port: int) -> list[str]:
    """Start a relay on ``port``, then a second one, and collect error logs."""
    with mock.patch("xrwall.server.logger") as mock_logger:
        server1 = RelayServer(_config(port))
        try:
            server1.start()

            # Try to create a second relay on the same port
            server2 = RelayServer(_config(port))
            with pytest.raises(SystemExit):
                server2.start()
        finally:
            server1.stop()
        return [str(call) for call in mock_logger.error.call_args_list]


class TestPortErrorMessage:
    """Test platform-specific error messages for port conflicts."""

    def test_port_error_message_linux(self):
        """Test that Linux shows lsof and kill commands when port is in use."""
        port = find_free_port()
        with mock.patch("platform.system", return_value="Linux"):
            error_calls = _conflict_errors(port)

        assert any(
            f"lsof -i :{port}" in call for call in error_calls
        ), f"Expected 'lsof -i :{port}' in error messages. Got: {error_calls}"
        assert any(
            "kill <PID>" in call for call in error_calls
        ), f"Expected 'kill <PID>' in error messages. Got: {error_calls}"
        assert not any(
            "netstat" in call for call in error_calls
        ), f"Did not expect Windows 'netstat' command. Got: {error_calls}"
        assert not any(
            "taskkill" in call for call in error_calls
        ), f"Did not expect Windows 'taskkill' command. Got: {error_calls}"

    def test_port_error_message_windows(self):
        """Test that Windows shows netstat and taskkill commands when port is in use."""
        port = find_free_port()
        with mock.patch("platform.system", return_value="Windows"):
            error_calls = _conflict_errors(port)

        assert any(
            f"netstat -ano | findstr :{port}" in call for call in error_calls
        ), f"Expected 'netstat -ano | findstr :{port}' in error messages. Got: {error_calls}"
        assert any(
            "taskkill /PID <PID> /F" in call for call in error_calls
        ), f"Expected 'taskkill /PID <PID> /F' in error messages. Got: {error_calls}"
        assert not any(
            "lsof" in call for call in error_calls
        ), f"Did not expect Unix 'lsof' command. Got: {error_calls}"

    def test_port_error_message_darwin(self):
        """Test that macOS (Darwin) shows lsof and kill commands when port is in use."""
        port = find_free_port()
        with mock.patch("platform.system", return_value="Darwin"):
            error_calls = _conflict_errors(port)

        assert any(
            f"lsof -i :{port}" in call for call in error_calls
        ), f"Expected 'lsof -i :{port}' in error messages. Got: {error_calls}"
        assert any(
            "kill <PID>" in call for call in error_calls
        ), f"Expected 'kill <PID>' in error messages. Got: {error_calls}"
