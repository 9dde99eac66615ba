"""
Unit tests for launcher port selection
"""

import socket

from hems.starter_headless import find_free_port, resolve_port


def test_configured_port_wins(monkeypatch):
    monkeypatch.setenv("HEMS_PORT", "8765")
    assert resolve_port() == 8765


def test_busy_port_is_skipped(monkeypatch):
    monkeypatch.delenv("HEMS_PORT", raising=False)
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen()
        taken = busy.getsockname()[1]

        assert find_free_port("127.0.0.1", taken) > taken
