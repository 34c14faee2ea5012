"""Tests for pyhomie._connection — connection state holder.

Test Techniques Used:
    - State Transition Testing: every allowed and rejected transition
    - Error Guessing: transport access before connecting
"""

from __future__ import annotations

import pytest

from pyhomie._connection import Connection, ConnectionState
from pyhomie._errors import StateError
from pyhomie._mqtt import MockMqttClient


class TestTransitions:
    """Allowed moves between connection phases.

    Technique: State Transition Testing.
    """

    def test_starts_idle_without_transport(self) -> None:
        conn = Connection()
        assert conn.state is ConnectionState.IDLE
        assert conn.transport is None

    def test_full_lifecycle(self) -> None:
        conn = Connection()
        transport = MockMqttClient()

        conn.begin(transport)
        assert conn.state is ConnectionState.CONNECTING
        assert conn.transport is transport

        conn.established()
        assert conn.state is ConnectionState.CONNECTED

        conn.lost()
        assert conn.state is ConnectionState.CONNECTING

        conn.established()
        conn.closed()
        assert conn.state is ConnectionState.DISCONNECTED
        assert conn.transport is transport

    def test_failed_handshake_returns_to_idle(self) -> None:
        conn = Connection()
        conn.begin(MockMqttClient())

        conn.failed()

        assert conn.state is ConnectionState.IDLE
        assert conn.transport is None

    def test_begin_again_after_disconnect(self) -> None:
        conn = Connection()
        conn.begin(MockMqttClient())
        conn.established()
        conn.closed()
        replacement = MockMqttClient()

        conn.begin(replacement)

        assert conn.state is ConnectionState.CONNECTING
        assert conn.transport is replacement


class TestRejectedTransitions:
    """Moves that are not part of the lifecycle raise StateError.

    Technique: State Transition Testing.
    """

    def test_begin_while_connected(self) -> None:
        conn = Connection()
        conn.begin(MockMqttClient())
        conn.established()
        with pytest.raises(StateError, match="connected -> connecting"):
            conn.begin(MockMqttClient())

    def test_established_from_idle(self) -> None:
        with pytest.raises(StateError, match="Invalid connection transition"):
            Connection().established()

    def test_lost_while_connecting(self) -> None:
        conn = Connection()
        conn.begin(MockMqttClient())
        with pytest.raises(StateError):
            conn.lost()

    def test_closed_from_idle(self) -> None:
        with pytest.raises(StateError):
            Connection().closed()

    def test_rejected_move_keeps_state(self) -> None:
        conn = Connection()
        with pytest.raises(StateError):
            conn.lost()
        assert conn.state is ConnectionState.IDLE


class TestRequireTransport:
    """Transport handle access."""

    def test_raises_before_begin(self) -> None:
        with pytest.raises(StateError, match="No transport: connection is idle"):
            Connection().require_transport()

    def test_returns_handle(self) -> None:
        conn = Connection()
        transport = MockMqttClient()
        conn.begin(transport)
        assert conn.require_transport() is transport
