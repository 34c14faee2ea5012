"""Tests for Device.run() — runner, stats loop and shutdown.

Test Techniques Used:
    - State Transition Testing: run → shutdown → disconnected
    - Async Coordination: shutdown_event and fatal-error wakeups
    - Time Isolation: FakeClock for uptime, short intervals for the loop
"""

from __future__ import annotations

import asyncio
import signal
from unittest.mock import AsyncMock

import pytest

from pyhomie._connection import ConnectionState
from pyhomie._device import Device, _install_signal_handlers
from pyhomie._errors import ConfigurationError, ConnectionFailedError
from pyhomie._mqtt import MockMqttClient
from pyhomie.testing import DeviceHarness, make_settings


class TestRunNonBlocking:
    """``block=False`` returns once connected."""

    async def test_returns_connected(self, harness: DeviceHarness) -> None:
        await harness.device.run(block=False)

        assert harness.device.state is ConnectionState.CONNECTED
        assert harness.retained("$state") == "ready"

    async def test_handshake_failure_propagates(self) -> None:
        mqtt = MockMqttClient(connect_error=OSError("refused"))
        device = Device("d", make_settings(), mqtt=mqtt, local_ip=lambda: "")

        with pytest.raises(ConnectionFailedError):
            await device.run(block=False)


class TestRunBlocking:
    """Blocking run until shutdown.

    Technique: Async Coordination.
    """

    async def test_shutdown_event_disconnects(self, harness: DeviceHarness) -> None:
        shutdown = asyncio.Event()
        task = asyncio.create_task(harness.device.run(shutdown_event=shutdown))
        await asyncio.sleep(0.01)
        assert harness.device.state is ConnectionState.CONNECTED

        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert harness.device.state is ConnectionState.DISCONNECTED
        assert harness.retained("$state") == "disconnected"

    async def test_shutdown_after_manual_disconnect(
        self,
        harness: DeviceHarness,
    ) -> None:
        shutdown = asyncio.Event()
        task = asyncio.create_task(harness.device.run(shutdown_event=shutdown))
        await asyncio.sleep(0.01)
        await harness.device.disconnect()

        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert harness.device.state is ConnectionState.DISCONNECTED
        assert harness.mqtt.disconnect_calls == [0.5]

    async def test_fatal_bootstrap_error_on_first_connect(
        self,
        harness: DeviceHarness,
    ) -> None:
        harness.device.set_device_publisher(
            AsyncMock(side_effect=ConfigurationError("bad wiring")),
        )

        with pytest.raises(ConfigurationError, match="bad wiring"):
            await harness.device.run(shutdown_event=asyncio.Event())

        assert harness.device.state is ConnectionState.DISCONNECTED
        assert harness.retained("$state") == "disconnected"

    async def test_fatal_bootstrap_error_on_reconnect(
        self,
        harness: DeviceHarness,
    ) -> None:
        harness.device.set_device_publisher(
            AsyncMock(side_effect=[None, ConfigurationError("bad wiring")]),
        )
        task = asyncio.create_task(harness.device.run(shutdown_event=asyncio.Event()))
        await asyncio.sleep(0.01)

        await harness.mqtt.simulate_connection_lost()
        await harness.mqtt.simulate_reconnect()

        with pytest.raises(ConfigurationError, match="bad wiring"):
            await asyncio.wait_for(task, timeout=1.0)
        assert harness.device.state is ConnectionState.DISCONNECTED


class TestStatsLoop:
    """Periodic ``$stats/uptime`` reports.

    Technique: Time Isolation.
    """

    async def test_reports_uptime_periodically(self, harness: DeviceHarness) -> None:
        await harness.connect()
        harness.clock.advance(30)
        loop_task = asyncio.create_task(harness.device._stats_loop(0.01))  # noqa: SLF001

        await asyncio.sleep(0.05)
        loop_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await loop_task

        assert harness.retained("$stats/uptime") == "30"
        assert len(harness.mqtt.get_messages_for("home/sensor1/$stats/uptime")) > 1

    async def test_skips_reports_while_offline(self, harness: DeviceHarness) -> None:
        await harness.connect()
        await harness.mqtt.simulate_connection_lost()
        count = harness.mqtt.publish_count
        loop_task = asyncio.create_task(harness.device._stats_loop(0.01))  # noqa: SLF001

        await asyncio.sleep(0.05)
        loop_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await loop_task

        assert harness.mqtt.publish_count == count

    async def test_publish_failure_is_logged(
        self,
        harness: DeviceHarness,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await harness.connect()
        harness.mqtt.publish = AsyncMock(side_effect=OSError("broken pipe"))  # type: ignore[method-assign]
        loop_task = asyncio.create_task(harness.device._stats_loop(0.01))  # noqa: SLF001

        await asyncio.sleep(0.03)
        loop_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await loop_task

        assert "Stats report for 'sensor1' failed" in caplog.text


class TestSignalHandlers:
    """Shutdown event selection."""

    async def test_given_event_is_returned(self) -> None:
        event = asyncio.Event()
        assert _install_signal_handlers(event) is event

    async def test_signals_set_new_event(self) -> None:
        loop = asyncio.get_running_loop()
        event = _install_signal_handlers(None)
        try:
            loop.call_soon(signal.raise_signal, signal.SIGTERM)
            await asyncio.wait_for(event.wait(), timeout=1.0)
        finally:
            loop.remove_signal_handler(signal.SIGTERM)
            loop.remove_signal_handler(signal.SIGINT)
        assert event.is_set()
