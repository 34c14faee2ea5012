"""Homie device runtime.

:class:`Device` maps a device → nodes → properties model onto MQTT
topics, drives the broker connection, and announces or retracts its
state.  Typical usage::

    settings = pyhomie.Settings()
    device = pyhomie.Device("sensor1", settings)

    temp = device.new_node("temp", "temperature")
    value = temp.new_property("value", "float", unit="°C")

    async def publish_reading(node: pyhomie.Node) -> None:
        await value.send(21.5)

    temp.set_publisher(publish_reading)
    asyncio.run(device.run())

Connecting runs the bootstrap sequence in the transport's task, once
per fresh broker session, in this order:

1. check the transport reports connected
2. ``$homie``, ``$name``, ``$localip``, ``$implementation``,
   ``$state=ready``, ``$stats/interval``
3. ``$nodes``
4. every node's ``publish()``
5. every node's ``subscribe()``, then its node publisher
6. the device publisher
7. ``$stats/uptime``
8. subscription to ``{base_topic}$broadcast/+``

Every publish is retained with QoS 1 so a late subscriber recovers the
full device state from the broker.  Reconnects repeat the sequence;
retained topics are overwritten and subscriptions replaced, so a repeat
leaves the broker in the same state.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import threading
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, TypeAlias

from pyhomie._clock import ClockPort, SystemClock
from pyhomie._connection import Connection, ConnectionState
from pyhomie._errors import (
    ConfigurationError,
    ConnectionFailedError,
    FatalError,
    StateError,
)
from pyhomie._mqtt import (
    DISCONNECT_GRACE,
    QOS,
    BrokerAddress,
    ConnectOptions,
    MessageHandler,
    MqttClient,
    MqttTransport,
    WillConfig,
)
from pyhomie._network import outbound_ip
from pyhomie._node import Node
from pyhomie._settings import Settings
from pyhomie._topics import broadcast_filter, broadcast_level, device_topic

logger = logging.getLogger(__name__)

HOMIE_VERSION = "3.0.1"
IMPLEMENTATION = "pyhomie"

CONNECT_POLL_INTERVAL = 3.0
"""Seconds per wait slice while the broker handshake is pending."""

STATE_READY = "ready"
STATE_LOST = "lost"
STATE_DISCONNECTED = "disconnected"

DevicePublisher: TypeAlias = "Callable[[Device], Awaitable[None]]"

# ---------------------------------------------------------------------------
# Hooks and stats
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DeviceHooks:
    """Optional user callbacks, invoked in a fixed order.

    - ``on_connect(device)`` — after the bootstrap sequence.
    - ``on_connection_lost(device, error)`` — before
      :meth:`Device.on_connection_lost`.
    - ``on_broadcast(device, level, payload)`` — for each message on
      ``{base_topic}$broadcast/{level}``; *payload* is raw bytes.

    Exceptions from ``on_connect`` and ``on_connection_lost`` are
    logged and do not interrupt the transport.
    """

    on_connect: Callable[[Device], Awaitable[None]] | None = None
    on_connection_lost: (
        Callable[[Device, Exception | None], Awaitable[None]] | None
    ) = None
    on_broadcast: Callable[[Device, str, bytes], Awaitable[None]] | None = None


class DeviceStats:
    """Startup and connect timestamps plus monotonic uptime."""

    def __init__(self, clock: ClockPort) -> None:
        self._clock = clock
        self._started = clock.now()
        self._startup_time = datetime.now(UTC)
        self._connect_time: datetime | None = None

    @property
    def startup_time(self) -> datetime:
        return self._startup_time

    @property
    def connect_time(self) -> datetime | None:
        """Time of the first successful connect, ``None`` before it."""
        return self._connect_time

    def uptime(self) -> int:
        """Whole seconds since construction; never negative."""
        return max(0, int(self._clock.now() - self._started))

    def mark_connected(self) -> None:
        if self._connect_time is None:
            self._connect_time = datetime.now(UTC)


# ---------------------------------------------------------------------------
# Device
# ---------------------------------------------------------------------------


class Device:
    """One Homie device and its broker session.

    Args:
        name: Device ID, also the MQTT client identifier.
        settings: Broker, topic and stats configuration.
        hooks: Optional user callbacks.
        mqtt: Transport to use.  Defaults to a fresh :class:`MqttClient`
            on every :meth:`connect`; tests inject ``MockMqttClient``.
        clock: Monotonic clock for uptime.
        local_ip: Resolver for ``$localip``.
    """

    def __init__(
        self,
        name: str,
        settings: Settings,
        *,
        hooks: DeviceHooks | None = None,
        mqtt: MqttTransport | None = None,
        clock: ClockPort | None = None,
        local_ip: Callable[[], str] = outbound_ip,
    ) -> None:
        self._name = name
        self._settings = settings
        self._hooks = hooks if hooks is not None else DeviceHooks()
        self._mqtt = mqtt
        self._stats = DeviceStats(clock if clock is not None else SystemClock())
        self._local_ip = local_ip
        self._nodes: dict[str, Node] = {}
        self._publisher: DevicePublisher | None = None
        self._publisher_lock = threading.Lock()
        self._connection = Connection()
        self._fatal_error: FatalError | None = None
        self._fatal = asyncio.Event()

    # -- Read-only properties -----------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def hooks(self) -> DeviceHooks:
        return self._hooks

    @property
    def stats(self) -> DeviceStats:
        return self._stats

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def client(self) -> MqttTransport | None:
        """The transport handle, ``None`` before the first connect."""
        return self._connection.transport

    @property
    def nodes(self) -> Mapping[str, Node]:
        return MappingProxyType(self._nodes)

    @property
    def fatal_error(self) -> FatalError | None:
        """Fatal error raised during bootstrap, if any."""
        return self._fatal_error

    # -- Topics and messages ------------------------------------------------

    def topic(self, part: str) -> str:
        """Return ``{base_topic}{name}/{part}``."""
        return device_topic(self._settings.homie.base_topic, self._name, part)

    async def send_message(self, part: str, value: str, *, retain: bool = True) -> None:
        """Publish *value* to :meth:`topic` (*part*) with QoS 1.

        Raises:
            StateError: If the device never started connecting.
        """
        transport = self._connection.require_transport()
        await transport.publish(self.topic(part), value, retain=retain, qos=QOS)

    async def subscribe(self, part: str, handler: MessageHandler) -> None:
        """Subscribe *handler* to :meth:`topic` (*part*)."""
        transport = self._connection.require_transport()
        await transport.subscribe(self.topic(part), handler, qos=QOS)

    # -- Node registry ------------------------------------------------------

    def add_node(self, node: Node) -> Node:
        """Register *node* and make this device its owner.

        Raises:
            ConfigurationError: If a node with the same name exists, or
                *node* belongs to another device.
        """
        if node.name in self._nodes:
            msg = f"Node '{node.name}' already added to device '{self._name}'"
            raise ConfigurationError(msg)
        node.attach(self)
        self._nodes[node.name] = node
        logger.debug("Device '%s': added node '%s'", self._name, node.name)
        return node

    def new_node(self, name: str, node_type: str, **kwargs: Any) -> Node:
        return self.add_node(Node(name, node_type, **kwargs))

    def get_node(self, name: str) -> Node | None:
        return self._nodes.get(name)

    def _ordered_nodes(self) -> list[Node]:
        return [self._nodes[name] for name in sorted(self._nodes)]

    # -- Device publisher ---------------------------------------------------

    @property
    def device_publisher(self) -> DevicePublisher | None:
        return self._publisher

    def set_device_publisher(self, publisher: DevicePublisher) -> Device:
        """Assign the device publisher, run on every bootstrap.

        Raises:
            ConfigurationError: If a publisher is already set; the
                existing one is kept.
        """
        with self._publisher_lock:
            if self._publisher is not None:
                msg = f"Device publisher for '{self._name}' is already configured"
                raise ConfigurationError(msg)
            self._publisher = publisher
        return self

    # -- Connection lifecycle -----------------------------------------------

    def connect_options(self) -> ConnectOptions:
        """Build transport options from settings.

        Raises:
            ConfigurationError: If the broker URL is malformed.
        """
        mqtt = self._settings.mqtt
        password = mqtt.password.get_secret_value() if mqtt.password else None
        return ConnectOptions(
            broker=BrokerAddress.parse(mqtt.url),
            client_id=self._name,
            username=mqtt.username,
            password=password,
            will=WillConfig(topic=self.topic("$state"), payload=STATE_LOST),
            auto_reconnect=True,
            reconnect_interval=mqtt.reconnect_interval,
            reconnect_max_interval=mqtt.reconnect_max_interval,
        )

    async def connect(self) -> None:
        """Open the broker session and wait for the handshake.

        Bootstrap runs in the transport's task; this coroutine may
        return before it has finished.

        Raises:
            ConfigurationError: If the broker URL is malformed.
            StateError: If the device is already connecting or connected.
            ConnectionFailedError: If the handshake fails.
        """
        options = self.connect_options()
        transport = self._mqtt if self._mqtt is not None else MqttClient()
        self._connection.begin(transport)
        logger.info("Device '%s' connecting to %s", self._name, options.broker)

        handshake = await transport.connect(
            options,
            on_connect=self._handle_connect,
            on_connection_lost=self._handle_connection_lost,
        )
        while True:
            done, _pending = await asyncio.wait(
                {handshake},
                timeout=CONNECT_POLL_INTERVAL,
            )
            if done:
                break
            logger.debug("Still waiting for broker %s", options.broker)

        try:
            handshake.result()
        except Exception as exc:
            self._connection.failed()
            raise ConnectionFailedError(self._settings.mqtt.url, str(exc)) from exc

        if self._fatal_error is not None:
            raise self._fatal_error

    async def _handle_connect(self) -> None:
        self._connection.established()
        self._stats.mark_connected()
        try:
            await self.bootstrap()
        except FatalError as exc:
            logger.critical("Device '%s' cannot start: %s", self._name, exc)
            self._fatal_error = exc
            self._fatal.set()
            return
        await self._call_hook("on_connect", self._hooks.on_connect, self)

    async def _handle_connection_lost(self, error: Exception | None) -> None:
        if self._connection.state is ConnectionState.CONNECTED:
            self._connection.lost()
        logger.warning("Device '%s' lost its broker connection: %s", self._name, error)
        await self._call_hook(
            "on_connection_lost",
            self._hooks.on_connection_lost,
            self,
            error,
        )
        await self.on_connection_lost(error)

    async def on_connection_lost(self, error: Exception | None) -> None:
        """Extension point for subclasses; runs after the user hook."""

    async def _call_hook(
        self,
        name: str,
        hook: Callable[..., Awaitable[None]] | None,
        *args: Any,
    ) -> None:
        if hook is None:
            return
        try:
            await hook(*args)
        except Exception:
            logger.exception("Error in %s hook of device '%s'", name, self._name)

    async def _call_publisher(
        self,
        owner: str,
        publisher: Callable[[Any], Awaitable[None]] | None,
        target: Any,
    ) -> None:
        # FatalError propagates; other publisher errors are logged.
        if publisher is None:
            return
        try:
            await publisher(target)
        except FatalError:
            raise
        except Exception:
            logger.exception("Error in %s publisher of device '%s'", owner, self._name)

    # -- Bootstrap ----------------------------------------------------------

    async def bootstrap(self) -> None:
        """Announce the device, its nodes and stats; wire broadcasts.

        Raises:
            StateError: If the transport is missing or not connected.
        """
        transport = self._connection.require_transport()
        if not transport.is_connected:
            msg = f"Device '{self._name}' cannot bootstrap while disconnected"
            raise StateError(msg)

        homie = self._settings.homie
        await self.send_message("$homie", HOMIE_VERSION)
        await self.send_message("$name", self._name)
        await self.send_message("$localip", self._local_ip())
        await self.send_message("$implementation", IMPLEMENTATION)
        await self.send_message("$state", STATE_READY)
        await self.send_message("$stats/interval", str(homie.stats_report_interval))

        nodes = self._ordered_nodes()
        await self.send_message("$nodes", ",".join(node.name for node in nodes))
        for node in nodes:
            await node.publish()
        for node in nodes:
            await node.subscribe()
            await self._call_publisher(f"node '{node.name}'", node.publisher, node)

        await self._call_publisher("device", self._publisher, self)

        await self.publish_stats()
        await transport.subscribe(
            broadcast_filter(homie.base_topic),
            self._handle_broadcast,
            qos=QOS,
        )
        logger.info("Device '%s' ready with %d node(s)", self._name, len(nodes))

    async def _handle_broadcast(self, topic: str, payload: bytes) -> None:
        hook = self._hooks.on_broadcast
        if hook is None:
            logger.debug("Ignoring broadcast on %s", topic)
            return
        level = broadcast_level(self._settings.homie.base_topic, topic)
        await hook(self, level, payload)

    # -- Stats --------------------------------------------------------------

    async def publish_stats(self) -> None:
        """Publish ``$stats/uptime`` in whole seconds."""
        await self.send_message("$stats/uptime", str(self._stats.uptime()))

    async def _stats_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if not self._connection.require_transport().is_connected:
                continue
            try:
                await self.publish_stats()
            except Exception:
                logger.warning(
                    "Stats report for '%s' failed", self._name, exc_info=True
                )

    # -- Shutdown -----------------------------------------------------------

    async def disconnect(self) -> None:
        """Publish ``$state=disconnected`` and close the session.

        Transport shutdown errors are logged, not raised.  Calling it again
        after the session was closed does nothing.

        Raises:
            StateError: If the device never started connecting.
        """
        transport = self._connection.require_transport()
        if self._connection.state is ConnectionState.DISCONNECTED:
            logger.debug("Device '%s' is already disconnected", self._name)
            return
        if transport.is_connected:
            await self.send_message("$state", STATE_DISCONNECTED)
        else:
            logger.info(
                "Device '%s' is offline; the broker keeps the last will",
                self._name,
            )
        try:
            await transport.disconnect(DISCONNECT_GRACE)
        except Exception:
            logger.warning(
                "Transport shutdown for '%s' failed", self._name, exc_info=True
            )
        self._connection.closed()
        logger.info("Device '%s' disconnected", self._name)

    # -- Runner -------------------------------------------------------------

    async def run(
        self,
        *,
        block: bool = True,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Connect, report stats periodically and wait for shutdown.

        With ``block=False`` this returns right after :meth:`connect`.
        Otherwise it waits for *shutdown_event* (SIGTERM/SIGINT when
        ``None``) or a fatal bootstrap error, then disconnects.

        Raises:
            FatalError: If bootstrap failed with a fatal error.
            ConnectionFailedError: If the initial handshake fails.
        """
        try:
            await self.connect()
        except FatalError:
            if self._connection.state is ConnectionState.CONNECTED:
                await self.disconnect()
            raise
        if not block:
            return

        shutdown_event = _install_signal_handlers(shutdown_event)
        stats_task = asyncio.create_task(
            self._stats_loop(self._settings.homie.stats_report_interval),
        )
        waiters = {
            asyncio.create_task(shutdown_event.wait()),
            asyncio.create_task(self._fatal.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (stats_task, *waiters):
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await self.disconnect()

        if self._fatal_error is not None:
            raise self._fatal_error

    def __repr__(self) -> str:
        return f"Device(name={self._name!r}, state={self.state!s})"


def _install_signal_handlers(shutdown_event: asyncio.Event | None) -> asyncio.Event:
    """Return *shutdown_event*, or a new one set by SIGTERM/SIGINT."""
    if shutdown_event is not None:
        return shutdown_event
    event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, event.set)
    return event
