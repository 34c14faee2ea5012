"""MQTT transport port and adapters.

Provides the :class:`MqttTransport` protocol the device drives, the
value objects describing a connection, and two implementations:

- :class:`MqttClient` — aiomqtt-based client with auto-reconnect
- :class:`MockMqttClient` — in-memory double that records traffic and
  invokes connection callbacks synchronously

Design decisions:

- aiomqtt is imported lazily inside ``MqttClient._connection_loop()`` so
  the mock works without aiomqtt installed.
- ``connect()`` returns a pending future for the first handshake; the
  caller decides how to wait for it.  Connection callbacks run in the
  client's background task, not in the caller's.
- A failed *first* handshake is reported once through that future and
  is not retried.  After a successful handshake every loss triggers a
  reconnect with exponential backoff, and every fresh connection runs
  the on-connect callback again.
- Subscriptions map a filter to one handler and are restored on
  reconnect; re-subscribing the same filter replaces the handler.
- QoS is fixed at 1 for every publish, subscribe and the last will.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlsplit

from pyhomie._errors import ConfigurationError
from pyhomie._topics import topic_matches

logger = logging.getLogger(__name__)

QOS = 1
"""At-least-once delivery, used for all traffic."""

DISCONNECT_GRACE = 0.5
"""Seconds granted to the transport for a clean shutdown."""

_DEFAULT_PORTS: dict[str, int] = {
    "tcp": 1883,
    "mqtt": 1883,
    "ssl": 8883,
    "tls": 8883,
    "mqtts": 8883,
}
_TLS_SCHEMES = frozenset({"ssl", "tls", "mqtts"})

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

MessageHandler = Callable[[str, bytes], Awaitable[None]]
"""Async handler receiving (topic, raw payload) for a subscription."""

ConnectHandler = Callable[[], Awaitable[None]]
ConnectionLostHandler = Callable[[Exception | None], Awaitable[None]]

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BrokerAddress:
    """Parsed broker URL."""

    scheme: str
    host: str
    port: int

    @property
    def tls(self) -> bool:
        """Whether the scheme requires transport encryption."""
        return self.scheme in _TLS_SCHEMES

    @classmethod
    def parse(cls, url: str) -> BrokerAddress:
        """Parse ``scheme://host[:port]``.

        Raises:
            ConfigurationError: If the URL cannot be parsed, has an
                unsupported scheme, or lacks a host.
        """
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as exc:
            msg = f"Malformed broker URL {url!r}: {exc}"
            raise ConfigurationError(msg) from exc

        scheme = parts.scheme.lower()
        if scheme not in _DEFAULT_PORTS:
            msg = (
                f"Unsupported broker URL scheme {parts.scheme!r} in {url!r}; "
                f"expected one of {', '.join(sorted(_DEFAULT_PORTS))}"
            )
            raise ConfigurationError(msg)
        if not parts.hostname:
            msg = f"Broker URL {url!r} has no host"
            raise ConfigurationError(msg)

        return cls(
            scheme=scheme,
            host=parts.hostname,
            port=port if port is not None else _DEFAULT_PORTS[scheme],
        )

    def __str__(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


@dataclass(frozen=True)
class WillConfig:
    """Last-will message registered with the broker at connect time.

    Abstracts ``aiomqtt.Will`` so callers never import aiomqtt.
    """

    topic: str
    payload: str = "lost"
    qos: int = QOS
    retain: bool = True


@dataclass(frozen=True)
class ConnectOptions:
    """Everything the transport needs to open a session."""

    broker: BrokerAddress
    client_id: str
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    will: WillConfig | None = None
    auto_reconnect: bool = True
    reconnect_interval: float = 5.0
    reconnect_max_interval: float = 300.0

    @property
    def tls_server_name(self) -> str | None:
        """Host name checked against the broker certificate, if TLS."""
        return self.broker.host if self.broker.tls else None


# ---------------------------------------------------------------------------
# Ports (Protocols)
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """Publish/subscribe half of the transport."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = QOS,
    ) -> None: ...

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        qos: int = QOS,
    ) -> None: ...

    @property
    def is_connected(self) -> bool: ...


@runtime_checkable
class MqttTransport(MqttPort, Protocol):
    """Full transport contract driven by :class:`~pyhomie.Device`."""

    async def connect(
        self,
        options: ConnectOptions,
        *,
        on_connect: ConnectHandler,
        on_connection_lost: ConnectionLostHandler,
    ) -> asyncio.Future[None]: ...

    async def disconnect(self, grace: float = DISCONNECT_GRACE) -> None: ...


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


async def _noop_connect() -> None:
    return None


async def _noop_connection_lost(_exc: Exception | None) -> None:
    return None


@dataclass
class MockMqttClient:
    """In-memory transport that records traffic for assertions.

    ``connect()`` runs the on-connect callback *before* returning, so a
    test sees the whole bootstrap sequence once ``Device.connect()``
    returns.  ``retained`` mirrors what a broker would hand a late
    subscriber; a simulated connection loss publishes the last will
    there.
    """

    published: list[tuple[str, str, bool, int]] = field(default_factory=list)
    subscriptions: dict[str, MessageHandler] = field(default_factory=dict)
    retained: dict[str, str] = field(default_factory=dict)
    connect_error: Exception | None = None
    options: ConnectOptions | None = field(default=None, init=False)
    connect_count: int = field(default=0, init=False)
    disconnect_calls: list[float] = field(default_factory=list, init=False)
    _connected: bool = field(default=False, init=False, repr=False)
    _on_connect: ConnectHandler = field(
        default=_noop_connect,
        init=False,
        repr=False,
    )
    _on_connection_lost: ConnectionLostHandler = field(
        default=_noop_connection_lost,
        init=False,
        repr=False,
    )

    # -- MqttTransport methods ---------------------------------------------

    async def connect(
        self,
        options: ConnectOptions,
        *,
        on_connect: ConnectHandler,
        on_connection_lost: ConnectionLostHandler,
    ) -> asyncio.Future[None]:
        """Record the options and complete the handshake immediately.

        When ``connect_error`` is set, the returned future carries it
        and no callback runs.
        """
        self.options = options
        self._on_connect = on_connect
        self._on_connection_lost = on_connection_lost
        handshake: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if self.connect_error is not None:
            handshake.set_exception(self.connect_error)
            return handshake
        self._connected = True
        self.connect_count += 1
        handshake.set_result(None)
        await on_connect()
        return handshake

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = QOS,
    ) -> None:
        """Record a publish call.

        Raises:
            RuntimeError: If the mock is not connected.
        """
        if not self._connected:
            msg = "MockMqttClient is not connected"
            raise RuntimeError(msg)
        self.published.append((topic, payload, retain, qos))
        if retain:
            self.retained[topic] = payload

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        qos: int = QOS,  # noqa: ARG002
    ) -> None:
        """Record a subscription, replacing any handler for *topic*."""
        self.subscriptions[topic] = handler

    async def disconnect(self, grace: float = DISCONNECT_GRACE) -> None:
        """Record a clean disconnect; the will is not published."""
        self.disconnect_calls.append(grace)
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    # -- Test helpers -------------------------------------------------------

    async def deliver(self, topic: str, payload: bytes | str) -> None:
        """Simulate an inbound message on every matching subscription.

        Handler exceptions propagate.
        """
        raw = payload.encode("utf-8") if isinstance(payload, str) else payload
        for pattern, handler in list(self.subscriptions.items()):
            if topic_matches(pattern, topic):
                await handler(topic, raw)

    async def simulate_connection_lost(self, error: Exception | None = None) -> None:
        """Drop the session: the broker publishes the will, callbacks run."""
        self._connected = False
        if self.options is not None and self.options.will is not None:
            will = self.options.will
            self.retained[will.topic] = will.payload
        await self._on_connection_lost(error)

    async def simulate_reconnect(self) -> None:
        """Re-establish the session and run the on-connect callback."""
        self._connected = True
        self.connect_count += 1
        await self._on_connect()

    @property
    def publish_count(self) -> int:
        """Number of recorded publishes."""
        return len(self.published)

    @property
    def published_topics(self) -> list[str]:
        """Published topics in order."""
        return [topic for topic, _payload, _retain, _qos in self.published]

    def get_messages_for(self, topic: str) -> list[tuple[str, bool, int]]:
        """Return ``(payload, retain, qos)`` tuples for *topic*."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]

    def reset(self) -> None:
        """Clear recorded traffic; connection state is kept."""
        self.published.clear()
        self.subscriptions.clear()
        self.retained.clear()
        self.disconnect_calls.clear()


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttClient:
    """Production transport backed by *aiomqtt*.

    A background task owns the broker session.  It resolves the
    handshake future returned by :meth:`connect`, awaits the
    on-connect callback for every fresh session, dispatches inbound
    messages to subscription handlers, and reconnects after a loss.
    """

    _options: ConnectOptions | None = field(default=None, init=False, repr=False)
    _on_connect: ConnectHandler = field(
        default=_noop_connect,
        init=False,
        repr=False,
    )
    _on_connection_lost: ConnectionLostHandler = field(
        default=_noop_connection_lost,
        init=False,
        repr=False,
    )
    _subscriptions: dict[str, MessageHandler] = field(
        default_factory=dict,
        init=False,
        repr=False,
    )
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _handshake: asyncio.Future[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)

    # -- MqttTransport methods ---------------------------------------------

    async def connect(
        self,
        options: ConnectOptions,
        *,
        on_connect: ConnectHandler,
        on_connection_lost: ConnectionLostHandler,
    ) -> asyncio.Future[None]:
        """Start the background session and return the handshake future.

        Raises:
            RuntimeError: If the session task is already running.
        """
        if self._listen_task is not None and not self._listen_task.done():
            msg = "MqttClient is already running"
            raise RuntimeError(msg)
        self._options = options
        self._on_connect = on_connect
        self._on_connection_lost = on_connection_lost
        self._stopping = False
        self._handshake = asyncio.get_running_loop().create_future()
        self._listen_task = asyncio.create_task(self._connection_loop())
        return self._handshake

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = QOS,
    ) -> None:
        """Publish a message to the broker.

        Raises:
            RuntimeError: If the client is not connected.
        """
        if self._client is None:
            msg = "MqttClient is not connected"
            raise RuntimeError(msg)
        await self._client.publish(topic, payload, retain=retain, qos=qos)
        logger.debug("Published to %s (qos=%d, retain=%s)", topic, qos, retain)

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        qos: int = QOS,
    ) -> None:
        """Subscribe *handler* to *topic*.

        Tracked so that it is restored after a reconnection.
        """
        self._subscriptions[topic] = handler
        if self._client is not None:
            await self._client.subscribe(topic, qos=qos)

    async def disconnect(self, grace: float = DISCONNECT_GRACE) -> None:
        """Stop the session, allowing *grace* seconds for a clean exit.

        Idempotent.
        """
        self._stopping = True
        task = self._listen_task
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                await asyncio.wait_for(task, timeout=grace)
            self._listen_task = None
        self._client = None
        self._connected.clear()

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    # -- Internal -----------------------------------------------------------

    def _resolve_handshake(self, error: BaseException | None) -> None:
        handshake = self._handshake
        if handshake is None or handshake.done():
            return
        if error is None:
            handshake.set_result(None)
        else:
            handshake.set_exception(error)

    async def _connection_loop(self) -> None:
        """Own the broker session until :meth:`disconnect`."""
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            error = RuntimeError(msg)
            self._resolve_handshake(error)
            raise error from exc

        options = self._options
        if options is None:
            return
        delay = options.reconnect_interval

        will: aiomqtt.Will | None = None
        if options.will is not None:
            will = aiomqtt.Will(
                topic=options.will.topic,
                payload=options.will.payload,
                qos=options.will.qos,
                retain=options.will.retain,
            )
        tls_context = ssl.create_default_context() if options.broker.tls else None

        while not self._stopping:
            established = False
            try:
                async with aiomqtt.Client(
                    hostname=options.broker.host,
                    port=options.broker.port,
                    username=options.username,
                    password=options.password,
                    identifier=options.client_id,
                    will=will,
                    tls_context=tls_context,
                ) as client:
                    self._client = client
                    try:
                        for topic in list(self._subscriptions):
                            await client.subscribe(topic, qos=QOS)

                        self._connected.set()
                        established = True
                        delay = options.reconnect_interval
                        logger.info("MQTT connected to %s", options.broker)
                        self._resolve_handshake(None)

                        await self._on_connect()

                        async for message in client.messages:
                            await self._dispatch(message)
                    finally:
                        self._connected.clear()
                        self._client = None

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._handshake is not None and not self._handshake.done():
                    logger.error("MQTT connect to %s failed: %s", options.broker, exc)
                    self._resolve_handshake(exc)
                    return
                if established:
                    await self._notify_connection_lost(exc)
                if not options.auto_reconnect:
                    return
                logger.warning(
                    "MQTT connection to %s lost, reconnecting in %.1fs",
                    options.broker,
                    delay,
                    exc_info=True,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, options.reconnect_max_interval)

    async def _notify_connection_lost(self, error: Exception) -> None:
        try:
            await self._on_connection_lost(error)
        except Exception:
            logger.exception("Error in connection-lost callback")

    async def _dispatch(self, message: Any) -> None:
        """Fan an inbound message out to matching subscription handlers."""
        topic = str(message.topic)
        raw = message.payload
        if raw is None:
            payload = b""
        elif isinstance(raw, (bytes, bytearray)):
            payload = bytes(raw)
        else:
            payload = str(raw).encode("utf-8")

        for pattern, handler in list(self._subscriptions.items()):
            if not topic_matches(pattern, topic):
                continue
            try:
                await handler(topic, payload)
            except Exception:
                logger.exception("Error in message handler for %s", topic)
