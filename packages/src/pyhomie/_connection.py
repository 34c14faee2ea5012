"""Connection state holder for a device.

The device owns exactly one :class:`Connection`.  It records which
phase the broker session is in and holds the single transport handle
used for all protocol traffic.  Only the device's connection
lifecycle moves it between states::

    begin        IDLE | DISCONNECTED     -> CONNECTING
    established  CONNECTING              -> CONNECTED
    failed       CONNECTING              -> IDLE
    lost         CONNECTED               -> CONNECTING
    closed       CONNECTING | CONNECTED  -> DISCONNECTED

``lost`` returns to CONNECTING because the transport reconnects on its
own.  ``begin`` is also allowed from DISCONNECTED so a device can be
connected again after a clean shutdown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from pyhomie._errors import StateError
from pyhomie._mqtt import MqttTransport

logger = logging.getLogger(__name__)


class ConnectionState(StrEnum):
    """Phases of the broker session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass
class Connection:
    """Current state plus the transport handle (``None`` until connecting)."""

    state: ConnectionState = ConnectionState.IDLE
    transport: MqttTransport | None = None

    def begin(self, transport: MqttTransport) -> None:
        self._move(
            ConnectionState.CONNECTING,
            allowed_from=(ConnectionState.IDLE, ConnectionState.DISCONNECTED),
        )
        self.transport = transport

    def established(self) -> None:
        self._move(
            ConnectionState.CONNECTED,
            allowed_from=(ConnectionState.CONNECTING,),
        )

    def lost(self) -> None:
        self._move(
            ConnectionState.CONNECTING,
            allowed_from=(ConnectionState.CONNECTED,),
        )

    def failed(self) -> None:
        self._move(
            ConnectionState.IDLE,
            allowed_from=(ConnectionState.CONNECTING,),
        )
        self.transport = None

    def closed(self) -> None:
        # The handle is kept so the device stays inspectable.
        self._move(
            ConnectionState.DISCONNECTED,
            allowed_from=(ConnectionState.CONNECTING, ConnectionState.CONNECTED),
        )

    def require_transport(self) -> MqttTransport:
        """Return the transport handle.

        Raises:
            StateError: If the device never started connecting.
        """
        if self.transport is None:
            msg = f"No transport: connection is {self.state}"
            raise StateError(msg)
        return self.transport

    def _move(
        self,
        target: ConnectionState,
        *,
        allowed_from: tuple[ConnectionState, ...],
    ) -> None:
        if self.state not in allowed_from:
            msg = f"Invalid connection transition {self.state} -> {target}"
            raise StateError(msg)
        logger.debug("Connection %s -> %s", self.state, target)
        self.state = target
