"""Local address discovery for the ``$localip`` attribute."""

from __future__ import annotations

import logging
import socket

logger = logging.getLogger(__name__)

_LOOPBACK = "127.0.0.1"


def outbound_ip(probe_host: str = "8.8.8.8", probe_port: int = 80) -> str:
    """Return the local address the OS would route *probe_host* through.

    Connecting a UDP socket selects a route without sending a packet.
    Falls back to the loopback address when no route exists.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect((probe_host, probe_port))
            address: str = sock.getsockname()[0]
    except OSError as exc:
        logger.warning("Could not determine outbound IP, using %s: %s", _LOOPBACK, exc)
        return _LOOPBACK
    return address
