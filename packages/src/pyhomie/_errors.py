"""Error taxonomy for pyhomie devices.

Two families of failure are kept apart so that callers (and tests) can
tell a defect from an outage without terminating the process:

- :class:`FatalError` — configuration and programming mistakes.
  Retrying cannot fix them; they surface immediately and stop the
  device.  :class:`ConfigurationError` covers bad settings and
  registration mistakes, :class:`StateError` covers lifecycle
  invariants (e.g. bootstrapping while disconnected).
- :class:`ConnectionFailedError` — environmental.  The broker was
  unreachable or refused the handshake; the caller may try again.

Hierarchy::

    HomieError
    ├── FatalError
    │   ├── ConfigurationError
    │   └── StateError
    └── ConnectionFailedError
"""

from __future__ import annotations


class HomieError(Exception):
    """Base class for every error raised by pyhomie."""


class FatalError(HomieError):
    """A defect that must be fixed in code or configuration."""

    fatal = True


class ConfigurationError(FatalError):
    """Invalid configuration or registration.

    Raised for a malformed broker URL, a duplicate node name, a
    second device or node publisher, or a node that is already
    attached to another device.
    """


class StateError(FatalError):
    """A lifecycle invariant was violated."""


class ConnectionFailedError(HomieError):
    """The broker handshake failed.

    The original transport error is chained as ``__cause__``.
    """

    fatal = False

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Could not connect to {url}: {reason}")
        self.url = url
        self.reason = reason
