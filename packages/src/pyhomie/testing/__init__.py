"""Public test-support utilities for pyhomie.

Provided symbols:

- :class:`DeviceHarness` — Device wired to in-memory doubles.
- :class:`MockMqttClient` — in-memory transport that records traffic.
- :class:`FakeClock` — deterministic clock for uptime tests.
- :func:`make_settings` — ``Settings`` factory ignoring env and ``.env``.
"""

from pyhomie._mqtt import MockMqttClient
from pyhomie.testing._clock import FakeClock
from pyhomie.testing._harness import TEST_LOCAL_IP, DeviceHarness
from pyhomie.testing._settings import make_settings

__all__ = [
    "TEST_LOCAL_IP",
    "DeviceHarness",
    "FakeClock",
    "MockMqttClient",
    "make_settings",
]
