"""Clock port for device uptime.

``$stats/uptime`` must never go backwards, so uptime is measured
against ``time.monotonic()`` rather than the wall clock, which NTP
may step.  Wall-clock timestamps (startup and connect time) are kept
separately on :class:`~pyhomie._device.DeviceStats` for display only.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Source of monotonic seconds.

    Only differences between two ``now()`` readings are meaningful.
    Tests inject :class:`~pyhomie.testing.FakeClock` to control uptime.
    """

    def now(self) -> float: ...


class SystemClock:
    """Production clock backed by ``time.monotonic()``."""

    def now(self) -> float:
        return time.monotonic()
