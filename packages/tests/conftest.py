"""Pytest configuration and shared fixtures.

The ``mock_mqtt``, ``fake_clock`` and ``homie_device`` fixtures come
from the pyhomie pytest plugin, registered through the ``pytest11``
entry point in ``pyproject.toml``.
"""

from __future__ import annotations

import pytest

from pyhomie.testing import DeviceHarness


@pytest.fixture
def harness() -> DeviceHarness:
    """DeviceHarness for ``sensor1`` under ``home/`` with a 60 s interval."""
    return DeviceHarness.create(name="sensor1", base_topic="home/")
