"""pyhomie.

Device-side runtime for the Homie IoT convention over MQTT.
"""

from importlib.metadata import PackageNotFoundError, version

from pyhomie._cli import build_cli
from pyhomie._clock import ClockPort, SystemClock
from pyhomie._connection import Connection, ConnectionState
from pyhomie._device import (
    HOMIE_VERSION,
    IMPLEMENTATION,
    Device,
    DeviceHooks,
    DevicePublisher,
    DeviceStats,
)
from pyhomie._errors import (
    ConfigurationError,
    ConnectionFailedError,
    FatalError,
    HomieError,
    StateError,
)
from pyhomie._logging import JsonFormatter, configure_logging
from pyhomie._mqtt import (
    BrokerAddress,
    ConnectOptions,
    MessageHandler,
    MockMqttClient,
    MqttClient,
    MqttPort,
    MqttTransport,
    WillConfig,
)
from pyhomie._node import Node, NodePublisher, Property
from pyhomie._settings import HomieSettings, LoggingSettings, MqttSettings, Settings
from pyhomie._topics import device_topic

try:
    __version__ = version("pyhomie")
except PackageNotFoundError:
    # Source checkout without installed metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    "HOMIE_VERSION",
    "IMPLEMENTATION",
    # Device
    "Device",
    "DeviceHooks",
    "DevicePublisher",
    "DeviceStats",
    "Node",
    "NodePublisher",
    "Property",
    # Connection
    "Connection",
    "ConnectionState",
    # CLI
    "build_cli",
    # Clock
    "ClockPort",
    "SystemClock",
    # Errors
    "ConfigurationError",
    "ConnectionFailedError",
    "FatalError",
    "HomieError",
    "StateError",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # MQTT
    "BrokerAddress",
    "ConnectOptions",
    "MessageHandler",
    "MockMqttClient",
    "MqttClient",
    "MqttPort",
    "MqttTransport",
    "WillConfig",
    # Settings
    "HomieSettings",
    "LoggingSettings",
    "MqttSettings",
    "Settings",
    # Topics
    "device_topic",
]
