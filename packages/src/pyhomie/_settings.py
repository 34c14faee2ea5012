"""Device configuration via pydantic-settings.

Configuration is loaded from environment variables and/or a ``.env``
file.  Nested models use ``__`` as the delimiter, e.g.
``MQTT__URL=ssl://broker.local:8883`` or ``HOMIE__BASE_TOPIC=home/``.

Three groups are covered:

* **MQTT** — broker URL, credentials and reconnect backoff.
* **Homie** — device identity, topic root and stats interval.
* **Logging** — level, format, optional rotating file sink.

Callbacks (on-connect, connection-lost, broadcast) are code, not
configuration; they live on :class:`~pyhomie._device.DeviceHooks`.

All durations are in **seconds**.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MqttSettings(BaseModel):
    """Broker connection settings.

    Environment variables::

        MQTT__URL=tcp://broker.local:1883
        MQTT__USERNAME=user
        MQTT__PASSWORD=secret

    The URL scheme selects transport security: ``tcp://`` and
    ``mqtt://`` connect in plain text, ``ssl://``, ``tls://`` and
    ``mqtts://`` use TLS with the broker host as server name.  The URL
    is parsed when the device connects, so a malformed value surfaces
    as :class:`~pyhomie._errors.ConfigurationError` at that point.
    """

    url: str = Field(
        default="tcp://localhost:1883",
        description="Broker URL, e.g. 'tcp://host:1883' or 'ssl://host:8883'.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description=(
            "Initial delay before reconnecting after connection loss. "
            "Doubles after each consecutive failure up to "
            "``reconnect_max_interval``."
        ),
    )
    reconnect_max_interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Upper bound (seconds) for the reconnect backoff.",
    )


class HomieSettings(BaseModel):
    """Device identity and topic layout.

    Environment variables::

        HOMIE__DEVICE_NAME=sensor1
        HOMIE__BASE_TOPIC=homie/
        HOMIE__STATS_REPORT_INTERVAL=60
    """

    device_name: str = Field(
        default="pyhomie",
        min_length=1,
        description="Device ID; also used as the MQTT client identifier.",
    )
    base_topic: str = Field(
        default="homie/",
        description="Topic root. Must end with '/'.",
    )
    stats_report_interval: Annotated[int, Field(ge=1)] = Field(
        default=60,
        description="Seconds between '$stats/uptime' reports.",
    )

    @field_validator("base_topic")
    @classmethod
    def _base_topic_ends_with_separator(cls, value: str) -> str:
        if not value.endswith("/"):
            msg = f"base_topic must end with '/', got {value!r}"
            raise ValueError(msg)
        return value


class LoggingSettings(BaseModel):
    """Logging configuration.

    ``format="json"`` (default) emits one JSON object per line for log
    aggregators; ``format="text"`` emits timestamped lines for a
    terminal.  When ``file`` is set, records also go to a size-rotated
    file.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format: 'json' or 'text'.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


class Settings(BaseSettings):
    """Root settings for a pyhomie device.

    Example ``.env``::

        MQTT__URL=ssl://broker.local:8883
        MQTT__USERNAME=sensor1
        MQTT__PASSWORD=secret
        HOMIE__DEVICE_NAME=sensor1
        HOMIE__BASE_TOPIC=home/
        LOGGING__FORMAT=text

    No ``env_prefix`` is set, hence ``extra="ignore"``: every variable
    in the environment is visible and unrelated ones must not fail
    validation.
    """

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    homie: HomieSettings = Field(
        default_factory=HomieSettings,
        description="Device identity and topic layout.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
