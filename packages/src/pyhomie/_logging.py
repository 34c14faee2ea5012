"""Log formatting and root-logger setup for pyhomie devices.

Devices typically run unattended under systemd or in a container, so
the default output is NDJSON: one JSON object per record, carrying
the ``service`` name, the implementation ``version`` and the Homie
``device`` ID, so a log aggregator can group lines from a fleet of
devices without extra parsing rules.

``format="text"`` switches to a plain timestamped layout for local
development.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from pyhomie._settings import LoggingSettings

_MEGABYTE = 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Render log records as single-line JSON objects.

    Fields:

    - ``timestamp`` — ISO 8601, UTC
    - ``level`` — log level name
    - ``logger`` — dotted logger name
    - ``message`` — the formatted message
    - ``service`` — application name
    - ``version`` — omitted when empty
    - ``device`` — Homie device ID, omitted when empty
    - ``exception`` / ``stack_info`` — only when present

    Tracebacks are escaped by ``json.dumps``, so every record is
    exactly one line.
    """

    def __init__(
        self,
        *,
        service: str = "",
        version: str = "",
        device: str = "",
    ) -> None:
        super().__init__()
        self._service = service
        self._version = version
        self._device = device

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }

        if self._version:
            entry["version"] = self._version
        if self._device:
            entry["device"] = self._device

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
    device: str = "",
) -> None:
    """Replace the root logger's handlers according to *settings*.

    A ``stderr`` stream handler is always installed.  When
    ``settings.file`` is set, a :class:`RotatingFileHandler` rotating
    at ``settings.max_file_size_mb`` is added as well.

    Args:
        settings: Level, format and file sink.
        service: Application name for JSON records.
        version: Application version for JSON records.
        device: Homie device ID for JSON records.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if settings.format == "json":
        formatter: logging.Formatter = JsonFormatter(
            service=service,
            version=version,
            device=device,
        )
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.file is not None:
        file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_file_size_mb * _MEGABYTE,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(settings.level)
