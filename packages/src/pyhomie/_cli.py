"""CLI scaffolding for pyhomie devices (Typer-based).

:func:`build_cli` wraps a *setup* function — which adds nodes and
publishers to a freshly built :class:`~pyhomie.Device` — in a Typer app
with ``--version``, ``--device-name``, ``--log-level``, ``--log-format``
and ``--env-file`` options, then runs the device until SIGTERM/SIGINT.

Usage::

    def setup(device: pyhomie.Device) -> None:
        device.new_node("temp", "temperature").new_property("value", "float")

    if __name__ == "__main__":
        pyhomie.build_cli(setup, name="thermo", version="1.0.0")()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import Callable
from typing import Annotated, TypeAlias, get_args

import typer
from pydantic import ValidationError

from pyhomie._device import Device, DeviceHooks
from pyhomie._errors import FatalError
from pyhomie._logging import configure_logging
from pyhomie._settings import LoggingSettings, Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)

DeviceSetup: TypeAlias = "Callable[[Device], None]"


def build_cli(
    setup: DeviceSetup,
    *,
    name: str = "pyhomie",
    version: str = "0.0.0",
    description: str = "Homie device",
    settings_class: type[Settings] = Settings,
    hooks: DeviceHooks | None = None,
) -> typer.Typer:
    """Construct a Typer CLI that runs a device built by *setup*.

    Args:
        setup: Called with the new device before it connects.
        name: Application name for ``--version`` and log records.
        version: Application version.
        description: Short text for ``--help``.
        settings_class: Settings subclass to load.
        hooks: Device hooks passed to :class:`Device`.

    Returns:
        A configured :class:`typer.Typer` ready to invoke.
    """
    cli = typer.Typer(help=f"{name} v{version} — {description}")

    @cli.callback(invoke_without_command=True)
    def main(
        version_flag: Annotated[
            bool | None,
            typer.Option("--version", is_eager=True, help="Show version and exit."),
        ] = None,
        device_name: Annotated[
            str | None,
            typer.Option("--device-name", help="Override the Homie device ID."),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
    ) -> None:
        if version_flag:
            typer.echo(f"{name} v{version}")
            raise typer.Exit()

        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. "
                f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )
        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. "
                f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        try:
            settings = settings_class(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            logger.error("Configuration error: %s", exc)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc

        if device_name is not None:
            settings.homie = settings.homie.model_copy(
                update={"device_name": device_name},
            )
        if log_level is not None:
            settings.logging = settings.logging.model_copy(
                update={"level": log_level.upper()},
            )
        if log_format is not None:
            settings.logging = settings.logging.model_copy(
                update={"format": log_format.lower()},
            )

        configure_logging(
            settings.logging,
            service=name,
            version=version,
            device=settings.homie.device_name,
        )

        try:
            device = Device(settings.homie.device_name, settings, hooks=hooks)
            setup(device)
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(device.run())
        except FatalError as exc:
            logger.error("Configuration error: %s", exc)
            sys.exit(EXIT_CONFIG_ERROR)
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    return cli
