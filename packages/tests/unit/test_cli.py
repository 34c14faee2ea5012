"""Tests for pyhomie._cli — CLI scaffolding.

Test Techniques Used:
    - Specification-based Testing: CLI flag parsing and defaults
    - State-based Testing: Settings overrides reaching the device
    - Error Condition Testing: Invalid flag values, config errors
    - Behavioural Testing: Exit codes and output text
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from pyhomie._cli import EXIT_CONFIG_ERROR, EXIT_OK, EXIT_RUNTIME_ERROR, build_cli
from pyhomie._device import Device
from pyhomie._errors import ConfigurationError
from pyhomie._settings import Settings

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def runner() -> CliRunner:
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def _isolated_cwd(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[None]:
    """Run in an empty directory with no HOMIE/MQTT env and a clean root logger."""
    monkeypatch.chdir(tmp_path)
    for var in ("HOMIE__DEVICE_NAME", "HOMIE__BASE_TOPIC", "MQTT__URL"):
        monkeypatch.delenv(var, raising=False)
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class _Recorder:
    """Setup function that remembers the device it configured."""

    def __init__(self) -> None:
        self.device: Device | None = None

    def __call__(self, device: Device) -> None:
        self.device = device
        device.new_node("temp", "temperature")


# ---------------------------------------------------------------------------
# TestVersionFlag
# ---------------------------------------------------------------------------


class TestVersionFlag:
    """--version flag.

    Technique: Specification-based Testing.
    """

    def test_version_prints_name_and_version(self, runner: CliRunner) -> None:
        cli = build_cli(_Recorder(), name="thermo", version="1.0.0")

        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == EXIT_OK
        assert "thermo v1.0.0" in result.output

    def test_version_does_not_build_device(self, runner: CliRunner) -> None:
        setup = _Recorder()
        cli = build_cli(setup, name="thermo", version="1.0.0")

        runner.invoke(cli, ["--version"])

        assert setup.device is None

    def test_help_lists_options(self, runner: CliRunner) -> None:
        cli = build_cli(_Recorder(), description="Kitchen thermometer")

        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == EXIT_OK
        assert "Kitchen thermometer" in result.output
        for option in ("--device-name", "--log-level", "--log-format", "--env-file"):
            assert option in result.output


# ---------------------------------------------------------------------------
# TestOverrides
# ---------------------------------------------------------------------------


class TestOverrides:
    """Command-line overrides of loaded settings.

    Technique: State-based Testing.
    """

    def test_defaults_build_and_run_device(self, runner: CliRunner) -> None:
        setup = _Recorder()
        cli = build_cli(setup)

        with patch.object(Device, "run", new_callable=AsyncMock) as mock_run:
            result = runner.invoke(cli, [])

        assert result.exit_code == EXIT_OK
        mock_run.assert_awaited_once()
        assert setup.device is not None
        assert setup.device.name == "pyhomie"
        assert "temp" in setup.device.nodes

    def test_device_name_override(self, runner: CliRunner) -> None:
        setup = _Recorder()
        cli = build_cli(setup)

        with patch.object(Device, "run", new_callable=AsyncMock):
            result = runner.invoke(cli, ["--device-name", "sensor1"])

        assert result.exit_code == EXIT_OK
        assert setup.device is not None
        assert setup.device.name == "sensor1"
        assert setup.device.settings.homie.device_name == "sensor1"

    def test_env_file_is_read(self, runner: CliRunner, tmp_path: Path) -> None:
        env_file = tmp_path / "device.env"
        env_file.write_text("HOMIE__DEVICE_NAME=from-env\nHOMIE__BASE_TOPIC=site/\n")
        setup = _Recorder()
        cli = build_cli(setup)

        with patch.object(Device, "run", new_callable=AsyncMock):
            result = runner.invoke(cli, ["--env-file", str(env_file)])

        assert result.exit_code == EXIT_OK
        assert setup.device is not None
        assert setup.device.topic("$state") == "site/from-env/$state"

    def test_log_level_and_format_override(self, runner: CliRunner) -> None:
        setup = _Recorder()
        cli = build_cli(setup)

        with patch.object(Device, "run", new_callable=AsyncMock):
            result = runner.invoke(cli, ["--log-level", "debug", "--log-format", "TEXT"])

        assert result.exit_code == EXIT_OK
        assert setup.device is not None
        assert setup.device.settings.logging.level == "DEBUG"
        assert setup.device.settings.logging.format == "text"
        assert logging.getLogger().level == logging.DEBUG

    @pytest.mark.parametrize(
        "args",
        [["--log-level", "INVALID"], ["--log-format", "yaml"]],
    )
    def test_invalid_logging_options_rejected(
        self,
        runner: CliRunner,
        args: list[str],
    ) -> None:
        setup = _Recorder()
        result = runner.invoke(build_cli(setup), args)

        assert result.exit_code != EXIT_OK
        assert setup.device is None


# ---------------------------------------------------------------------------
# TestExitCodes
# ---------------------------------------------------------------------------


class TestExitCodes:
    """Exit code mapping.

    Technique: Behavioural Testing.
    """

    def test_exit_code_constants(self) -> None:
        assert EXIT_OK == 0
        assert EXIT_CONFIG_ERROR == 1
        assert EXIT_RUNTIME_ERROR == 3

    def test_invalid_settings_exit_one(self, runner: CliRunner) -> None:
        class StrictSettings(Settings):
            site_id: str  # no default

        cli = build_cli(_Recorder(), settings_class=StrictSettings)

        result = runner.invoke(cli, [])

        assert result.exit_code == EXIT_CONFIG_ERROR

    def test_invalid_base_topic_exits_one(
        self,
        runner: CliRunner,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("HOMIE__BASE_TOPIC", "no-slash")

        result = runner.invoke(build_cli(_Recorder()), [])

        assert result.exit_code == EXIT_CONFIG_ERROR

    def test_fatal_error_in_setup_exits_one(self, runner: CliRunner) -> None:
        def setup(device: Device) -> None:
            device.new_node("temp", "temperature")
            device.new_node("temp", "temperature")

        result = runner.invoke(build_cli(setup), [])

        assert result.exit_code == EXIT_CONFIG_ERROR

    def test_fatal_error_from_run_exits_one(self, runner: CliRunner) -> None:
        with patch.object(
            Device,
            "run",
            new_callable=AsyncMock,
            side_effect=ConfigurationError("Malformed broker URL"),
        ):
            result = runner.invoke(build_cli(_Recorder()), [])

        assert result.exit_code == EXIT_CONFIG_ERROR

    def test_runtime_error_exits_three(self, runner: CliRunner) -> None:
        with patch.object(
            Device,
            "run",
            new_callable=AsyncMock,
            side_effect=RuntimeError("kaboom"),
        ):
            result = runner.invoke(build_cli(_Recorder()), [])

        assert result.exit_code == EXIT_RUNTIME_ERROR
