"""Configuration: validation, environment loading, scoping, resolution."""

from __future__ import annotations

import asyncio
import logging

import pytest

from pieper import Config, ConfigurationError, Pipeline, config_scope, resolve_config

pytestmark = pytest.mark.unit


def test_defaults() -> None:
    config = Config()

    assert config.log_level == logging.INFO
    assert config.logger_name == "pieper"
    assert config.forget_traceback is True
    assert config.stderr_fallback is True
    assert config.telemetry is False
    assert config.reporters == ()
    assert config.logger is logging.getLogger("pieper")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"log_level": "INFO"},
        {"log_level": True},
        {"log_level": -1},
        {"logger_name": ""},
        {"logger_name": "   "},
        {"reporters": []},
    ],
)
def test_invalid_values_raise_configuration_error(kwargs: dict[str, object]) -> None:
    with pytest.raises(ConfigurationError):
        Config(**kwargs)  # type: ignore[arg-type]


def test_from_env_reads_pieper_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PIEPER_LOG_LEVEL", "debug")
    monkeypatch.setenv("PIEPER_LOGGER", "app.pipes")
    monkeypatch.setenv("PIEPER_FORGET_TRACEBACK", "no")
    monkeypatch.setenv("PIEPER_STDERR_FALLBACK", "off")
    monkeypatch.setenv("PIEPER_TELEMETRY", "1")

    config = Config.from_env()

    assert config.log_level == logging.DEBUG
    assert config.logger_name == "app.pipes"
    assert config.forget_traceback is False
    assert config.stderr_fallback is False
    assert config.telemetry is True


def test_from_env_accepts_numeric_levels_and_overrides(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PIEPER_LOG_LEVEL", "25")
    monkeypatch.setenv("PIEPER_LOGGER", "ignored")

    config = Config.from_env(logger_name="explicit")

    assert config.log_level == 25
    assert config.logger_name == "explicit"


def test_from_env_rejects_unknown_level_names(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PIEPER_LOG_LEVEL", "LOUD")

    with pytest.raises(ConfigurationError) as excinfo:
        Config.from_env()

    assert excinfo.value.hint is not None


def test_resolve_prefers_explicit_then_scope_then_env(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PIEPER_LOGGER", "from.env")
    explicit = Config(logger_name="explicit")

    assert resolve_config().logger_name == "from.env"
    with config_scope(logger_name="scoped") as scoped:
        assert resolve_config() is scoped
        assert resolve_config(explicit) is explicit
    assert resolve_config().logger_name == "from.env"


def test_config_scope_applies_overrides_to_a_given_config() -> None:
    base = Config(logger_name="base")

    with config_scope(base, log_level=logging.WARNING) as cfg:
        assert cfg.logger_name == "base"
        assert cfg.log_level == logging.WARNING
    with config_scope(base) as same:
        assert same is base


@pytest.mark.asyncio
async def test_pipelines_resolve_config_at_run_time(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="scoped.logger")
    pipeline = Pipeline.of(1).log("hello")  # built outside any scope

    with config_scope(Config(logger_name="scoped.logger")):
        await pipeline.run()

    assert [r.getMessage() for r in caplog.records if r.name == "scoped.logger"] == [
        "hello 1"
    ]


@pytest.mark.asyncio
async def test_with_config_and_inheritance() -> None:
    config = Config(logger_name="bound")
    pipeline = Pipeline.of(1).map(lambda x: x + 1).with_config(config)

    derived = pipeline.map(str)

    assert derived.config is config
    assert derived.steps == ("of", "map", "map")
    assert await derived.run() == "2"
    assert Pipeline.of(1).config is None


@pytest.mark.asyncio
async def test_scopes_are_isolated_between_tasks() -> None:
    async def scoped_name(name: str) -> str:
        with config_scope(Config(logger_name=name)):
            await asyncio.sleep(0.01)
            return resolve_config().logger_name

    names = await asyncio.gather(scoped_name("a"), scoped_name("b"))
    assert names == ["a", "b"]


def test_str_is_readable() -> None:
    assert str(Config()) == "Config(log_level=INFO, logger_name='pieper', telemetry=False)"
