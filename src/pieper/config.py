"""Configuration: frozen Config resolved from scope, environment, or overrides."""

from __future__ import annotations

import contextlib
import contextvars
from dataclasses import dataclass, field, replace
import logging
import os
from typing import TYPE_CHECKING, Any

from pieper.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from pieper.telemetry import TelemetryReporter

_ENV_PREFIX = "PIEPER_"

_AMBIENT: contextvars.ContextVar[Config | None] = contextvars.ContextVar(
    "pieper_ambient_config", default=None
)

_DOTENV_LOADED: bool = False


def _coerce_bool(v: str) -> bool:
    """Convert string to boolean using common conventions."""
    return v.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_level(v: str) -> int:
    raw = v.strip()
    if raw.lstrip("-").isdigit():
        return int(raw)
    level = logging.getLevelName(raw.upper())
    if not isinstance(level, int):
        raise ConfigurationError(
            f"Unknown log level: {v!r}",
            hint="Use a logging level name such as 'DEBUG' or 'INFO', or a number.",
        )
    return level


@dataclass(frozen=True)
class Config:
    """Immutable configuration for pipeline execution.

    Example:
        config = Config(log_level=logging.DEBUG, telemetry=True)
        await Pipeline.of(3, config=config).log("value").run()
    """

    #: Level used by ``Pipeline.log`` steps.
    log_level: int = logging.INFO
    #: Logger that receives ``log`` output and ``run_and_forget`` failures.
    logger_name: str = "pieper"
    #: Attach the traceback when ``run_and_forget`` reports a failure.
    forget_traceback: bool = True
    #: Write diagnostics to stderr when the logger would not reach any handler.
    stderr_fallback: bool = True
    telemetry: bool = False
    reporters: tuple[TelemetryReporter, ...] = field(default=())

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not isinstance(self.log_level, int) or isinstance(self.log_level, bool):
            raise ConfigurationError(
                f"log_level must be an int, got {self.log_level!r}",
                hint="Pass a logging constant such as logging.INFO.",
            )
        if self.log_level < 0:
            raise ConfigurationError(
                f"log_level must be ≥ 0, got {self.log_level}",
            )
        if not isinstance(self.logger_name, str) or not self.logger_name.strip():
            raise ConfigurationError(
                "logger_name must be a non-empty string",
                hint="Use a dotted logger name such as 'myapp.pipelines'.",
            )
        if not isinstance(self.reporters, tuple):
            raise ConfigurationError(
                "reporters must be a tuple",
                hint="Pass reporters=(SimpleReporter(),).",
            )

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(self.logger_name)

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Build a Config from ``PIEPER_*`` environment variables.

        A ``.env`` file is loaded once through python-dotenv. Keyword
        ``overrides`` win over environment values.
        """
        _try_load_dotenv()
        values: dict[str, Any] = {}
        env = os.environ
        if (raw := env.get(f"{_ENV_PREFIX}LOG_LEVEL")) is not None:
            values["log_level"] = _coerce_level(raw)
        if (raw := env.get(f"{_ENV_PREFIX}LOGGER")) is not None:
            values["logger_name"] = raw
        if (raw := env.get(f"{_ENV_PREFIX}FORGET_TRACEBACK")) is not None:
            values["forget_traceback"] = _coerce_bool(raw)
        if (raw := env.get(f"{_ENV_PREFIX}STDERR_FALLBACK")) is not None:
            values["stderr_fallback"] = _coerce_bool(raw)
        if (raw := env.get(f"{_ENV_PREFIX}TELEMETRY")) is not None:
            values["telemetry"] = raw.strip() == "1"
        values.update(overrides)
        return cls(**values)

    def __str__(self) -> str:
        return (
            f"Config(log_level={logging.getLevelName(self.log_level)}, "
            f"logger_name={self.logger_name!r}, telemetry={self.telemetry})"
        )


def _try_load_dotenv() -> None:
    """Load a ``.env`` file once per process."""
    global _DOTENV_LOADED
    if _DOTENV_LOADED:
        return
    from dotenv import load_dotenv

    load_dotenv()
    _DOTENV_LOADED = True


@contextlib.contextmanager
def config_scope(config: Config | None = None, **overrides: Any) -> Iterator[Config]:
    """Run pipelines inside the block with a scoped configuration.

    Scopes are ``ContextVar`` based, so concurrent tasks keep their own.

    Example:
        with config_scope(log_level=logging.DEBUG):
            await pipeline.run()
    """
    if config is None:
        cfg = Config.from_env(**overrides)
    elif overrides:
        cfg = replace(config, **overrides)
    else:
        cfg = config
    token = _AMBIENT.set(cfg)
    try:
        yield cfg
    finally:
        _AMBIENT.reset(token)


def resolve_config(config: Config | None = None) -> Config:
    """Return the explicit config, else the scoped one, else one from the environment."""
    if config is not None:
        return config
    ambient = _AMBIENT.get()
    if ambient is not None:
        return ambient
    return Config.from_env()
