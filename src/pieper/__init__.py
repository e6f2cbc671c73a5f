"""Pieper: deferred, chainable pipelines over a single eventual value.

Public API:
    - Pipeline: immutable chain builder (``of``, ``from_callable``, ``map``,
      ``flat_map``, ``if_``, ``if_else``, ``tap``, ``log``, ``assert_``,
      ``catch``, ``finally_``) with terminal ``run``, ``run_safe`` and
      ``run_and_forget``
    - Success / Failure: the ``SafeResult`` returned by ``run_safe``
    - Config: logging and telemetry configuration
"""

from __future__ import annotations

import logging

from pieper.config import Config, config_scope, resolve_config
from pieper.errors import ConfigurationError, PieperError, PipelineAssertionError
from pieper.pipeline import Pipeline, from_callable, of
from pieper.result import Failure, SafeResult, Success
from pieper.telemetry import SimpleReporter, TelemetryReporter, default_reporter

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("pieper")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("pieper").addHandler(logging.NullHandler())

__all__ = [
    "Config",
    "ConfigurationError",
    "Failure",
    "PieperError",
    "Pipeline",
    "PipelineAssertionError",
    "SafeResult",
    "SimpleReporter",
    "Success",
    "TelemetryReporter",
    "config_scope",
    "default_reporter",
    "from_callable",
    "of",
    "resolve_config",
]
