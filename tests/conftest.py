"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, marker registration,
and small test doubles for instrumenting pipeline steps.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import Any

import pytest

from pieper.telemetry import SimpleReporter

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class CallRecorder:
    """Wraps step functions and records how often and with what they ran."""

    calls: dict[str, list[Any]] = field(default_factory=dict)

    def wrap(self, name: str, fn: Any) -> Any:
        def recorded(*args: Any) -> Any:
            self.calls.setdefault(name, []).append(args)
            return fn(*args)

        return recorded

    def count(self, name: str) -> int:
        return len(self.calls.get(name, []))


@pytest.fixture
def recorder() -> CallRecorder:
    """Fresh call recorder per test."""
    return CallRecorder()


@pytest.fixture
def reporter() -> SimpleReporter:
    """In-memory telemetry reporter."""
    return SimpleReporter()


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_pieper_env(request, monkeypatch):
    """Clear PIEPER_* variables so host settings never leak into tests.

    Opt-out: @pytest.mark.allow_env_pollution
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return
    for key in list(os.environ.keys()):
        if key.startswith("PIEPER_"):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("asyncio").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_configure(config):
    """Register custom markers for test organization."""
    markers = [
        "unit: Fast, isolated unit tests",
        "integration: Whole-chain behavior across several steps",
        "allow_dotenv: Let python-dotenv read .env files",
        "allow_env_pollution: Keep PIEPER_* variables from the host",
    ]
    for marker in markers:
        config.addinivalue_line("markers", marker)
