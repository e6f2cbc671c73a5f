"""Exception hierarchy for Pieper."""

from __future__ import annotations


class PieperError(Exception):
    """Base exception for all Pieper errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(PieperError):
    """Configuration validation or resolution failed."""


class PipelineAssertionError(PieperError):
    """An ``assert_`` step rejected the value flowing through a pipeline.

    Raised only when the caller supplied a message string; an exception
    instance passed to ``assert_`` is raised verbatim instead.
    """
