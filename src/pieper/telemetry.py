"""Telemetry context and reporter interfaces.

Pipelines time each executed step when ``Config.telemetry`` is enabled and
fall back to a shared no-op context otherwise, so disabled telemetry costs a
single attribute lookup per step.
"""

from __future__ import annotations

from collections import deque
from contextlib import AbstractContextManager, contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import logging
import time
from typing import TYPE_CHECKING, Any, Protocol, Self, TypedDict, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterator
    from types import TracebackType

log = logging.getLogger(__name__)

# Context-aware state for async safety
_scope_stack_var: ContextVar[tuple[str, ...]] = ContextVar(
    "pieper_scope_stack",
    default=(),
)


class _TelemetryMetadata(TypedDict, total=False):
    depth: int
    parent_scope: str | None
    failed: bool
    start_monotonic_s: float
    end_monotonic_s: float


@runtime_checkable
class TelemetryReporter(Protocol):
    """Duck-typed protocol for telemetry reporters."""

    def record_timing(self, scope: str, duration: float, **metadata: Any) -> None: ...  # noqa: D102
    def record_metric(self, scope: str, value: Any, **metadata: Any) -> None: ...  # noqa: D102


@dataclass(frozen=True, slots=True)
class _NoOpTelemetryContext:
    """An immutable and stateless no-op context."""

    def __call__(self, name: str, **metadata: Any) -> Self:  # noqa: ARG002
        return self

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        _: type[BaseException] | None,
        __: BaseException | None,
        ___: TracebackType | None,
    ) -> bool | None:
        return None

    def count(self, name: str, increment: int = 1, **metadata: Any) -> None:
        pass


class _EnabledTelemetryContext:
    """Telemetry context that forwards scope timings to its reporters."""

    __slots__ = ("reporters",)

    def __init__(self, *reporters: TelemetryReporter):
        self.reporters = reporters

    def __call__(
        self, name: str, **metadata: Any
    ) -> AbstractContextManager[_EnabledTelemetryContext]:
        return self._create_scope(name, **metadata)

    @contextmanager
    def _create_scope(
        self, name: str, **metadata: Any
    ) -> Iterator[_EnabledTelemetryContext]:
        if not name or not isinstance(name, str):
            raise ValueError("Scope name must be a non-empty string")

        scope_stack = _scope_stack_var.get()
        scope_path = ".".join((*scope_stack, name))
        start_monotonic_s = time.perf_counter()
        scope_token = _scope_stack_var.set((*scope_stack, name))
        failed = False

        try:
            yield self
        except Exception:
            failed = True
            raise
        finally:
            end_monotonic_s = time.perf_counter()
            _scope_stack_var.reset(scope_token)
            final_stack = _scope_stack_var.get()

            built: _TelemetryMetadata = {
                "depth": len(final_stack),
                "parent_scope": ".".join(final_stack) if final_stack else None,
                "failed": failed,
                "start_monotonic_s": start_monotonic_s,
                "end_monotonic_s": end_monotonic_s,
            }
            enhanced_metadata: dict[str, Any] = {**built, **metadata}
            duration = end_monotonic_s - start_monotonic_s

            for reporter in self.reporters:
                try:
                    reporter.record_timing(scope_path, duration, **enhanced_metadata)
                except Exception as e:
                    log.error(
                        "Telemetry reporter '%s' failed: %s",
                        type(reporter).__name__,
                        e,
                        exc_info=True,
                    )

    def metric(self, name: str, value: Any, **metadata: Any) -> None:
        """Record a metric within current scope context."""
        scope_stack = _scope_stack_var.get()
        scope_path = ".".join((*scope_stack, name))
        built: _TelemetryMetadata = {
            "depth": len(scope_stack),
            "parent_scope": ".".join(scope_stack) if scope_stack else None,
        }
        enhanced_metadata: dict[str, Any] = {**built, **metadata}
        for reporter in self.reporters:
            try:
                reporter.record_metric(scope_path, value, **enhanced_metadata)
            except Exception as e:
                log.error(
                    "Telemetry reporter '%s' failed: %s",
                    type(reporter).__name__,
                    e,
                    exc_info=True,
                )

    def count(self, name: str, increment: int = 1, **metadata: Any) -> None:
        """Record a counter metric."""
        self.metric(name, increment, metric_type="counter", **metadata)


_NO_OP_SINGLETON = _NoOpTelemetryContext()

type TelemetryContextProtocol = _EnabledTelemetryContext | _NoOpTelemetryContext


def TelemetryContext(  # noqa: N802
    *reporters: TelemetryReporter, enabled: bool = True
) -> TelemetryContextProtocol:
    """Return a telemetry context.

    Behavior:
    - When ``enabled`` is true, return an enabled context. If no reporters
      are provided, the process-wide ``default_reporter()`` collects data.
    - Otherwise return a shared no-op instance.
    """
    if enabled:
        reps = reporters or (_DEFAULT_REPORTER,)
        return _EnabledTelemetryContext(*reps)
    return _NO_OP_SINGLETON


class SimpleReporter:
    """Built-in reporter for development use.

    Collects timings and metrics in memory. Call ``get_report()`` to render
    them.
    """

    def __init__(self, max_entries_per_scope: int = 1000):
        self.max_entries = max_entries_per_scope
        self.timings: dict[str, deque[tuple[float, dict[str, Any]]]] = {}
        self.metrics: dict[str, deque[tuple[Any, dict[str, Any]]]] = {}

    def record_timing(self, scope: str, duration: float, **metadata: Any) -> None:
        if scope not in self.timings:
            self.timings[scope] = deque(maxlen=self.max_entries)
        self.timings[scope].append((duration, metadata))

    def record_metric(self, scope: str, value: Any, **metadata: Any) -> None:
        if scope not in self.metrics:
            self.metrics[scope] = deque(maxlen=self.max_entries)
        self.metrics[scope].append((value, metadata))

    def reset(self) -> None:
        """Clear all collected telemetry (testing convenience)."""
        self.timings.clear()
        self.metrics.clear()

    def as_dict(self) -> dict[str, Any]:
        """Return a snapshot of collected data."""
        return {
            "timings": {key: list(values) for key, values in self.timings.items()},
            "metrics": {key: list(values) for key, values in self.metrics.items()},
        }

    def get_report(self) -> str:
        """Render per-scope call counts and durations."""
        lines = ["=== Pipeline Telemetry ===", "", "--- Timings ---"]
        for scope, values in sorted(self.timings.items()):
            durations = [v[0] for v in values]
            failures = sum(1 for v in values if v[1].get("failed"))
            lines.append(
                f"{scope:<40} | "
                f"Calls: {len(durations):<4} | "
                f"Failed: {failures:<4} | "
                f"Avg: {sum(durations) / len(durations):.4f}s | "
                f"Total: {sum(durations):.4f}s",
            )

        if self.metrics:
            lines.append("")
            lines.append("--- Metrics ---")
            for scope, values in sorted(self.metrics.items()):
                total = sum(v[0] for v in values if isinstance(v[0], int | float))
                lines.append(
                    f"{scope:<40} | Count: {len(values):<4} | Total: {total:,.0f}",
                )

        return "\n".join(lines)


_DEFAULT_REPORTER = SimpleReporter()


def default_reporter() -> SimpleReporter:
    """Return the reporter used when telemetry is enabled without reporters."""
    return _DEFAULT_REPORTER
