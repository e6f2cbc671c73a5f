"""Deferred, chainable pipelines over a single eventual value.

A ``Pipeline`` wraps a producer: a zero-argument coroutine function that
yields the chain's value when awaited. Chaining never runs anything. Each
call returns a new pipeline whose producer awaits the previous one and then
applies one step, so the whole chain executes only when a terminal operation
(``run``, ``run_safe``, ``run_and_forget``) is invoked, and again on every
subsequent terminal call.

Failures travel as exceptions. Once a step raises, every later ``map``,
``flat_map``, ``if_``, ``if_else``, ``tap``, ``log`` and ``assert_`` is
skipped until a ``catch`` recovers; ``finally_`` runs on both paths.
Only ``Exception`` subclasses count as chain failures. Cancellation and
other ``BaseException``s always propagate.

Step functions may be plain callables or return awaitables; results are
awaited before the next step starts.

Example:
    slug = (
        Pipeline.of(title)
        .assert_(lambda s: isinstance(s, str) and s.strip(), "title cannot be empty")
        .map(str.lower)
        .map(lambda s: re.sub(r"[^a-z0-9]+", "-", s).strip("-"))
        .if_else(bool, lambda s: s, lambda _: "n-a")
    )
    result = await slug.run_safe()
"""

from __future__ import annotations

import asyncio
from contextvars import ContextVar
from dataclasses import dataclass
import inspect
import logging
import sys
from typing import TYPE_CHECKING, Any, TypeIs, overload

from pieper.config import Config, resolve_config
from pieper.errors import PipelineAssertionError
from pieper.result import Failure, Success
from pieper.telemetry import TelemetryContext

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from pieper.result import SafeResult
    from pieper.telemetry import TelemetryContextProtocol

log = logging.getLogger(__name__)

type MaybeAwaitable[T] = T | Awaitable[T]
type ExceptionFilter = type[Exception] | tuple[type[Exception], ...]


@dataclass(frozen=True, slots=True)
class _RunContext:
    config: Config
    telemetry: TelemetryContextProtocol


_run_context: ContextVar[_RunContext | None] = ContextVar(
    "pieper_run_context", default=None
)

# Strong references to run_and_forget tasks until they finish
_background_tasks: set[asyncio.Task[None]] = set()


def _current_run() -> _RunContext:
    ctx = _run_context.get()
    if ctx is None:
        config = resolve_config()
        ctx = _RunContext(
            config, TelemetryContext(*config.reporters, enabled=config.telemetry)
        )
    return ctx


async def _settle[V](value: MaybeAwaitable[V]) -> V:
    if inspect.isawaitable(value):
        return await value
    return value


def _identity[V](value: V) -> V:
    return value


def _has_real_handlers(logger: logging.Logger) -> bool:
    """Like ``Logger.hasHandlers`` but ignoring ``NullHandler``."""
    current: logging.Logger | None = logger
    while current is not None:
        if any(not isinstance(h, logging.NullHandler) for h in current.handlers):
            return True
        if not current.propagate:
            return False
        current = current.parent
    return False


def _write_diagnostic(
    config: Config,
    sink: logging.Logger,
    level: int,
    msg: str,
    *args: object,
    exc_info: BaseException | None = None,
) -> None:
    """Log through ``sink``, or straight to stderr when logging is unconfigured."""
    if not config.stderr_fallback or _has_real_handlers(sink):
        sink.log(level, msg, *args, exc_info=exc_info)
        return
    # The package NullHandler would swallow the record
    record = sink.makeRecord(
        sink.name,
        level,
        __file__,
        0,
        msg,
        args,
        (type(exc_info), exc_info, exc_info.__traceback__) if exc_info else None,
    )
    logging.StreamHandler(sys.stderr).handle(record)


def _consume_future_exception(fut: asyncio.Future[Any]) -> None:
    """Avoid 'Future exception was never retrieved' when every waiter was cancelled."""
    if not fut.cancelled():
        fut.exception()


class _SettleOnce[V]:
    """Awaits an awaitable on first use and replays its outcome afterwards.

    Callers wait through ``asyncio.shield`` so cancelling one run leaves the
    shared future intact for the others.
    """

    __slots__ = ("_awaitable", "_future")

    def __init__(self, awaitable: Awaitable[V]) -> None:
        self._awaitable = awaitable
        self._future: asyncio.Future[V] | None = None

    async def __call__(self) -> V:
        if self._future is None:
            self._future = asyncio.ensure_future(self._awaitable)
            self._future.add_done_callback(_consume_future_exception)
        return await asyncio.shield(self._future)


class Pipeline[T]:
    """Immutable, reusable description of a chain of steps over one value.

    Build pipelines with ``Pipeline.of`` or ``Pipeline.from_callable``; the
    constructor is the low-level entry point taking a producer directly.
    """

    __slots__ = ("_config", "_producer", "_steps")

    _config: Config | None
    _producer: Callable[[], Awaitable[T]]
    _steps: tuple[str, ...]

    def __init__(
        self,
        producer: Callable[[], Awaitable[T]],
        *,
        steps: tuple[str, ...] = (),
        config: Config | None = None,
    ) -> None:
        object.__setattr__(self, "_producer", producer)
        object.__setattr__(self, "_steps", steps)
        object.__setattr__(self, "_config", config)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"Pipeline is immutable; cannot set {name!r}")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"Pipeline is immutable; cannot delete {name!r}")

    def __repr__(self) -> str:
        return f"Pipeline({' -> '.join(self._steps) or 'empty'})"

    @property
    def steps(self) -> tuple[str, ...]:
        """Names of the steps in declaration order, root first."""
        return self._steps

    @property
    def config(self) -> Config | None:
        """Config bound to this pipeline, if any (resolved at run time otherwise)."""
        return self._config

    def with_config(self, config: Config | None) -> Pipeline[T]:
        """Return the same chain bound to a different config."""
        return Pipeline(self._producer, steps=self._steps, config=config)

    # --- Construction ---

    @classmethod
    def of[V](
        cls, value: MaybeAwaitable[V], *, config: Config | None = None
    ) -> Pipeline[V]:
        """Start a pipeline from a value or an awaitable.

        An awaitable is awaited on the first execution only; later executions
        replay the same value or error.
        """
        if inspect.isawaitable(value):
            return cls(_SettleOnce(value), steps=("of",), config=config)

        async def producer() -> V:
            return value

        return cls(producer, steps=("of",), config=config)

    @classmethod
    def from_callable[V](
        cls, fn: Callable[[], MaybeAwaitable[V]], *, config: Config | None = None
    ) -> Pipeline[V]:
        """Start a pipeline that calls ``fn()`` each time it executes.

        Exceptions raised by ``fn`` become the pipeline's failure.
        """

        async def producer() -> V:
            with _current_run().telemetry("from_callable"):
                return await _settle(fn())

        return cls(producer, steps=("from_callable",), config=config)

    def _derive[R](
        self, step: str, producer: Callable[[], Awaitable[R]]
    ) -> Pipeline[R]:
        return Pipeline(producer, steps=(*self._steps, step), config=self._config)

    def _then[R](
        self, step: str, fn: Callable[[T], Awaitable[R]]
    ) -> Pipeline[R]:
        upstream = self._producer

        async def producer() -> R:
            value = await upstream()
            with _current_run().telemetry(step):
                return await fn(value)

        return self._derive(step, producer)

    # --- Transformation ---

    def map[R](self, fn: Callable[[T], MaybeAwaitable[R]]) -> Pipeline[R]:
        """Transform the value with ``fn``."""

        async def step(value: T) -> R:
            return await _settle(fn(value))

        return self._then("map", step)

    def flat_map[R](
        self, fn: Callable[[T], MaybeAwaitable[Pipeline[R]]]
    ) -> Pipeline[R]:
        """Continue with the pipeline returned by ``fn``, adopting its outcome."""

        async def step(value: T) -> R:
            inner = await _settle(fn(value))
            if not isinstance(inner, Pipeline):
                raise TypeError(
                    "flat_map function must return a Pipeline, "
                    f"got {type(inner).__name__}"
                )
            if inner._config is None:
                # Same run: inner steps report under this flat_map scope
                return await inner._producer()
            return await inner.run()

        return self._then("flat_map", step)

    # --- Branching ---

    def _branch[R1, R2](
        self,
        step: str,
        condition: Callable[[T], MaybeAwaitable[bool]],
        then_fn: Callable[[T], MaybeAwaitable[R1]],
        else_fn: Callable[[T], MaybeAwaitable[R2]],
    ) -> Pipeline[R1 | R2]:
        async def branch(value: T) -> R1 | R2:
            if await _settle(condition(value)):
                return await _settle(then_fn(value))
            return await _settle(else_fn(value))

        return self._then(step, branch)

    def if_[R](
        self,
        condition: Callable[[T], MaybeAwaitable[bool]],
        then_fn: Callable[[T], MaybeAwaitable[R]],
    ) -> Pipeline[T | R]:
        """Apply ``then_fn`` when ``condition`` holds; otherwise pass the value through."""
        return self._branch("if", condition, then_fn, _identity)

    def if_else[R1, R2](
        self,
        condition: Callable[[T], MaybeAwaitable[bool]],
        then_fn: Callable[[T], MaybeAwaitable[R1]],
        else_fn: Callable[[T], MaybeAwaitable[R2]],
    ) -> Pipeline[R1 | R2]:
        """Apply exactly one of ``then_fn`` or ``else_fn`` depending on ``condition``."""
        return self._branch("if_else", condition, then_fn, else_fn)

    # --- Side effects ---

    def _tap(self, step: str, fn: Callable[[T], MaybeAwaitable[object]]) -> Pipeline[T]:
        async def effect(value: T) -> T:
            await _settle(fn(value))
            return value

        return self._then(step, effect)

    def tap(self, fn: Callable[[T], MaybeAwaitable[object]]) -> Pipeline[T]:
        """Call ``fn`` for its effect and keep the current value.

        A raising ``fn`` fails the chain.
        """
        return self._tap("tap", fn)

    def log(
        self,
        message: str | None = None,
        *,
        logger: logging.Logger | None = None,
        level: int | None = None,
    ) -> Pipeline[T]:
        """Write ``message`` and the current value to the diagnostic logger.

        Defaults come from the resolved ``Config``: its ``logger_name`` and
        ``log_level``.
        """

        def write(value: T) -> None:
            config = _current_run().config
            sink = logger if logger is not None else config.logger
            lvl = config.log_level if level is None else level
            if message:
                _write_diagnostic(config, sink, lvl, "%s %s", message, value)
            else:
                _write_diagnostic(config, sink, lvl, "%s", value)

        return self._tap("log", write)

    # --- Validation ---

    @overload
    def assert_[R](
        self,
        predicate: Callable[[T], TypeIs[R]],
        error_or_message: str | Exception,
    ) -> Pipeline[R]: ...

    @overload
    def assert_(
        self,
        predicate: Callable[[T], MaybeAwaitable[bool]],
        error_or_message: str | Exception,
    ) -> Pipeline[T]: ...

    def assert_(
        self,
        predicate: Callable[[T], Any],
        error_or_message: str | Exception,
    ) -> Pipeline[Any]:
        """Fail the chain unless ``predicate`` holds for the value.

        A string produces a ``PipelineAssertionError`` with that message; an
        exception instance is raised as given.
        """

        async def check(value: T) -> T:
            if not await _settle(predicate(value)):
                if isinstance(error_or_message, str):
                    raise PipelineAssertionError(error_or_message)
                raise error_or_message
            return value

        return self._then("assert", check)

    # --- Recovery ---

    def catch[R](
        self,
        fn: Callable[[Exception], MaybeAwaitable[R]],
        *,
        on: ExceptionFilter = Exception,
    ) -> Pipeline[T | R]:
        """Recover from an upstream failure with the value returned by ``fn``.

        Only exceptions matching ``on`` are intercepted; others keep
        propagating. A raising ``fn`` replaces the original failure.
        """
        upstream = self._producer

        async def producer() -> T | R:
            try:
                return await upstream()
            except on as exc:
                with _current_run().telemetry("catch"):
                    return await _settle(fn(exc))

        return self._derive("catch", producer)

    def finally_(self, fn: Callable[[], MaybeAwaitable[object]]) -> Pipeline[T]:
        """Call ``fn`` once the upstream settles, on success and on failure.

        The upstream outcome is kept unless ``fn`` raises, in which case its
        exception wins.
        """
        upstream = self._producer

        async def producer() -> T:
            try:
                return await upstream()
            finally:
                with _current_run().telemetry("finally"):
                    await _settle(fn())

        return self._derive("finally", producer)

    # --- Termination ---

    async def run(self) -> T:
        """Execute the chain and return its value, raising its failure."""
        # Pipelines run inside another run (flat_map) inherit its config
        outer = _run_context.get()
        config = resolve_config(
            self._config or (outer.config if outer is not None else None)
        )
        telemetry = TelemetryContext(*config.reporters, enabled=config.telemetry)
        token = _run_context.set(_RunContext(config, telemetry))
        log.debug("Running %r", self)
        try:
            with telemetry("pipeline.run", steps=len(self._steps)):
                return await self._producer()
        except Exception:
            # Nested runs fail into their outer run, which counts once
            if outer is None:
                telemetry.count("pipeline.failures")
            raise
        finally:
            _run_context.reset(token)

    async def run_safe(self) -> SafeResult[T, Exception]:
        """Execute the chain and capture its outcome; never raises for failures."""
        try:
            value = await self.run()
        except Exception as exc:
            log.debug("%r failed: %s", self, exc)
            return Failure(exc)
        return Success(value)

    def run_and_forget(self) -> None:
        """Start the chain without waiting for it; failures are only logged.

        Inside a running event loop the chain is scheduled as a task. Without
        one it runs to completion on a fresh loop before returning.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._run_and_report())
            return
        task = loop.create_task(self._run_and_report())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    async def _run_and_report(self) -> None:
        result = await self.run_safe()
        if isinstance(result, Failure):
            config = resolve_config(self._config)
            _write_diagnostic(
                config,
                config.logger,
                logging.ERROR,
                "Pipeline failed (run_and_forget): %s",
                result.error,
                exc_info=result.error if config.forget_traceback else None,
            )


of = Pipeline.of
from_callable = Pipeline.from_callable
