"""Tagged results returned by ``Pipeline.run_safe``."""

from __future__ import annotations

import dataclasses
from typing import Literal, NoReturn


@dataclasses.dataclass(frozen=True, slots=True)
class Success[T]:
    """A chain that settled with a value."""

    value: T
    ok: Literal[True] = dataclasses.field(default=True, init=False)

    def unwrap(self) -> T:
        return self.value

    def unwrap_or[D](self, default: D) -> T | D:  # noqa: ARG002
        return self.value


@dataclasses.dataclass(frozen=True, slots=True)
class Failure[E]:
    """A chain that settled with an error, captured instead of raised."""

    error: E
    ok: Literal[False] = dataclasses.field(default=False, init=False)

    def unwrap(self) -> NoReturn:
        """Raise the captured error."""
        if isinstance(self.error, BaseException):
            raise self.error
        raise RuntimeError(f"Pipeline failed with non-exception value: {self.error!r}")

    def unwrap_or[D](self, default: D) -> D:
        return default


type SafeResult[T, E = Exception] = Success[T] | Failure[E]
