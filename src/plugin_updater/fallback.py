"""Ordered fallback chains.

Mirror choice, dependency install mode and reload-vs-restart are all
"try this, on failure try the next one" sequences. They are expressed as
a list of named strategies run through ``first_successful`` so the order
is visible in one place and each strategy can be tested on its own.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from plugin_updater.exceptions import UpdateError

T = TypeVar("T")

FailureObserver = Callable[[str, UpdateError], None]


@dataclass(frozen=True)
class Strategy(Generic[T]):
    """A named attempt; raising ``UpdateError`` means "try the next one"."""

    name: str
    attempt: Callable[[], Awaitable[T]]


@dataclass
class StrategyOutcome(Generic[T]):
    name: str
    value: T
    failures: list[tuple[str, UpdateError]] = field(default_factory=list)


class StrategiesExhaustedError(UpdateError):
    """Every strategy in a chain failed."""

    code = "strategies_exhausted"

    def __init__(self, failures: list[tuple[str, UpdateError]]) -> None:
        summary = "; ".join(f"{name}: {exc.message}" for name, exc in failures) or "no strategies"
        transcript = "\n".join(exc.transcript for _, exc in failures if exc.transcript)
        super().__init__(f"All strategies failed ({summary})", transcript=transcript)
        self.failures = failures

    @property
    def last(self) -> UpdateError | None:
        return self.failures[-1][1] if self.failures else None


async def first_successful(
    strategies: Sequence[Strategy[T]],
    on_failure: FailureObserver | None = None,
) -> StrategyOutcome[T]:
    """Run *strategies* in order and return the first success.

    Only ``UpdateError`` moves the chain forward; anything else propagates.
    """
    failures: list[tuple[str, UpdateError]] = []
    for strategy in strategies:
        try:
            value = await strategy.attempt()
        except UpdateError as exc:
            failures.append((strategy.name, exc))
            if on_failure is not None:
                on_failure(strategy.name, exc)
            continue
        return StrategyOutcome(name=strategy.name, value=value, failures=failures)
    raise StrategiesExhaustedError(failures)
