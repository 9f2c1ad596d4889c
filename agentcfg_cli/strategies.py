"""Ordered "first success wins" composition.

Authentication, environment lookup, environment matching and agent discovery
all try a fixed list of alternatives in priority order and keep the first one
that produces a usable value. Each alternative is a ``Strategy``: a name plus
a callable taking the shared input. A strategy signals "no usable value" by
raising ``StrategyFailed`` (or an ``OpError`` from the transport); the
combinator records the reason and moves on.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Sequence, TypeVar

from .cli_shared import OpError, _silent

In = TypeVar("In")
Out = TypeVar("Out")


class StrategyFailed(Exception):
    """A single strategy produced no usable value."""


class StrategiesExhausted(Exception):
    def __init__(self, failures: list[tuple[str, str]]):
        self.failures = list(failures)
        super().__init__("; ".join(f"{name}: {reason}" for name, reason in self.failures) or "no strategies")


@dataclass(frozen=True)
class Strategy(Generic[In, Out]):
    name: str
    run: Callable[[In], Out]


@dataclass(frozen=True)
class Success(Generic[Out]):
    strategy: str
    value: Out
    failures: tuple[tuple[str, str], ...] = ()


def first_success(
    strategies: Sequence[Strategy[In, Out]],
    arg: In,
    *,
    log: Callable[[str], None] = _silent,
    label: str = "strategy",
) -> Success[Out]:
    failures: list[tuple[str, str]] = []
    for strategy in strategies:
        try:
            value = strategy.run(arg)
        except (StrategyFailed, OpError) as e:
            reason = str(e) or type(e).__name__
            failures.append((strategy.name, reason))
            log(f"{label} {strategy.name} failed: {reason}")
            continue
        return Success(strategy=strategy.name, value=value, failures=tuple(failures))
    raise StrategiesExhausted(failures)
