"""Memoized per-ticker graph of indicator and strategy nodes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import numpy as np

from .bars import BarSeries, TickerIdentity
from .errors import CyclicDependency, UnknownRunnable
from .orders import Direction
from .statistics import PerformanceStats

logger = logging.getLogger(__name__)


class NodeKind(str, Enum):
    INDICATOR = "indicator"
    STRATEGY = "strategy"


class Runnable(Protocol):
    name: str
    kind: NodeKind
    dependency_names: tuple[str, ...]

    def attach(self, graph: "RunnableGraph") -> None:
        ...

    def on_bar_update(self, bar: int) -> None:
        ...


class Calculator(Protocol):
    outputs: tuple[str, ...]

    def update(self, bar: Any) -> tuple[float, ...]:
        ...


@dataclass(frozen=True)
class Signal:
    direction: Direction
    score: float = 0.0
    detail: str | None = None


StepFn = Callable[["RunnableGraph", int], "Signal | None"]
Factory = Callable[[str, tuple[str, ...], Any], Runnable]


def parse_runnable_name(name: str) -> tuple[str, tuple[str, ...]]:
    """Split `"BullBressertDss,14"` into `("BullBressertDss", ("14",))`."""
    parts = [part.strip() for part in str(name or "").split(",")]
    base = parts[0]
    if not base:
        raise ValueError(f"Invalid runnable name: {name!r}")
    return base, tuple(part for part in parts[1:] if part)


def canonical_name(name: str) -> str:
    base, params = parse_runnable_name(name)
    return ",".join((base, *params))


def int_param(params: tuple[str, ...], index: int, default: int) -> int:
    if index >= len(params):
        return default
    try:
        return int(params[index])
    except ValueError as exc:
        raise ValueError(f"Parameter {index} must be an integer, got {params[index]!r}") from exc


def float_param(params: tuple[str, ...], index: int, default: float) -> float:
    if index >= len(params):
        return default
    try:
        return float(params[index])
    except ValueError as exc:
        raise ValueError(f"Parameter {index} must be a number, got {params[index]!r}") from exc


class IndicatorNode:
    kind = NodeKind.INDICATOR

    def __init__(self, name: str, calculator: Calculator, dependency_names: tuple[str, ...] = ()) -> None:
        self.name = name
        self.calculator = calculator
        self.dependency_names = tuple(dependency_names)
        self.outputs = tuple(calculator.outputs)
        self.values: dict[str, list[float]] = {output: [] for output in self.outputs}
        self._graph: RunnableGraph | None = None

    def attach(self, graph: "RunnableGraph") -> None:
        self._graph = graph

    @property
    def bars_processed(self) -> int:
        return len(self.values[self.outputs[0]])

    def on_bar_update(self, bar: int) -> None:
        if self._graph is None:
            raise RuntimeError(f"Indicator {self.name} is not attached to a graph")
        if bar < self.bars_processed:
            return
        if bar != self.bars_processed:
            raise RuntimeError(f"Indicator {self.name} expected bar {self.bars_processed}, got {bar}")
        result = self.calculator.update(self._graph.series.bar(bar))
        for output, value in zip(self.outputs, result):
            self.values[output].append(float(value))

    def series(self, output: str | None = None) -> list[float]:
        return self.values[output or self.outputs[0]]

    def value(self, bar: int, output: str | None = None) -> float:
        return self.series(output)[bar]

    def window(self, start: int, end: int) -> dict[str, list[float]]:
        return {output: values[max(0, start) : end + 1] for output, values in self.values.items()}


class StrategyNode:
    kind = NodeKind.STRATEGY

    def __init__(
        self,
        name: str,
        direction: Direction,
        step: StepFn,
        dependency_names: tuple[str, ...] = (),
        places_orders: bool = True,
    ) -> None:
        self.name = name
        self.direction = direction
        self.step = step
        self.dependency_names = tuple(dependency_names)
        self.places_orders = places_orders
        self.was_found: list[bool] = []
        self.signals: list[Signal | None] = []
        self._graph: RunnableGraph | None = None

    def attach(self, graph: "RunnableGraph") -> None:
        self._graph = graph

    def on_bar_update(self, bar: int) -> None:
        if self._graph is None:
            raise RuntimeError(f"Strategy {self.name} is not attached to a graph")
        if bar < len(self.signals):
            return
        if bar != len(self.signals):
            raise RuntimeError(f"Strategy {self.name} expected bar {len(self.signals)}, got {bar}")
        signal = self.step(self._graph, bar)
        self.signals.append(signal)
        self.was_found.append(signal is not None)

    def signal_at(self, bar: int) -> Signal | None:
        return self.signals[bar] if 0 <= bar < len(self.signals) else None

    def found_at(self, bar: int) -> bool:
        return self.signal_at(bar) is not None


class RunnableRegistry:
    """Name to factory mapping; params travel inside the name."""

    def __init__(self) -> None:
        self._factories: dict[str, Factory] = {}
        self._aliases: dict[str, str] = {}

    def register(self, name: str) -> Callable[[Factory], Factory]:
        def decorator(factory: Factory) -> Factory:
            if name in self._factories:
                raise ValueError(f"Runnable already registered: {name}")
            self._factories[name] = factory
            return factory

        return decorator

    def alias(self, alias: str, target: str) -> None:
        self._aliases[alias] = canonical_name(target)

    def canonical(self, name: str) -> str:
        key = canonical_name(name)
        return self._aliases.get(key, key)

    def names(self) -> list[str]:
        return sorted((*self._factories, *self._aliases))

    def __contains__(self, name: str) -> bool:
        try:
            base, _ = parse_runnable_name(self.canonical(name))
        except ValueError:
            return False
        return base in self._factories

    def create(self, name: str, context: Any = None) -> Runnable:
        key = self.canonical(name)
        base, params = parse_runnable_name(key)
        factory = self._factories.get(base)
        if factory is None:
            raise UnknownRunnable(name)
        return factory(key, params, context)


DEFAULT_REGISTRY = RunnableRegistry()
register = DEFAULT_REGISTRY.register
registry_alias = DEFAULT_REGISTRY.alias


class RunnableGraph:
    """Lazily built nodes for one ticker, updated in dependency order.

    The graph is also the context handed to strategy step functions.
    """

    def __init__(self, series: BarSeries, registry: RunnableRegistry | None = None, context: Any = None) -> None:
        self.series = series
        self.registry = registry if registry is not None else DEFAULT_REGISTRY
        self.context = context
        self._nodes: dict[str, Runnable] = {}
        self._order: list[Runnable] = []
        self._resolving: list[str] = []
        self._bars_processed = 0

    @property
    def ticker(self) -> TickerIdentity:
        return self.series.ticker

    @property
    def config(self) -> Any:
        return getattr(self.context, "config", None)

    @property
    def nodes(self) -> list[Runnable]:
        return list(self._order)

    @property
    def bars_processed(self) -> int:
        return self._bars_processed

    def get(self, name: str) -> Runnable:
        key = self.registry.canonical(name)
        node = self._nodes.get(key)
        if node is not None:
            return node
        if key in self._resolving:
            start = self._resolving.index(key)
            raise CyclicDependency([*self._resolving[start:], key])

        self._resolving.append(key)
        try:
            node = self.registry.create(key, self.context)
            for dependency in node.dependency_names:
                self.get(dependency)
        finally:
            self._resolving.pop()

        node.attach(self)
        # Nodes requested mid-run catch up before they go live.
        for bar in range(self._bars_processed):
            node.on_bar_update(bar)
        self._nodes[key] = node
        self._order.append(node)
        logger.debug("[%s] Created %s node %s", self.ticker, node.kind.value, key)
        return node

    def dep(self, name: str) -> Runnable:
        return self.get(name)

    def indicator(self, name: str) -> IndicatorNode:
        node = self.get(name)
        if not isinstance(node, IndicatorNode):
            raise TypeError(f"{name} is not an indicator")
        return node

    def strategy(self, name: str) -> StrategyNode:
        node = self.get(name)
        if not isinstance(node, StrategyNode):
            raise TypeError(f"{name} is not a strategy")
        return node

    def on_bar_update(self, bar: int) -> None:
        for node in self._order:
            node.on_bar_update(bar)
        self._bars_processed = max(self._bars_processed, bar + 1)

    def strategy_nodes(self) -> list[StrategyNode]:
        return [node for node in self._order if isinstance(node, StrategyNode)]

    def indicator_nodes(self) -> list[IndicatorNode]:
        return [node for node in self._order if isinstance(node, IndicatorNode)]

    def indicator_names(self) -> list[str]:
        return [node.name for node in self.indicator_nodes()]

    def higher_direction(self, bar: int) -> Direction | None:
        state = self.series.higher_state
        if state.size <= bar or np.isnan(state[bar]) or state[bar] == 0:
            return None
        return Direction.from_value(float(state[bar]))

    def ledger_stats(self, strategy_name: str, direction: Direction, bar: int) -> PerformanceStats:
        """Ledger statistics for this ticker as of `bar`; neutral without a run context."""
        ledger = getattr(self.context, "ledger", None)
        config = self.config
        if ledger is None or config is None:
            return PerformanceStats.neutral(strategy_name, direction)
        return ledger.stats_for_strategy(
            strategy_name,
            direction,
            ticker=self.ticker,
            as_of_bar=bar,
            **config.lookback_kwargs(),
        )
