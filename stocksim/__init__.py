"""Stock strategy simulator: bar store, runnable graph, orders, ledger and run orchestration."""

from .bars import Bar, BarSeries, TickerIdentity, build_series
from .config import SimulatorConfig
from .errors import (
    CyclicDependency,
    DataUnavailable,
    DuplicateOrderId,
    MalformedCache,
    SimulatorError,
    UnknownRunnable,
)
from .graph import DEFAULT_REGISTRY, IndicatorNode, NodeKind, RunnableGraph, RunnableRegistry, Signal, StrategyNode
from .higher_timeframe import HIGHER_VALUE_NAMES, aggregate_higher_bars, derive_higher_timeframe
from . import indicators  # noqa: F401  registers indicator nodes
from . import strategies  # noqa: F401  registers strategies
from .ledger import OrderLedger
from .orders import Direction, EntryMode, Order, OrderIdSequence, OrderSettings, OrderStatus
from .output import open_dashboard, write_run_output
from .simulator import RunContext, RunResult, RunState, Simulator, run_simulation
from .sources import BarSource, HttpBarSource, parse_bar_rows
from .statistics import PerformanceStats, compute_performance_stats
from .ticker_store import TickerStore, read_cache_file, write_cache_file

__all__ = [
    "Bar",
    "BarSeries",
    "TickerIdentity",
    "build_series",
    "SimulatorConfig",
    "SimulatorError",
    "DataUnavailable",
    "MalformedCache",
    "UnknownRunnable",
    "DuplicateOrderId",
    "CyclicDependency",
    "DEFAULT_REGISTRY",
    "NodeKind",
    "IndicatorNode",
    "StrategyNode",
    "Signal",
    "RunnableGraph",
    "RunnableRegistry",
    "HIGHER_VALUE_NAMES",
    "aggregate_higher_bars",
    "derive_higher_timeframe",
    "OrderLedger",
    "Direction",
    "EntryMode",
    "Order",
    "OrderIdSequence",
    "OrderSettings",
    "OrderStatus",
    "write_run_output",
    "open_dashboard",
    "RunContext",
    "RunResult",
    "RunState",
    "Simulator",
    "run_simulation",
    "BarSource",
    "HttpBarSource",
    "parse_bar_rows",
    "PerformanceStats",
    "compute_performance_stats",
    "TickerStore",
    "read_cache_file",
    "write_cache_file",
]
