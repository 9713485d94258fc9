"""Run orchestration: load tickers, drive per-ticker pipelines, aggregate results."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .bars import BarSeries, TickerIdentity
from .config import SimulatorConfig
from .errors import CyclicDependency, DataUnavailable, DuplicateOrderId, UnknownRunnable
from .graph import DEFAULT_REGISTRY, IndicatorNode, RunnableGraph, RunnableRegistry, StrategyNode
from .ledger import OrderLedger
from .orders import Direction, Order, OrderIdSequence
from .sources import BarSource, HttpBarSource
from .statistics import PerformanceStats, compute_performance_stats
from .ticker_store import TickerStore

logger = logging.getLogger(__name__)

_FATAL_ERRORS = (DuplicateOrderId, CyclicDependency)


class RunState(str, Enum):
    IDLE = "Idle"
    INITIALIZING = "Initializing"
    RUNNING = "Running"
    FINALIZING = "Finalizing"
    CANCELLED = "Cancelled"


_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.IDLE: {RunState.INITIALIZING},
    RunState.INITIALIZING: {RunState.RUNNING, RunState.FINALIZING, RunState.IDLE},
    RunState.RUNNING: {RunState.FINALIZING, RunState.IDLE},
    RunState.FINALIZING: {RunState.IDLE, RunState.CANCELLED},
    RunState.CANCELLED: {RunState.INITIALIZING},
}


@dataclass
class RunContext:
    """Handles shared by every pipeline of one run."""

    config: SimulatorConfig
    ledger: OrderLedger
    store: TickerStore
    ids: OrderIdSequence
    cancel_event: threading.Event
    registry: RunnableRegistry = DEFAULT_REGISTRY

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class TickerRun:
    ticker: TickerIdentity
    series: BarSeries
    graph: RunnableGraph
    open_orders: list[Order] = field(default_factory=list)
    bars_processed: int = 0


@dataclass
class RunResult:
    outcome: str
    ledger: OrderLedger
    graphs: dict[TickerIdentity, RunnableGraph]
    series: dict[TickerIdentity, BarSeries]
    main_strategy: str
    overall: PerformanceStats
    strategy_stats: list[PerformanceStats]
    ticker_stats: dict[TickerIdentity, PerformanceStats]
    skipped_tickers: list[TickerIdentity]
    failed_tickers: list[TickerIdentity]
    started_at: datetime
    finished_at: datetime

    @property
    def cancelled(self) -> bool:
        return self.outcome == "cancelled"

    @property
    def completed(self) -> bool:
        return self.outcome == "completed"

    def main_orders(self) -> list[Order]:
        return [order for order in self.ledger.orders_for_strategy(self.main_strategy) if order.is_finished()]


def _chronological(orders: list[Order]) -> list[Order]:
    return sorted(orders, key=lambda order: order.sort_key)


class Simulator:
    def __init__(
        self,
        config: SimulatorConfig,
        source: BarSource | None = None,
        registry: RunnableRegistry | None = None,
        store: TickerStore | None = None,
    ):
        self.config = config
        self.source = source
        self.registry = registry if registry is not None else DEFAULT_REGISTRY
        self._store = store
        self._state = RunState.IDLE
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()
        self.context: RunContext | None = None

    @property
    def state(self) -> RunState:
        with self._state_lock:
            return self._state

    def _transition(self, new_state: RunState) -> None:
        with self._state_lock:
            if new_state not in _TRANSITIONS[self._state]:
                raise RuntimeError(f"Illegal simulator transition {self._state.value} -> {new_state.value}")
            logger.info("Simulator state %s -> %s", self._state.value, new_state.value)
            self._state = new_state

    def cancel(self) -> None:
        """Ask running pipelines to stop at their next bar."""
        logger.info("Cancellation requested")
        self._cancel.set()

    def _build_store(self) -> TickerStore:
        if self._store is not None:
            return self._store
        return TickerStore(
            self.config.cache_dir,
            self.source,
            data_type=self.config.data_type,
            num_bars_higher_timeframe=self.config.num_bars_higher_timeframe,
        )

    def run(self) -> RunResult:
        started_at = datetime.now(timezone.utc)
        self._transition(RunState.INITIALIZING)
        self._cancel.clear()
        context = RunContext(
            config=self.config,
            ledger=OrderLedger(self.config.min_required_orders),
            store=self._build_store(),
            ids=OrderIdSequence(),
            cancel_event=self._cancel,
            registry=self.registry,
        )
        self.context = context

        try:
            runs, skipped, failed = self._initialize(context)
            if context.cancelled:
                logger.info("Cancelled while loading tickers, skipping pipelines")
            else:
                self._transition(RunState.RUNNING)
                failed.extend(self._run_pipelines(context, runs))
            self._transition(RunState.FINALIZING)
            result = self._finalize(context, runs, skipped, failed, started_at)
        except Exception:
            with self._state_lock:
                logger.info("Simulator state %s -> %s", self._state.value, RunState.IDLE.value)
                self._state = RunState.IDLE
            raise

        self._transition(RunState.CANCELLED if result.cancelled else RunState.IDLE)
        logger.info(
            "Run %s: %s orders, %s skipped tickers, %s failed tickers",
            result.outcome,
            len(context.ledger),
            len(result.skipped_tickers),
            len(result.failed_tickers),
        )
        return result

    def _initialize(self, context: RunContext) -> tuple[list[TickerRun], list[TickerIdentity], list[TickerIdentity]]:
        config = context.config
        if config.main_strategy not in self.registry:
            raise UnknownRunnable(config.main_strategy)

        tickers = config.tickers()
        logger.info("Loading %s tickers (%s)", len(tickers), config.data_type)
        loaded: dict[TickerIdentity, BarSeries] = {}
        skipped: list[TickerIdentity] = []
        failed: list[TickerIdentity] = []

        if tickers:
            max_workers = min(config.max_workers, len(tickers))
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                future_map = {
                    pool.submit(self._load_ticker, context, ticker): ticker for ticker in tickers
                }
                for future in as_completed(future_map):
                    if context.cancelled:
                        # Queued loads see the flag and return without fetching.
                        break
                    ticker = future_map[future]
                    try:
                        series = future.result()
                    except DataUnavailable as exc:
                        logger.warning("[%s] Skipping ticker: %s", ticker, exc.reason)
                        skipped.append(ticker)
                        continue
                    except Exception:
                        logger.exception("[%s] Failed to load ticker", ticker)
                        failed.append(ticker)
                        continue
                    if series is None:
                        continue
                    if series.rows == 0:
                        logger.warning("[%s] Skipping ticker: no bars between start and end", ticker)
                        skipped.append(ticker)
                        continue
                    loaded[ticker] = series

        if context.cancelled:
            logger.info("Loaded %s of %s tickers before cancellation", len(loaded), len(tickers))
            return [], skipped, failed

        runs: list[TickerRun] = []
        for ticker in tickers:
            series = loaded.get(ticker)
            if series is None:
                continue
            graph = RunnableGraph(series, self.registry, context)
            try:
                graph.get(config.main_strategy)
            except UnknownRunnable as exc:
                logger.error("[%s] Cannot build strategy graph: %s", ticker, exc)
                failed.append(ticker)
                continue
            runs.append(TickerRun(ticker=ticker, series=series, graph=graph))
        logger.info("Initialized %s of %s tickers", len(runs), len(tickers))
        return runs, skipped, failed

    def _load_ticker(self, context: RunContext, ticker: TickerIdentity) -> BarSeries | None:
        if context.cancelled:
            return None
        return context.store.get(ticker, context.config.start, context.config.end)

    def _run_pipelines(self, context: RunContext, runs: list[TickerRun]) -> list[TickerIdentity]:
        if not runs:
            return []

        dates = context.store.trading_dates(context.config.start, context.config.end)
        failed: list[TickerIdentity] = []
        fatal: BaseException | None = None
        completed = 0
        max_workers = min(context.config.max_workers, len(runs))
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            future_map = {pool.submit(self._run_ticker, context, run, dates): run for run in runs}
            for future in as_completed(future_map):
                run = future_map[future]
                try:
                    future.result()
                except _FATAL_ERRORS as exc:
                    logger.error("[%s] Fatal error, aborting run: %s", run.ticker, exc)
                    if fatal is None:
                        fatal = exc
                    context.cancel_event.set()
                    continue
                except Exception:
                    logger.exception("[%s] Ticker pipeline failed", run.ticker)
                    failed.append(run.ticker)
                    continue
                completed += 1
                logger.info("Completed %s/%s tickers (%s)", completed, len(runs), run.ticker)

        if fatal is not None:
            raise fatal
        return failed

    def _run_ticker(self, context: RunContext, run: TickerRun, dates) -> None:
        try:
            for date_ns in dates:
                if context.cancelled:
                    logger.info("[%s] Cancelled after %s bars", run.ticker, run.bars_processed)
                    break
                bar = run.series.index_of(int(date_ns))
                if bar is None:
                    continue
                self._process_bar(context, run, bar)
                run.bars_processed += 1
        finally:
            # Unfinished orders are kept for output but never count as finished.
            for order in run.open_orders:
                context.ledger.add_order(order)
            run.open_orders = []

    def _process_bar(self, context: RunContext, run: TickerRun, bar: int) -> None:
        config = context.config
        still_open: list[Order] = []
        for order in run.open_orders:
            order.update(bar)
            if order.is_terminal():
                context.ledger.add_order(order)
            else:
                still_open.append(order)
        run.open_orders = still_open

        run.graph.on_bar_update(bar)

        if bar < config.num_bars_to_delay_start:
            return
        close = float(run.series.close[bar])
        for node in run.graph.strategy_nodes():
            if not node.places_orders:
                continue
            signal = node.signal_at(bar)
            if signal is None:
                continue
            if close < config.min_price_for_order:
                continue
            if signal.direction is Direction.SHORT and close < config.min_price_for_short:
                continue
            active = sum(1 for order in run.open_orders if order.strategy_name == node.name)
            if active >= config.max_concurrent_orders:
                continue

            order = Order(
                signal.direction,
                run.series,
                node.name,
                bar,
                config.order_settings(node.name),
                context.ids,
                start_statistics=run.graph.ledger_stats(node.name, signal.direction, bar),
                dependent_indicator_names=self._indicator_names_for(run.graph, node),
            )
            run.open_orders.append(order)
            logger.debug("[%s] Opened %s order %s at bar %s", run.ticker, node.name, order.id, bar)

    def _indicator_names_for(self, graph: RunnableGraph, node: StrategyNode) -> tuple[str, ...]:
        """Indicators a strategy reads, directly or through its dependent strategies."""
        names: list[str] = []
        pending = list(node.dependency_names)
        seen: set[str] = set()
        while pending:
            current = graph.get(pending.pop(0))
            if current.name in seen:
                continue
            seen.add(current.name)
            if isinstance(current, IndicatorNode):
                names.append(current.name)
            else:
                pending.extend(current.dependency_names)
        return tuple(names)

    def _finalize(
        self,
        context: RunContext,
        runs: list[TickerRun],
        skipped: list[TickerIdentity],
        failed: list[TickerIdentity],
        started_at: datetime,
    ) -> RunResult:
        config = context.config
        ledger = context.ledger
        main_name = self.registry.canonical(config.main_strategy)

        main_orders = _chronological(
            [order for order in ledger.orders_for_strategy(main_name) if order.is_finished()]
        )
        account_value = config.initial_account_balance
        for order in main_orders:
            account_value += order.gain - 2.0 * order.settings.commission
            order.account_value = account_value

        overall = compute_performance_stats(main_orders, main_name)
        strategy_stats: list[PerformanceStats] = []
        for name in ledger.strategy_names():
            orders = _chronological(ledger.orders_for_strategy(name))
            for direction in (Direction.LONG, Direction.SHORT):
                subset = [order for order in orders if order.direction is direction and order.is_finished()]
                if subset:
                    strategy_stats.append(compute_performance_stats(subset, name, direction))

        ticker_stats = {
            ticker: compute_performance_stats(_chronological(ledger.orders_for_ticker(ticker)), str(ticker))
            for ticker in ledger.tickers()
        }

        return RunResult(
            outcome="cancelled" if context.cancelled else "completed",
            ledger=ledger,
            graphs={run.ticker: run.graph for run in runs},
            series={run.ticker: run.series for run in runs},
            main_strategy=main_name,
            overall=overall,
            strategy_stats=strategy_stats,
            ticker_stats=ticker_stats,
            skipped_tickers=skipped,
            failed_tickers=failed,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )


def run_simulation(
    config: SimulatorConfig,
    source: BarSource | None = None,
    registry: RunnableRegistry | None = None,
    **kwargs: Any,
) -> RunResult:
    """Run once with an HTTP source built from the config unless one is given."""
    if source is None:
        source = HttpBarSource(config.remote_url, config.request_timeout)
    return Simulator(config, source=source, registry=registry, **kwargs).run()
