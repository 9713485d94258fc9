from __future__ import annotations

from types import SimpleNamespace

import pytest

from stocksim.config import SimulatorConfig
from stocksim.errors import CyclicDependency, UnknownRunnable
from stocksim.graph import (
    DEFAULT_REGISTRY,
    RunnableGraph,
    RunnableRegistry,
    StrategyNode,
    canonical_name,
    parse_runnable_name,
)
from stocksim.indicators import EmaCalc
from stocksim.ledger import OrderLedger
from stocksim.orders import Direction, OrderIdSequence

CROSSOVER_CLOSES = [10.0, 10.0, 10.0, 10.0, 9.0, 12.0]


def _run(graph: RunnableGraph, bars: int) -> None:
    for bar in range(bars):
        graph.on_bar_update(bar)


def test_runnable_names_carry_parameters() -> None:
    assert parse_runnable_name("BullBressertDss, 14") == ("BullBressertDss", ("14",))
    assert canonical_name(" Macd , 12, 26 ,9") == "Macd,12,26,9"
    with pytest.raises(ValueError):
        parse_runnable_name(",14")


def test_default_registry_knows_builtin_runnables() -> None:
    for name in ("Sma", "Rsi14", "Dtosc", "BestOfStrategies", "BullBressertDss,10", "BearRsiCrossover70"):
        assert name in DEFAULT_REGISTRY
    assert "NoSuchThing" not in DEFAULT_REGISTRY


def test_nodes_are_memoized_per_canonical_name(make_series) -> None:
    graph = RunnableGraph(make_series(CROSSOVER_CLOSES))

    assert graph.get("Rsi14") is graph.get("Rsi, 14")
    assert graph.get("Sma") is graph.get("Sma")
    assert len(graph.nodes) == 2


def test_dependencies_run_before_dependents(make_series) -> None:
    graph = RunnableGraph(make_series(CROSSOVER_CLOSES))

    graph.get("BullSmaCrossover,3")

    assert [node.name for node in graph.nodes] == ["Sma,3", "BullSmaCrossover,3"]


def test_unknown_runnable(make_series) -> None:
    graph = RunnableGraph(make_series(CROSSOVER_CLOSES))

    with pytest.raises(UnknownRunnable):
        graph.get("NoSuchIndicator")


def test_cyclic_dependencies_are_detected(make_series) -> None:
    registry = RunnableRegistry()

    @registry.register("A")
    def _a(name, params, context=None):
        return StrategyNode(name, Direction.LONG, lambda graph, bar: None, dependency_names=("B",))

    @registry.register("B")
    def _b(name, params, context=None):
        return StrategyNode(name, Direction.LONG, lambda graph, bar: None, dependency_names=("A",))

    graph = RunnableGraph(make_series(CROSSOVER_CLOSES), registry)

    with pytest.raises(CyclicDependency) as excinfo:
        graph.get("A")
    assert excinfo.value.path == ("A", "B", "A")
    assert graph.nodes == []


def test_registry_rejects_duplicate_names() -> None:
    registry = RunnableRegistry()
    registry.register("A")(lambda name, params, context=None: None)

    with pytest.raises(ValueError):
        registry.register("A")(lambda name, params, context=None: None)


def test_sma_crossover_found_on_expected_bar(make_series) -> None:
    graph = RunnableGraph(make_series(CROSSOVER_CLOSES))
    strategy = graph.strategy("BullSmaCrossover,3")

    _run(graph, len(CROSSOVER_CLOSES))

    assert strategy.was_found == [False, False, False, False, False, True]
    assert strategy.signal_at(5).direction is Direction.LONG
    assert graph.indicator("Sma,3").value(4) == pytest.approx(29.0 / 3.0)


def test_node_requested_mid_run_catches_up(make_series) -> None:
    graph = RunnableGraph(make_series(CROSSOVER_CLOSES))
    graph.get("Sma,3")
    _run(graph, 4)

    ema = graph.indicator("Ema,3")

    expected = EmaCalc(3)
    assert ema.series() == pytest.approx([expected.update(graph.series.bar(i))[0] for i in range(4)])
    graph.on_bar_update(4)
    assert len(ema.series()) == 5


def test_indicator_rejects_skipped_bars(make_series) -> None:
    graph = RunnableGraph(make_series(CROSSOVER_CLOSES))
    node = graph.indicator("Sma")

    with pytest.raises(RuntimeError):
        node.on_bar_update(3)


def test_kind_checked_accessors(make_series) -> None:
    graph = RunnableGraph(make_series(CROSSOVER_CLOSES))

    with pytest.raises(TypeError):
        graph.indicator("BullSmaCrossover")
    with pytest.raises(TypeError):
        graph.strategy("Sma")


def test_graph_without_run_context_uses_neutral_stats(make_series) -> None:
    graph = RunnableGraph(make_series(CROSSOVER_CLOSES))

    assert graph.higher_direction(0) is None
    assert graph.ledger_stats("BullSmaCrossover", Direction.LONG, 3).is_neutral


def _best_of_graph(series, ledger: OrderLedger, percent_for_buy: float = 50.0) -> RunnableGraph:
    config = SimulatorConfig(
        main_strategy_dependents=["BullSmaCrossover,3"],
        percent_for_buy=percent_for_buy,
        min_required_orders=0,
    )
    return RunnableGraph(series, context=SimpleNamespace(config=config, ledger=ledger))


def test_best_of_skips_dependents_without_history(make_series) -> None:
    graph = _best_of_graph(make_series(CROSSOVER_CLOSES), OrderLedger(min_required_orders=0))
    best = graph.strategy("BestOfStrategies")

    _run(graph, len(CROSSOVER_CLOSES))

    assert graph.strategy("BullSmaCrossover,3").found_at(5)
    assert not any(best.was_found)


def test_best_of_picks_dependent_with_winning_history(make_series, finished_order) -> None:
    series = make_series(CROSSOVER_CLOSES)
    ids = OrderIdSequence()
    ledger = OrderLedger(min_required_orders=0)
    ledger.add_order(finished_order(series, ids, "BullSmaCrossover,3", gain=50.0, buy_bar=1, sell_bar=2))
    ledger.add_order(finished_order(series, ids, "BullSmaCrossover,3", gain=20.0, buy_bar=2, sell_bar=3))
    graph = _best_of_graph(series, ledger)
    best = graph.strategy("BestOfStrategies")

    _run(graph, len(CROSSOVER_CLOSES))

    signal = best.signal_at(5)
    assert signal is not None
    assert signal.direction is Direction.LONG
    assert signal.detail == "BullSmaCrossover,3"
    assert signal.score == 100.0
    assert best.was_found.count(True) == 1


def test_best_of_requires_percent_for_buy(make_series, finished_order) -> None:
    series = make_series(CROSSOVER_CLOSES)
    ids = OrderIdSequence()
    ledger = OrderLedger(min_required_orders=0)
    ledger.add_order(finished_order(series, ids, "BullSmaCrossover,3", gain=50.0, buy_bar=1, sell_bar=2))
    ledger.add_order(finished_order(series, ids, "BullSmaCrossover,3", gain=-20.0, buy_bar=2, sell_bar=3))
    graph = _best_of_graph(series, ledger, percent_for_buy=60.0)

    _run(graph, len(CROSSOVER_CLOSES))

    assert not any(graph.strategy("BestOfStrategies").was_found)
