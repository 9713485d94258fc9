"""Registered trading strategies, including the main best-of strategy."""

from __future__ import annotations

import logging
from typing import Any

from .graph import RunnableGraph, Signal, StrategyNode, int_param, register
from .indicators import crossed_above, crossed_below, is_above, is_below, is_peak, is_valley
from .orders import Direction

logger = logging.getLogger(__name__)

DEFAULT_PERCENT_FOR_BUY = 50.0


def _crossover_strategy(
    name: str,
    direction: Direction,
    indicator_name: str,
    output: str,
    level: float | None = None,
    other_output: str | None = None,
) -> StrategyNode:
    """A strategy found when an indicator output crosses a level or another output."""

    def step(graph: RunnableGraph, bar: int) -> Signal | None:
        indicator = graph.indicator(indicator_name)
        values = indicator.series(output)
        target = indicator.series(other_output) if other_output else level
        crossed = crossed_above if direction is Direction.LONG else crossed_below
        return Signal(direction) if crossed(values, target, bar) else None

    return StrategyNode(name, direction, step, dependency_names=(indicator_name,))


@register("BullSmaCrossover")
def _bull_sma_crossover(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    sma_name = f"Sma,{int_param(params, 0, 20)}"

    def step(graph: RunnableGraph, bar: int) -> Signal | None:
        sma = graph.indicator(sma_name).series()
        return Signal(Direction.LONG) if crossed_above(graph.series.close, sma, bar) else None

    return StrategyNode(name, Direction.LONG, step, dependency_names=(sma_name,))


@register("BullMacdCrossover")
def _bull_macd_crossover(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    return _crossover_strategy(name, Direction.LONG, "Macd", "Value", other_output="Avg")


@register("BearMacdCrossover")
def _bear_macd_crossover(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    return _crossover_strategy(name, Direction.SHORT, "Macd", "Value", other_output="Avg")


@register("BullRsiCrossover30")
def _bull_rsi_crossover(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    return _crossover_strategy(name, Direction.LONG, "Rsi14", "Value", level=30.0)


@register("BearRsiCrossover70")
def _bear_rsi_crossover(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    return _crossover_strategy(name, Direction.SHORT, "Rsi14", "Value", level=70.0)


@register("BullMomentumCrossover")
def _bull_momentum_crossover(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    return _crossover_strategy(name, Direction.LONG, "Momentum14", "Value", level=0.0)


@register("BullCciCrossover")
def _bull_cci_crossover(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    return _crossover_strategy(name, Direction.LONG, "Cci14", "Value", level=-100.0)


@register("BullWilliamsRCrossover")
def _bull_williams_r_crossover(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    return _crossover_strategy(name, Direction.LONG, "WilliamsR", "Value", level=-80.0)


@register("BullStochasticsFastCrossover")
def _bull_stochastics_fast_crossover(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    def step(graph: RunnableGraph, bar: int) -> Signal | None:
        stoch = graph.indicator("StochasticsFast")
        k = stoch.series("K")
        if crossed_above(k, stoch.series("D"), bar) and k[bar] < 20.0:
            return Signal(Direction.LONG)
        return None

    return StrategyNode(name, Direction.LONG, step, dependency_names=("StochasticsFast",))


@register("BullKeltnerCloseAbove")
def _bull_keltner_close_above(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    def step(graph: RunnableGraph, bar: int) -> Signal | None:
        upper = graph.indicator("KeltnerChannel").series("Upper")
        return Signal(Direction.LONG) if crossed_above(graph.series.close, upper, bar) else None

    return StrategyNode(name, Direction.LONG, step, dependency_names=("KeltnerChannel",))


@register("BullBollingerExtended")
def _bull_bollinger_extended(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    def step(graph: RunnableGraph, bar: int) -> Signal | None:
        if bar < 1:
            return None
        lower = graph.indicator("Bollinger").series("Lower")
        close = graph.series.close
        if close[bar - 1] < lower[bar - 1] and close[bar] >= lower[bar]:
            return Signal(Direction.LONG)
        return None

    return StrategyNode(name, Direction.LONG, step, dependency_names=("Bollinger",))


@register("BullBressertDss")
def _bull_bressert_dss(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    dss_name = f"BressertDss,{int_param(params, 0, 10)}"

    def step(graph: RunnableGraph, bar: int) -> Signal | None:
        values = graph.indicator(dss_name).series()
        # Setup bar: the DSS dipped under the buy line and turned up.
        if bar >= 2 and is_below(values, 40.0, bar, 2) and is_valley(values, bar):
            return Signal(Direction.LONG)
        return None

    return StrategyNode(name, Direction.LONG, step, dependency_names=(dss_name,))


@register("BearBressertDss")
def _bear_bressert_dss(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    dss_name = f"BressertDss,{int_param(params, 0, 10)}"

    def step(graph: RunnableGraph, bar: int) -> Signal | None:
        values = graph.indicator(dss_name).series()
        if bar >= 2 and is_above(values, 60.0, bar, 2) and is_peak(values, bar):
            return Signal(Direction.SHORT)
        return None

    return StrategyNode(name, Direction.SHORT, step, dependency_names=(dss_name,))


@register("BestOfStrategies")
def _best_of_strategies(name: str, params: tuple[str, ...], context: Any = None) -> StrategyNode:
    """Pick the found dependent with the best recent win rate on this ticker."""
    config = getattr(context, "config", None)
    dependents = tuple(config.main_strategy_dependents) if config is not None else ()
    percent_for_buy = float(config.percent_for_buy) if config is not None else DEFAULT_PERCENT_FOR_BUY

    def step(graph: RunnableGraph, bar: int) -> Signal | None:
        higher = graph.higher_direction(bar)
        best: tuple[float, StrategyNode, Signal] | None = None
        for dependent_name in dependents:
            dependent = graph.strategy(dependent_name)
            signal = dependent.signal_at(bar)
            if signal is None:
                continue
            if higher is not None and signal.direction is not higher:
                continue
            stats = graph.ledger_stats(dependent.name, signal.direction, bar)
            if stats.is_neutral:
                continue
            if best is None or stats.win_percent > best[0]:
                best = (stats.win_percent, dependent, signal)

        if best is None or best[0] < percent_for_buy:
            return None
        win_percent, dependent, signal = best
        return Signal(signal.direction, score=win_percent, detail=dependent.name)

    # Direction varies per bar; the signal carries the chosen one.
    return StrategyNode(name, Direction.LONG, step, dependency_names=dependents)
