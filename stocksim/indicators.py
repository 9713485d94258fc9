"""Incremental indicator calculators and the indicator nodes built on them."""

from __future__ import annotations

from collections import deque
from collections.abc import Sequence
from typing import Any

import numpy as np

from .bars import Bar
from .graph import IndicatorNode, float_param, int_param, register, registry_alias


class _RollingWindow:
    """Fixed-size window with a running sum; averages what it holds before it is full."""

    def __init__(self, period: int) -> None:
        if period <= 0:
            raise ValueError(f"period must be positive, got {period}")
        self.period = int(period)
        self.values: deque[float] = deque(maxlen=self.period)
        self.total = 0.0

    def push(self, value: float) -> float:
        if len(self.values) == self.period:
            self.total -= self.values[0]
        self.values.append(float(value))
        self.total += float(value)
        return self.total / len(self.values)

    @property
    def full(self) -> bool:
        return len(self.values) == self.period

    def highest(self) -> float:
        return max(self.values)

    def lowest(self) -> float:
        return min(self.values)


class _Ema:
    def __init__(self, period: int) -> None:
        if period <= 0:
            raise ValueError(f"period must be positive, got {period}")
        self.alpha = 2.0 / (int(period) + 1.0)
        self.value: float | None = None

    def push(self, value: float) -> float:
        if self.value is None:
            self.value = float(value)
        else:
            self.value = self.value + self.alpha * (float(value) - self.value)
        return self.value


class _Wilder:
    """Simple average for the first `period` samples, Wilder smoothing afterwards."""

    def __init__(self, period: int) -> None:
        if period <= 0:
            raise ValueError(f"period must be positive, got {period}")
        self.period = int(period)
        self.count = 0
        self.value = 0.0

    def push(self, value: float) -> float:
        self.count += 1
        if self.count <= self.period:
            self.value += (float(value) - self.value) / self.count
        else:
            self.value = (self.value * (self.period - 1) + float(value)) / self.period
        return self.value


def _stochastic(value: float, window: _RollingWindow, flat: float = 50.0) -> float:
    highest = window.highest()
    lowest = window.lowest()
    if highest == lowest:
        return flat
    return 100.0 * (value - lowest) / (highest - lowest)


class SmaCalc:
    outputs = ("Avg",)

    def __init__(self, period: int = 20, source: str = "close") -> None:
        self.source = source
        self._window = _RollingWindow(period)

    def update(self, bar: Bar) -> tuple[float, ...]:
        return (self._window.push(getattr(bar, self.source)),)


class EmaCalc:
    outputs = ("Avg",)

    def __init__(self, period: int = 14, source: str = "close") -> None:
        self.source = source
        self._ema = _Ema(period)

    def update(self, bar: Bar) -> tuple[float, ...]:
        return (self._ema.push(getattr(bar, self.source)),)


class RsiCalc:
    outputs = ("Value",)

    def __init__(self, period: int = 14) -> None:
        self._gain = _Wilder(period)
        self._loss = _Wilder(period)
        self._prev_close: float | None = None

    def push(self, close: float) -> float:
        prev = self._prev_close
        self._prev_close = float(close)
        if prev is None:
            return 50.0
        change = float(close) - prev
        avg_gain = self._gain.push(max(change, 0.0))
        avg_loss = self._loss.push(max(-change, 0.0))
        if avg_loss == 0.0:
            return 50.0 if avg_gain == 0.0 else 100.0
        return 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)

    def update(self, bar: Bar) -> tuple[float, ...]:
        return (self.push(bar.close),)


class AtrCalc:
    outputs = ("Value",)

    def __init__(self, period: int = 14) -> None:
        self._avg = _Wilder(period)
        self._prev_close: float | None = None

    def update(self, bar: Bar) -> tuple[float, ...]:
        if self._prev_close is None:
            true_range = bar.high - bar.low
        else:
            true_range = max(bar.high - bar.low, abs(bar.high - self._prev_close), abs(bar.low - self._prev_close))
        self._prev_close = bar.close
        return (self._avg.push(true_range),)


class MacdCalc:
    outputs = ("Value", "Avg", "Diff")

    def __init__(self, fast: int = 12, slow: int = 26, smooth: int = 9) -> None:
        self._fast = _Ema(fast)
        self._slow = _Ema(slow)
        self._signal = _Ema(smooth)

    def update(self, bar: Bar) -> tuple[float, ...]:
        value = self._fast.push(bar.close) - self._slow.push(bar.close)
        avg = self._signal.push(value)
        return (value, avg, value - avg)


class BollingerCalc:
    outputs = ("Upper", "Middle", "Lower")

    def __init__(self, period: int = 20, num_std: float = 2.0) -> None:
        self.num_std = float(num_std)
        self._window = _RollingWindow(period)

    def update(self, bar: Bar) -> tuple[float, ...]:
        middle = self._window.push(bar.close)
        std = float(np.std(np.fromiter(self._window.values, dtype=np.float64)))
        return (middle + self.num_std * std, middle, middle - self.num_std * std)


class KeltnerCalc:
    outputs = ("Upper", "Midline", "Lower")

    def __init__(self, period: int = 10, offset_multiplier: float = 1.5) -> None:
        self.offset_multiplier = float(offset_multiplier)
        self._mid = _RollingWindow(period)
        self._range = _RollingWindow(period)

    def update(self, bar: Bar) -> tuple[float, ...]:
        midline = self._mid.push(bar.typical)
        offset = self._range.push(bar.high - bar.low) * self.offset_multiplier
        return (midline + offset, midline, midline - offset)


class MomentumCalc:
    outputs = ("Value",)

    def __init__(self, period: int = 14) -> None:
        self._closes: deque[float] = deque(maxlen=int(period) + 1)

    def update(self, bar: Bar) -> tuple[float, ...]:
        self._closes.append(bar.close)
        return (bar.close - self._closes[0],)


class StochasticsFastCalc:
    outputs = ("K", "D")

    def __init__(self, period_k: int = 14, period_d: int = 3) -> None:
        self._highs = _RollingWindow(period_k)
        self._lows = _RollingWindow(period_k)
        self._d = _RollingWindow(period_d)

    def update(self, bar: Bar) -> tuple[float, ...]:
        self._highs.push(bar.high)
        self._lows.push(bar.low)
        highest = self._highs.highest()
        lowest = self._lows.lowest()
        k = 50.0 if highest == lowest else 100.0 * (bar.close - lowest) / (highest - lowest)
        return (k, self._d.push(k))


class WilliamsRCalc:
    outputs = ("Value",)

    def __init__(self, period: int = 14) -> None:
        self._highs = _RollingWindow(period)
        self._lows = _RollingWindow(period)

    def update(self, bar: Bar) -> tuple[float, ...]:
        self._highs.push(bar.high)
        self._lows.push(bar.low)
        highest = self._highs.highest()
        lowest = self._lows.lowest()
        if highest == lowest:
            return (-50.0,)
        return (-100.0 * (highest - bar.close) / (highest - lowest),)


class CciCalc:
    outputs = ("Value",)

    def __init__(self, period: int = 14) -> None:
        self._window = _RollingWindow(period)

    def update(self, bar: Bar) -> tuple[float, ...]:
        mean = self._window.push(bar.typical)
        deviation = sum(abs(value - mean) for value in self._window.values) / len(self._window.values)
        if deviation == 0.0:
            return (0.0,)
        return ((bar.typical - mean) / (0.015 * deviation),)


class DtoscCalc:
    """DT oscillator: a stochastic of RSI smoothed into SK and SD lines."""

    outputs = ("SK", "SD")

    def __init__(self, period_rsi: int = 13, period_stoch: int = 8, period_sk: int = 5, period_sd: int = 3) -> None:
        self._rsi = RsiCalc(period_rsi)
        self._rsi_window = _RollingWindow(period_stoch)
        self._sk = _RollingWindow(period_sk)
        self._sd = _RollingWindow(period_sd)

    def update(self, bar: Bar) -> tuple[float, ...]:
        rsi = self._rsi.push(bar.close)
        self._rsi_window.push(rsi)
        stoch = _stochastic(rsi, self._rsi_window)
        sk = self._sk.push(stoch)
        return (sk, self._sd.push(sk))


class BressertDssCalc:
    """Bressert double smoothed stochastic."""

    outputs = ("Value",)

    def __init__(self, period: int = 10, smooth: int = 3) -> None:
        self._highs = _RollingWindow(period)
        self._lows = _RollingWindow(period)
        self._first = _Ema(smooth)
        self._first_window = _RollingWindow(period)
        self._second = _Ema(smooth)

    def update(self, bar: Bar) -> tuple[float, ...]:
        self._highs.push(bar.high)
        self._lows.push(bar.low)
        highest = self._highs.highest()
        lowest = self._lows.lowest()
        raw = 50.0 if highest == lowest else 100.0 * (bar.close - lowest) / (highest - lowest)
        first = self._first.push(raw)
        self._first_window.push(first)
        return (self._second.push(_stochastic(first, self._first_window)),)


def is_valley(values: Sequence[float], i: int) -> bool:
    if i < 2 or i >= len(values):
        return False
    return values[i - 2] > values[i - 1] < values[i]


def is_peak(values: Sequence[float], i: int) -> bool:
    if i < 2 or i >= len(values):
        return False
    return values[i - 2] < values[i - 1] > values[i]


def _value_at(series: Sequence[float] | float, i: int) -> float:
    if isinstance(series, (int, float)):
        return float(series)
    return float(series[i])


def crossed_above(a: Sequence[float], b: Sequence[float] | float, i: int) -> bool:
    if i < 1 or i >= len(a):
        return False
    return _value_at(a, i - 1) <= _value_at(b, i - 1) and _value_at(a, i) > _value_at(b, i)


def crossed_below(a: Sequence[float], b: Sequence[float] | float, i: int) -> bool:
    if i < 1 or i >= len(a):
        return False
    return _value_at(a, i - 1) >= _value_at(b, i - 1) and _value_at(a, i) < _value_at(b, i)


def is_below(values: Sequence[float], level: float, i: int, lookback: int) -> bool:
    """True if any of the last `lookback` values up to i is under level."""
    start = max(0, i - int(lookback) + 1)
    return any(float(values[j]) < level for j in range(start, i + 1))


def is_above(values: Sequence[float], level: float, i: int, lookback: int) -> bool:
    start = max(0, i - int(lookback) + 1)
    return any(float(values[j]) > level for j in range(start, i + 1))


@register("Sma")
def _sma(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(name, SmaCalc(int_param(params, 0, 20)))


@register("Ema")
def _ema(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(name, EmaCalc(int_param(params, 0, 14)))


@register("Rsi")
def _rsi(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(name, RsiCalc(int_param(params, 0, 14)))


@register("Atr")
def _atr(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(name, AtrCalc(int_param(params, 0, 14)))


@register("Macd")
def _macd(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(
        name,
        MacdCalc(int_param(params, 0, 12), int_param(params, 1, 26), int_param(params, 2, 9)),
    )


@register("Bollinger")
def _bollinger(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(name, BollingerCalc(int_param(params, 0, 20), float_param(params, 1, 2.0)))


@register("KeltnerChannel")
def _keltner(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(name, KeltnerCalc(int_param(params, 0, 10), float_param(params, 1, 1.5)))


@register("Momentum")
def _momentum(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(name, MomentumCalc(int_param(params, 0, 14)))


@register("StochasticsFast")
def _stochastics_fast(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(name, StochasticsFastCalc(int_param(params, 0, 14), int_param(params, 1, 3)))


@register("WilliamsR")
def _williams_r(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(name, WilliamsRCalc(int_param(params, 0, 14)))


@register("Cci")
def _cci(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(name, CciCalc(int_param(params, 0, 14)))


@register("Dtosc")
def _dtosc(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(
        name,
        DtoscCalc(int_param(params, 0, 13), int_param(params, 1, 8), int_param(params, 2, 5), int_param(params, 3, 3)),
    )


@register("BressertDss")
def _bressert_dss(name: str, params: tuple[str, ...], context: Any = None) -> IndicatorNode:
    return IndicatorNode(name, BressertDssCalc(int_param(params, 0, 10), int_param(params, 1, 3)))


registry_alias("Rsi14", "Rsi,14")
registry_alias("Momentum14", "Momentum,14")
registry_alias("Cci14", "Cci,14")
