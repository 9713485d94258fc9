from __future__ import annotations

import math
import threading

import pandas as pd
import pytest

from stocksim.bars import Bar, TickerIdentity, build_series
from stocksim.errors import DataUnavailable
from stocksim.orders import Direction, Order, OrderIdSequence, OrderSettings, OrderStatus


def business_days(start: str, count: int) -> list[int]:
    return [int(stamp.value) for stamp in pd.bdate_range(start=start, periods=count, tz="UTC")]


def wave_bars(count: int, start: str = "2019-01-01", phase: float = 0.0, base: float = 50.0) -> list[Bar]:
    """Deterministic oscillating price path with a gentle upward drift."""
    times = business_days(start, count)
    bars: list[Bar] = []
    prev_close = base
    for i, time_ns in enumerate(times):
        close = base + 8.0 * math.sin(i / 6.0 + phase) + 0.03 * i
        open_ = prev_close
        high = max(open_, close) + 0.6
        low = min(open_, close) - 0.6
        bars.append(Bar(time_ns=time_ns, open=open_, high=high, low=low, close=close, volume=1000.0 + i))
        prev_close = close
    return bars


class FakeSource:
    """In-memory bar source keyed by ticker string; counts fetch calls."""

    def __init__(self, bars_by_ticker: dict[str, list[Bar]], failing: set[str] | None = None):
        self.bars_by_ticker = {str(TickerIdentity.from_raw(key)): value for key, value in bars_by_ticker.items()}
        self.failing = {str(TickerIdentity.from_raw(key)) for key in (failing or set())}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, ticker, data_type, start_ns, end_ns):
        key = str(ticker)
        with self._lock:
            self.calls.append(key)
        if key in self.failing:
            raise DataUnavailable(ticker, "remote refused")
        return list(self.bars_by_ticker.get(key, []))


@pytest.fixture
def make_series():
    def _make(
        close,
        open=None,
        high=None,
        low=None,
        ticker: str = "TEST:NASDAQ",
        start: str = "2020-01-06",
        data_type: str = "daily",
    ):
        count = len(close)
        open = open if open is not None else list(close)
        high = high if high is not None else [max(o, c) for o, c in zip(open, close)]
        low = low if low is not None else [min(o, c) for o, c in zip(open, close)]
        return build_series(
            TickerIdentity.parse(ticker),
            data_type,
            time_ns=business_days(start, count),
            open=open,
            high=high,
            low=low,
            close=close,
            volume=[100.0] * count,
        )

    return _make


@pytest.fixture
def finished_order():
    """Build an order and force it into a finished state with a given gain."""

    def _make(
        series,
        ids: OrderIdSequence,
        strategy: str = "Strategy",
        direction: Direction = Direction.LONG,
        gain: float = 10.0,
        buy_bar: int = 1,
        sell_bar: int = 2,
        status: OrderStatus | None = None,
    ) -> Order:
        order = Order(direction, series, strategy, max(0, buy_bar - 1), OrderSettings(), ids)
        order.buy_bar = buy_bar
        order.sell_bar = sell_bar
        order.buy_date = series.date_at(buy_bar)
        order.sell_date = series.date_at(sell_bar)
        order.buy_price = 10.0
        order.num_shares = 10
        order.sell_price = 10.0 + gain / (10 * direction.value)
        order.gain = gain
        order.status = status or (OrderStatus.PROFIT_TARGET if gain > 0 else OrderStatus.STOP_TARGET)
        return order

    return _make


@pytest.fixture
def wave_source():
    return FakeSource(
        {
            "AAA:NASDAQ": wave_bars(320, phase=0.0),
            "BBB:NYSE": wave_bars(320, phase=1.7, base=40.0),
        }
    )
