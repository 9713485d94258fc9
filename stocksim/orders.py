"""Order state machine: fill, profit/stop exits and length limits on each bar."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from core.market_metadata import round_price

from .bars import BarSeries, format_bar_date, datetime_to_ns

if TYPE_CHECKING:
    from .statistics import PerformanceStats


class Direction(int, Enum):
    LONG = 1
    SHORT = -1

    @classmethod
    def from_value(cls, value: Any) -> "Direction":
        if isinstance(value, Direction):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if value > 0:
                return cls.LONG
            if value < 0:
                return cls.SHORT
            raise ValueError(f"Unsupported direction: {value}")
        key = str(value).strip().lower()
        if key in ("long", "buy", "bull", "1", "+1"):
            return cls.LONG
        if key in ("short", "sell", "bear", "-1"):
            return cls.SHORT
        raise ValueError(f"Unsupported direction: {value}")

    @property
    def label(self) -> str:
        return "Long" if self is Direction.LONG else "Short"


class OrderStatus(str, Enum):
    OPEN = "Open"
    FILLED = "Filled"
    PROFIT_TARGET = "ProfitTarget"
    STOP_TARGET = "StopTarget"
    LENGTH_EXCEEDED = "LengthExceeded"
    CANCELLED = "Cancelled"

    @property
    def is_finished(self) -> bool:
        return self in (OrderStatus.PROFIT_TARGET, OrderStatus.STOP_TARGET, OrderStatus.LENGTH_EXCEEDED)


class EntryMode(str, Enum):
    NEXT_OPEN = "next_open"
    LIMIT = "limit"
    BREAKOUT = "breakout"

    @classmethod
    def from_value(cls, value: Any) -> "EntryMode":
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unsupported entry_mode: {value}") from exc


@dataclass(frozen=True)
class OrderSettings:
    size_of_order: float = 10_000.0
    profit_target: float = 0.05
    stop_target: float = 0.05
    max_bars_order_open: int = 5
    entry_mode: EntryMode = EntryMode.NEXT_OPEN
    max_bars_limit_order_fill: int = 2
    tick_size: float = 0.01
    commission: float = 4.95

    def with_overrides(self, overrides: dict[str, Any] | None) -> "OrderSettings":
        if not overrides:
            return self
        allowed = {"size_of_order", "profit_target", "stop_target", "max_bars_order_open"}
        unknown = set(overrides) - allowed
        if unknown:
            raise ValueError(f"Unsupported strategy override keys: {sorted(unknown)}")
        return replace(self, **overrides)


class OrderIdSequence:
    """Thread-safe id source owned by one run; ids start at 1 and are never reused."""

    def __init__(self, start: int = 1) -> None:
        self._lock = threading.Lock()
        self._next = int(start)

    def next(self) -> int:
        with self._lock:
            value = self._next
            self._next += 1
            return value

    @property
    def last(self) -> int:
        with self._lock:
            return self._next - 1


class Order:
    """One simulated trade, advanced bar by bar until it reaches a terminal status."""

    def __init__(
        self,
        direction: Direction | str | int,
        series: BarSeries,
        strategy_name: str,
        opened_bar: int,
        settings: OrderSettings,
        ids: OrderIdSequence,
        start_statistics: PerformanceStats | None = None,
        dependent_indicator_names: tuple[str, ...] | list[str] = (),
    ) -> None:
        if not 0 <= int(opened_bar) < series.rows:
            raise ValueError(f"opened_bar {opened_bar} outside series of {series.rows} bars")
        self.id = ids.next()
        self.direction = Direction.from_value(direction)
        self.series = series
        self.ticker = series.ticker
        self.strategy_name = strategy_name
        self.settings = settings
        self.opened_bar = int(opened_bar)
        self.opened_date = series.date_at(self.opened_bar)
        self.limit_price = float(series.close[self.opened_bar])
        self.start_statistics = start_statistics
        self.dependent_indicator_names = tuple(dependent_indicator_names)

        self.status = OrderStatus.OPEN
        self.buy_price = 0.0
        self.buy_bar: int | None = None
        self.buy_date: datetime | None = None
        self.sell_price = 0.0
        self.sell_bar: int | None = None
        self.sell_date: datetime | None = None
        self.num_shares = 0
        self.profit_target_price = 0.0
        self.stop_price = 0.0
        self.value = 0.0
        self.gain = 0.0
        self.account_value = 0.0

    def __repr__(self) -> str:
        return (
            f"Order(id={self.id}, ticker={self.ticker}, strategy={self.strategy_name!r}, "
            f"direction={self.direction.label}, status={self.status.value})"
        )

    def is_finished(self) -> bool:
        return self.status.is_finished

    def is_terminal(self) -> bool:
        return self.status.is_finished or self.status == OrderStatus.CANCELLED

    @property
    def is_open(self) -> bool:
        return not self.is_terminal()

    def update(self, bar: int) -> None:
        """Advance the order to `bar`; terminal orders ignore further updates."""
        if self.is_terminal() or bar <= self.opened_bar or bar >= self.series.rows:
            return

        if self.status == OrderStatus.OPEN:
            price = self._entry_price(bar)
            if self.status == OrderStatus.CANCELLED:
                return
            if price > 0.0:
                self._fill(price, bar)

        if self.status == OrderStatus.FILLED:
            self.value = self.num_shares * float(self.series.close[bar])
            if self.direction is Direction.LONG:
                self._check_long_exit(bar)
            else:
                self._check_short_exit(bar)

            if self.status == OrderStatus.FILLED and bar - int(self.buy_bar) >= self.settings.max_bars_order_open:
                self._finish(float(self.series.close[bar]), bar, OrderStatus.LENGTH_EXCEEDED)

    def _entry_price(self, bar: int) -> float:
        series = self.series
        open_ = float(series.open[bar])
        high = float(series.high[bar])
        low = float(series.low[bar])
        close = float(series.close[bar])
        mode = self.settings.entry_mode

        if mode == EntryMode.NEXT_OPEN:
            return open_

        if bar - self.opened_bar >= self.settings.max_bars_limit_order_fill:
            self.status = OrderStatus.CANCELLED
            return 0.0

        if mode == EntryMode.LIMIT:
            limit = self.limit_price
            if self.direction is Direction.LONG:
                if open_ >= limit:
                    return open_
                if max(close, high) > limit:
                    return limit
            else:
                if open_ <= limit:
                    return open_
                if min(close, low) < limit:
                    return limit
            return 0.0

        # One bar trailing high/low breakout.
        if self.direction is Direction.LONG:
            entry = float(series.high[bar - 1]) + self.settings.tick_size
            if open_ >= entry:
                return open_
            if high >= entry:
                return entry
        else:
            entry = float(series.low[bar - 1]) - self.settings.tick_size
            if open_ <= entry:
                return open_
            if low <= entry:
                return entry
        return 0.0

    def _fill(self, price: float, bar: int) -> None:
        self.buy_price = float(price)
        self.buy_bar = bar
        self.buy_date = self.series.date_at(bar)
        self.status = OrderStatus.FILLED
        self.num_shares = int(math.floor(self.settings.size_of_order / self.buy_price)) if self.buy_price > 0.0 else 0
        self.value = self.num_shares * self.buy_price

        direction = float(self.direction.value)
        self.profit_target_price = self.buy_price + self.buy_price * self.settings.profit_target * direction
        self.stop_price = self.buy_price - self.buy_price * self.settings.stop_target * direction

    def _check_long_exit(self, bar: int) -> None:
        open_ = float(self.series.open[bar])
        high = float(self.series.high[bar])
        low = float(self.series.low[bar])
        close = float(self.series.close[bar])

        # Open gaps are checked before intrabar touches.
        if open_ >= self.profit_target_price:
            self._finish(open_, bar, OrderStatus.PROFIT_TARGET)
        elif max(close, high) >= self.profit_target_price:
            self._finish(self.profit_target_price, bar, OrderStatus.PROFIT_TARGET)
        elif open_ <= self.stop_price:
            self._finish(open_, bar, OrderStatus.STOP_TARGET)
        elif min(close, low) <= self.stop_price:
            self._finish(self.stop_price, bar, OrderStatus.STOP_TARGET)

    def _check_short_exit(self, bar: int) -> None:
        open_ = float(self.series.open[bar])
        high = float(self.series.high[bar])
        low = float(self.series.low[bar])
        close = float(self.series.close[bar])

        if open_ <= self.profit_target_price:
            self._finish(open_, bar, OrderStatus.PROFIT_TARGET)
        elif min(close, low) <= self.profit_target_price:
            self._finish(self.profit_target_price, bar, OrderStatus.PROFIT_TARGET)
        elif open_ >= self.stop_price:
            self._finish(open_, bar, OrderStatus.STOP_TARGET)
        elif max(close, high) >= self.stop_price:
            self._finish(self.stop_price, bar, OrderStatus.STOP_TARGET)

    def _finish(self, price: float, bar: int, status: OrderStatus) -> None:
        # No price means the data ran out; the order then gains nothing.
        self.sell_price = float(price) if price > 0.0 else self.buy_price
        self.sell_bar = bar
        self.sell_date = self.series.date_at(bar)
        self.status = status
        self.value = self.num_shares * self.sell_price
        self.gain = (self.value - self.num_shares * self.buy_price) * float(self.direction.value)

    @property
    def length(self) -> int:
        if self.buy_bar is None or self.sell_bar is None:
            return 0
        return self.sell_bar - self.buy_bar

    @property
    def sort_key(self) -> tuple[int, int, str, str, int]:
        # Ids depend on thread scheduling, so they only break the last tie.
        sell = datetime_to_ns(self.sell_date) if self.sell_date is not None else 0
        buy = datetime_to_ns(self.buy_date) if self.buy_date is not None else 0
        return (sell, buy, self.ticker.key, self.strategy_name, self.id)

    def _format_date(self, value: datetime | None) -> str | None:
        if value is None:
            return None
        return format_bar_date(datetime_to_ns(value), self.series.intraday)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ticker": str(self.ticker),
            "strategyName": self.strategy_name,
            "orderType": self.direction.label,
            "orderStatus": self.status.value,
            "buyPrice": round_price(self.buy_price),
            "sellPrice": round_price(self.sell_price),
            "buyDate": self._format_date(self.buy_date),
            "sellDate": self._format_date(self.sell_date),
            "numShares": self.num_shares,
            "gain": round_price(self.gain),
            "accountValue": round_price(self.account_value),
        }

    def to_record(self) -> dict[str, Any]:
        return {
            "order_id": self.id,
            "ticker": str(self.ticker),
            "strategy_name": self.strategy_name,
            "direction": self.direction.label,
            "status": self.status.value,
            "opened_bar": self.opened_bar,
            "limit_price": self.limit_price,
            "buy_bar": self.buy_bar,
            "buy_date": self._format_date(self.buy_date),
            "buy_price": self.buy_price,
            "sell_bar": self.sell_bar,
            "sell_date": self._format_date(self.sell_date),
            "sell_price": self.sell_price,
            "num_shares": self.num_shares,
            "profit_target_price": self.profit_target_price,
            "stop_price": self.stop_price,
            "gain": self.gain,
            "account_value": self.account_value,
        }
