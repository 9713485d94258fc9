"""Shared order ledger indexed by ticker and by strategy."""

from __future__ import annotations

import logging
import threading
from typing import Any

from .bars import TickerIdentity
from .errors import DuplicateOrderId
from .orders import Direction, Order
from .statistics import PerformanceStats, compute_performance_stats

logger = logging.getLogger(__name__)


class OrderLedger:
    """Append-only order store; readers copy an index under the lock and scan the copy."""

    def __init__(self, min_required_orders: int = 5) -> None:
        self.min_required_orders = int(min_required_orders)
        self._lock = threading.Lock()
        self._ids: set[int] = set()
        self._by_ticker: dict[TickerIdentity, list[Order]] = {}
        self._by_strategy: dict[str, list[Order]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def add_order(self, order: Order) -> None:
        with self._lock:
            if order.id in self._ids:
                raise DuplicateOrderId(order.id)
            self._ids.add(order.id)
            self._by_ticker.setdefault(order.ticker, []).append(order)
            self._by_strategy.setdefault(order.strategy_name, []).append(order)
        logger.debug("Recorded order %s (%s %s %s)", order.id, order.ticker, order.strategy_name, order.status.value)

    def orders_for_ticker(self, ticker: Any) -> list[Order]:
        key = TickerIdentity.from_raw(ticker)
        with self._lock:
            return list(self._by_ticker.get(key, ()))

    def orders_for_strategy(self, strategy_name: str) -> list[Order]:
        with self._lock:
            orders = list(self._by_strategy.get(strategy_name, ()))
        return sorted(orders, key=lambda order: order.id)

    def all_orders(self) -> list[Order]:
        with self._lock:
            orders = [order for bucket in self._by_ticker.values() for order in bucket]
        return sorted(orders, key=lambda order: order.id)

    def strategy_names(self) -> list[str]:
        with self._lock:
            return sorted(self._by_strategy)

    def tickers(self) -> list[TickerIdentity]:
        with self._lock:
            return sorted(self._by_ticker)

    def stats_for_strategy(
        self,
        strategy_name: str,
        direction: Direction | str | int,
        ticker: Any | None = None,
        as_of_bar: int | None = None,
        lookback_bars: int | None = None,
        lookback_count: int | None = None,
    ) -> PerformanceStats:
        """Statistics of recent finished orders for one strategy and direction.

        Exactly one of `lookback_bars` (orders bought within that many bars of
        `as_of_bar`) or `lookback_count` (that many most recent orders) bounds the scan.
        """
        if (lookback_bars is None) == (lookback_count is None):
            raise ValueError("Exactly one of lookback_bars or lookback_count must be given")
        if lookback_bars is not None and as_of_bar is None:
            raise ValueError("as_of_bar is required with lookback_bars")

        side = Direction.from_value(direction)
        source = self.orders_for_ticker(ticker) if ticker is not None else self.orders_for_strategy(strategy_name)
        cutoff = max(0, int(as_of_bar) - int(lookback_bars)) if lookback_bars is not None else None

        selected: list[Order] = []
        for order in reversed(source):
            if lookback_count is not None and len(selected) >= lookback_count:
                break
            if not order.is_finished() or order.strategy_name != strategy_name or order.direction is not side:
                continue
            if cutoff is not None and int(order.buy_bar) < cutoff:
                continue
            selected.append(order)

        selected.reverse()
        return compute_performance_stats(selected, strategy_name, side, self.min_required_orders)

    def ticker_statistics(self, ticker: Any, as_of_bar: int | None = None, lookback_bars: int | None = None) -> PerformanceStats:
        key = TickerIdentity.from_raw(ticker)
        orders = self.orders_for_ticker(key)
        if lookback_bars is not None and as_of_bar is not None:
            cutoff = max(0, int(as_of_bar) - int(lookback_bars))
            orders = [order for order in orders if order.buy_bar is not None and order.buy_bar >= cutoff]
        return compute_performance_stats(orders, str(key), None, self.min_required_orders)
