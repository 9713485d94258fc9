"""Performance statistics aggregated from finished orders."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any

from core.market_metadata import round_price

from .orders import Direction, Order, OrderStatus


def percent_change(start: float, end: float) -> float:
    if start == 0.0:
        return 0.0
    return (end - start) / start * 100.0


def _percent(count: int, total: int) -> float:
    return float(round(count / total * 100.0)) if total > 0 else 0.0


def _format_date(value: datetime | None) -> str | None:
    return value.strftime("%Y-%m-%d") if value is not None else None


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass(frozen=True)
class SideStats:
    """Win/loss breakdown for one direction."""

    number_of_orders: int = 0
    win_percent: float = 0.0
    loss_percent: float = 0.0
    profit_target_percent: float = 0.0
    stop_loss_percent: float = 0.0
    length_exceeded_percent: float = 0.0
    win_avg: float = 0.0
    win_avg_percent: float = 0.0
    loss_avg: float = 0.0
    loss_avg_percent: float = 0.0


@dataclass
class _SideTally:
    orders: int = 0
    wins: int = 0
    losses: int = 0
    profit_targets: int = 0
    stop_losses: int = 0
    length_exceeded: int = 0
    win_gain: float = 0.0
    win_percent_sum: float = 0.0
    loss_gain: float = 0.0
    loss_percent_sum: float = 0.0

    def add(self, order: Order) -> None:
        self.orders += 1
        change = percent_change(order.buy_price, order.sell_price)
        if order.gain > 0:
            self.wins += 1
            self.win_gain += order.gain
            self.win_percent_sum += change
        else:
            self.losses += 1
            self.loss_gain += order.gain
            self.loss_percent_sum += change
        if order.status == OrderStatus.PROFIT_TARGET:
            self.profit_targets += 1
        elif order.status == OrderStatus.STOP_TARGET:
            self.stop_losses += 1
        elif order.status == OrderStatus.LENGTH_EXCEEDED:
            self.length_exceeded += 1

    def freeze(self, percent_sign: float = 1.0) -> SideStats:
        if self.orders == 0:
            return SideStats()
        return SideStats(
            number_of_orders=self.orders,
            win_percent=_percent(self.wins, self.orders),
            loss_percent=_percent(self.losses, self.orders),
            profit_target_percent=_percent(self.profit_targets, self.orders),
            stop_loss_percent=_percent(self.stop_losses, self.orders),
            length_exceeded_percent=_percent(self.length_exceeded, self.orders),
            win_avg=self.win_gain / self.wins if self.wins else 0.0,
            win_avg_percent=(self.win_percent_sum / self.wins if self.wins else 0.0) * percent_sign,
            loss_avg=self.loss_gain / self.losses if self.losses else 0.0,
            loss_avg_percent=(self.loss_percent_sum / self.losses if self.losses else 0.0) * percent_sign,
        )


@dataclass(frozen=True)
class PerformanceStats:
    name: str
    direction: Direction | None = None
    number_of_orders: int = 0
    win_percent: float = 0.0
    loss_percent: float = 0.0
    profit_target_percent: float = 0.0
    stop_loss_percent: float = 0.0
    length_exceeded_percent: float = 0.0
    largest_winner: float = 0.0
    largest_winner_buy_date: datetime | None = None
    largest_loser: float = 0.0
    largest_loser_buy_date: datetime | None = None
    most_consecutive_losers: int = 0
    most_consecutive_losers_date: datetime | None = None
    max_drawdown: float = 0.0
    max_drawdown_date: datetime | None = None
    profit_factor: float = 0.0
    profit_factor_largest: float = 0.0
    long: SideStats = field(default_factory=SideStats)
    short: SideStats = field(default_factory=SideStats)
    gain: float = 0.0
    average_order_length: float = 0.0
    average_profit_order_length: float = 0.0
    average_stop_order_length: float = 0.0

    @classmethod
    def neutral(cls, name: str, direction: Direction | None = None) -> "PerformanceStats":
        return cls(name=name, direction=direction)

    @property
    def is_neutral(self) -> bool:
        return self.number_of_orders == 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "orderType": self.direction.label if self.direction is not None else "All",
        }
        for item in fields(self):
            if item.name in ("name", "direction"):
                continue
            value = getattr(self, item.name)
            if isinstance(value, SideStats):
                for side_item in fields(value):
                    side_value = getattr(value, side_item.name)
                    key = _camel(f"{item.name}_{side_item.name}")
                    payload[key] = side_value if isinstance(side_value, int) else round_price(side_value)
            elif isinstance(value, datetime) or value is None:
                payload[_camel(item.name)] = _format_date(value)
            elif isinstance(value, int):
                payload[_camel(item.name)] = value
            else:
                payload[_camel(item.name)] = round_price(value)
        return payload


def compute_performance_stats(
    orders: Iterable[Order],
    name: str,
    direction: Direction | None = None,
    min_required_orders: int = 0,
) -> PerformanceStats:
    """Aggregate finished orders in the order given (oldest first).

    Unfinished orders are ignored. With `min_required_orders` or fewer finished orders the
    neutral aggregate is returned instead.
    """
    finished = [order for order in orders if order.is_finished()]
    if not finished or len(finished) <= min_required_orders:
        return PerformanceStats.neutral(name, direction)

    tally = _SideTally()
    long_tally = _SideTally()
    short_tally = _SideTally()

    largest_winner = 0.0
    largest_winner_date: datetime | None = None
    largest_loser = 0.0
    largest_loser_date: datetime | None = None
    consecutive = 0
    most_consecutive = 0
    most_consecutive_date: datetime | None = None
    total_gain = 0.0
    highest_gain = 0.0
    max_drawdown = 0.0
    max_drawdown_date: datetime | None = None
    total_length = 0
    profit_length = 0
    stop_length = 0

    for order in finished:
        tally.add(order)
        (long_tally if order.direction is Direction.LONG else short_tally).add(order)

        if order.gain > 0:
            consecutive = 0
            if order.gain > largest_winner:
                largest_winner = order.gain
                largest_winner_date = order.buy_date
        else:
            consecutive += 1
            if order.gain < largest_loser:
                largest_loser = order.gain
                largest_loser_date = order.buy_date
            if consecutive > most_consecutive:
                most_consecutive = consecutive
                most_consecutive_date = order.buy_date

        total_length += order.length
        if order.status == OrderStatus.PROFIT_TARGET:
            profit_length += order.length
        elif order.status == OrderStatus.STOP_TARGET:
            stop_length += order.length

        total_gain += order.gain
        if total_gain >= highest_gain:
            highest_gain = total_gain
        elif highest_gain - total_gain > max_drawdown:
            max_drawdown = highest_gain - total_gain
            max_drawdown_date = order.buy_date

    losses_total = abs(tally.loss_gain)
    count = tally.orders
    return PerformanceStats(
        name=name,
        direction=direction,
        number_of_orders=count,
        win_percent=_percent(tally.wins, count),
        loss_percent=_percent(tally.losses, count),
        profit_target_percent=_percent(tally.profit_targets, count),
        stop_loss_percent=_percent(tally.stop_losses, count),
        length_exceeded_percent=_percent(tally.length_exceeded, count),
        largest_winner=largest_winner,
        largest_winner_buy_date=largest_winner_date,
        largest_loser=largest_loser,
        largest_loser_buy_date=largest_loser_date,
        most_consecutive_losers=most_consecutive,
        most_consecutive_losers_date=most_consecutive_date,
        max_drawdown=max_drawdown,
        max_drawdown_date=max_drawdown_date,
        profit_factor=tally.win_gain / losses_total if losses_total > 0 else tally.win_gain,
        profit_factor_largest=largest_winner / abs(largest_loser) if largest_loser < 0 else largest_winner,
        long=long_tally.freeze(),
        # Short percent changes are flipped so a winning short reads positive.
        short=short_tally.freeze(percent_sign=-1.0),
        gain=total_gain,
        average_order_length=float(round(total_length / count)),
        average_profit_order_length=profit_length / tally.profit_targets if tally.profit_targets else 0.0,
        average_stop_order_length=stop_length / tally.stop_losses if tally.stop_losses else 0.0,
    )
