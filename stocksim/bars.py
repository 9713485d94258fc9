"""Immutable columnar bar series and ticker identity."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

import numpy as np
import pandas as pd

from core.market_metadata import is_intraday, normalize_data_type, normalize_exchange, normalize_symbol

_EPOCH_UTC = datetime(1970, 1, 1, tzinfo=timezone.utc)
_NS_PER_SECOND = 1_000_000_000
_PRICE_COLUMNS: tuple[str, ...] = ("open", "high", "low", "close", "volume", "typical", "median")


def datetime_to_ns(value: datetime) -> int:
    dt_value = value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)
    delta = dt_value - _EPOCH_UTC
    return ((delta.days * 86400) + delta.seconds) * _NS_PER_SECOND + (delta.microseconds * 1_000)


def coerce_time_ns(value: Any | None) -> int | None:
    """Convert datetimes, dates, ISO strings, pandas timestamps and ns ints to epoch nanoseconds."""
    if value is None:
        return None
    if isinstance(value, (int, np.integer)):
        return int(value)
    if isinstance(value, pd.Timestamp):
        return int(value.tz_localize("UTC").value if value.tzinfo is None else value.value)
    if isinstance(value, np.datetime64):
        return int(value.astype("datetime64[ns]").astype(np.int64))
    if isinstance(value, datetime):
        return datetime_to_ns(value)
    if isinstance(value, date):
        return datetime_to_ns(datetime(value.year, value.month, value.day, tzinfo=timezone.utc))

    raw = str(value).strip()
    if not raw:
        return None
    try:
        dt_value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"Invalid date value: {value}") from exc
    return datetime_to_ns(dt_value)


def ns_to_datetime(value: int) -> datetime:
    return pd.Timestamp(int(value), tz="UTC").to_pydatetime()


def format_bar_date(value: int | None, intraday: bool = False) -> str | None:
    """Short date for daily bars, ISO timestamp for intraday bars."""
    if value is None:
        return None
    stamp = pd.Timestamp(int(value), tz="UTC")
    if intraday:
        return stamp.isoformat().replace("+00:00", "Z")
    return stamp.strftime("%Y-%m-%d")


@dataclass(frozen=True, order=True)
class TickerIdentity:
    """Stable ticker key made of symbol and exchange."""

    symbol: str
    exchange: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "symbol", normalize_symbol(self.symbol))
        object.__setattr__(self, "exchange", normalize_exchange(self.exchange))

    @classmethod
    def parse(cls, raw: str) -> "TickerIdentity":
        text = str(raw or "").strip()
        if ":" in text:
            symbol, exchange = text.split(":", 1)
        elif "-" in text:
            symbol, exchange = text.rsplit("-", 1)
        else:
            raise ValueError(f"Ticker must look like SYMBOL:EXCHANGE, got {raw!r}")
        return cls(symbol=symbol, exchange=exchange)

    @classmethod
    def from_raw(cls, value: Any) -> "TickerIdentity":
        if isinstance(value, TickerIdentity):
            return value
        if isinstance(value, dict):
            return cls(symbol=str(value.get("symbol") or ""), exchange=str(value.get("exchange") or ""))
        if isinstance(value, (tuple, list)) and len(value) == 2:
            return cls(symbol=str(value[0]), exchange=str(value[1]))
        return cls.parse(str(value))

    @property
    def key(self) -> str:
        return f"{self.symbol}-{self.exchange}"

    def to_dict(self) -> dict[str, str]:
        return {"symbol": self.symbol, "exchange": self.exchange}

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class Bar:
    time_ns: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def typical(self) -> float:
        return (self.high + self.low + self.close) / 3.0

    @property
    def median(self) -> float:
        return (self.high + self.low) / 2.0


@dataclass(frozen=True, eq=False)
class BarSeries:
    """Immutable parallel arrays of bars for one ticker over a requested range."""

    ticker: TickerIdentity
    data_type: str
    time_ns: np.ndarray
    open: np.ndarray
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray
    volume: np.ndarray
    typical: np.ndarray
    median: np.ndarray
    higher_state: np.ndarray = field(default_factory=lambda: np.asarray([], dtype=np.float64))
    higher_values: dict[str, np.ndarray] = field(default_factory=dict)
    requested_start_ns: int | None = None
    requested_end_ns: int | None = None

    def __post_init__(self) -> None:
        rows = int(self.time_ns.size)
        for name in _PRICE_COLUMNS:
            if getattr(self, name).size != rows:
                raise ValueError(f"BarSeries column {name} has {getattr(self, name).size} rows, expected {rows}")
        if self.higher_state.size not in (0, rows):
            raise ValueError("BarSeries higher_state length does not match bars")
        for name, values in self.higher_values.items():
            if values.size != rows:
                raise ValueError(f"BarSeries higher value {name} length does not match bars")
        if rows > 1 and not bool(np.all(np.diff(self.time_ns) > 0)):
            raise ValueError(f"BarSeries dates must be strictly ascending for {self.ticker}")

        for name in ("time_ns", *_PRICE_COLUMNS, "higher_state"):
            getattr(self, name).setflags(write=False)
        for values in self.higher_values.values():
            values.setflags(write=False)

    @property
    def rows(self) -> int:
        return int(self.time_ns.size)

    @property
    def start_ns(self) -> int | None:
        return int(self.time_ns[0]) if self.rows else None

    @property
    def end_ns(self) -> int | None:
        return int(self.time_ns[-1]) if self.rows else None

    @property
    def intraday(self) -> bool:
        return is_intraday(self.data_type)

    @property
    def has_higher_timeframe(self) -> bool:
        return self.higher_state.size == self.rows and self.rows > 0

    def date_at(self, index: int) -> datetime:
        return ns_to_datetime(int(self.time_ns[index]))

    def index_of(self, time_ns: int) -> int | None:
        idx = int(np.searchsorted(self.time_ns, int(time_ns), side="left"))
        if idx < self.rows and int(self.time_ns[idx]) == int(time_ns):
            return idx
        return None

    def bar(self, index: int) -> Bar:
        return Bar(
            time_ns=int(self.time_ns[index]),
            open=float(self.open[index]),
            high=float(self.high[index]),
            low=float(self.low[index]),
            close=float(self.close[index]),
            volume=float(self.volume[index]),
        )

    def covers(self, start: Any | None, end: Any | None) -> bool:
        """True when the range this series was built for includes [start, end]."""
        start_ns = coerce_time_ns(start)
        end_ns = coerce_time_ns(end)
        have_start = self.requested_start_ns if self.requested_start_ns is not None else self.start_ns
        have_end = self.requested_end_ns if self.requested_end_ns is not None else self.end_ns
        if have_start is None or have_end is None:
            return False
        if start_ns is not None and start_ns < have_start:
            return False
        if end_ns is not None and end_ns > have_end:
            return False
        return True

    def slice_by_index(
        self,
        start_idx: int,
        end_idx: int,
        requested_start_ns: int | None = None,
        requested_end_ns: int | None = None,
    ) -> BarSeries:
        start = max(0, int(start_idx))
        end = min(self.rows, int(end_idx))
        if end < start:
            end = start
        higher_state = self.higher_state[start:end] if self.higher_state.size else self.higher_state
        return BarSeries(
            ticker=self.ticker,
            data_type=self.data_type,
            time_ns=self.time_ns[start:end],
            open=self.open[start:end],
            high=self.high[start:end],
            low=self.low[start:end],
            close=self.close[start:end],
            volume=self.volume[start:end],
            typical=self.typical[start:end],
            median=self.median[start:end],
            higher_state=higher_state,
            higher_values={name: values[start:end] for name, values in self.higher_values.items()},
            requested_start_ns=self.requested_start_ns if requested_start_ns is None else requested_start_ns,
            requested_end_ns=self.requested_end_ns if requested_end_ns is None else requested_end_ns,
        )

    def narrow(self, start: Any | None = None, end: Any | None = None) -> BarSeries:
        """Return a new series restricted to [start, end]; this series is untouched."""
        start_ns = coerce_time_ns(start)
        end_ns = coerce_time_ns(end)

        left = 0 if start_ns is None else int(np.searchsorted(self.time_ns, start_ns, side="left"))
        right = self.rows if end_ns is None else int(np.searchsorted(self.time_ns, end_ns, side="right"))
        return self.slice_by_index(
            left,
            right,
            requested_start_ns=start_ns,
            requested_end_ns=end_ns,
        )

    def to_dataframe(self) -> pd.DataFrame:
        frame = pd.DataFrame(
            {
                "date": pd.to_datetime(self.time_ns, utc=True),
                "open": self.open,
                "high": self.high,
                "low": self.low,
                "close": self.close,
                "volume": self.volume,
                "typical": self.typical,
                "median": self.median,
            }
        )
        if self.has_higher_timeframe:
            frame["higher_state"] = self.higher_state
            for name, values in self.higher_values.items():
                frame[f"higher_{name}"] = values
        return frame


def _as_float_array(values: Any) -> np.ndarray:
    return np.asarray(values if values is not None else [], dtype=np.float64)


def build_series(
    ticker: TickerIdentity,
    data_type: str,
    time_ns: Any,
    open: Any,
    high: Any,
    low: Any,
    close: Any,
    volume: Any,
    typical: Any | None = None,
    median: Any | None = None,
    higher_state: Any | None = None,
    higher_values: dict[str, Any] | None = None,
    requested_start_ns: int | None = None,
    requested_end_ns: int | None = None,
) -> BarSeries:
    """Sort, dedupe and derive typical/median prices before freezing the arrays."""
    times = np.asarray(time_ns if time_ns is not None else [], dtype=np.int64)
    columns = {
        "open": _as_float_array(open),
        "high": _as_float_array(high),
        "low": _as_float_array(low),
        "close": _as_float_array(close),
        "volume": _as_float_array(volume),
    }
    for name, values in columns.items():
        if values.size != times.size:
            raise ValueError(f"Column {name} has {values.size} rows, expected {times.size}")

    columns["typical"] = (
        _as_float_array(typical)
        if typical is not None
        else (columns["high"] + columns["low"] + columns["close"]) / 3.0
    )
    columns["median"] = (
        _as_float_array(median) if median is not None else (columns["high"] + columns["low"]) / 2.0
    )
    state = _as_float_array(higher_state)
    extras = {name: _as_float_array(values) for name, values in (higher_values or {}).items()}

    if times.size > 1:
        order = np.argsort(times, kind="mergesort")
        times = times[order]
        columns = {name: values[order] for name, values in columns.items()}
        if state.size == order.size:
            state = state[order]
        extras = {name: values[order] for name, values in extras.items()}

        keep_mask = np.ones(times.size, dtype=bool)
        keep_mask[1:] = times[1:] != times[:-1]
        if not keep_mask.all():
            times = times[keep_mask]
            columns = {name: values[keep_mask] for name, values in columns.items()}
            if state.size == keep_mask.size:
                state = state[keep_mask]
            extras = {name: values[keep_mask] for name, values in extras.items()}

    return BarSeries(
        ticker=ticker,
        data_type=normalize_data_type(data_type),
        time_ns=times,
        higher_state=state,
        higher_values=extras,
        requested_start_ns=requested_start_ns,
        requested_end_ns=requested_end_ns,
        **columns,
    )


def series_from_bars(
    ticker: TickerIdentity,
    data_type: str,
    bars: list[Bar],
    requested_start_ns: int | None = None,
    requested_end_ns: int | None = None,
) -> BarSeries:
    return build_series(
        ticker,
        data_type,
        time_ns=[bar.time_ns for bar in bars],
        open=[bar.open for bar in bars],
        high=[bar.high for bar in bars],
        low=[bar.low for bar in bars],
        close=[bar.close for bar in bars],
        volume=[bar.volume for bar in bars],
        requested_start_ns=requested_start_ns,
        requested_end_ns=requested_end_ns,
    )
