"""Higher-timeframe aggregation and the trend state derived from it."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone

import numpy as np
import pandas as pd

from core.market_metadata import normalize_data_type

from .bars import Bar
from .indicators import AtrCalc, DtoscCalc, KeltnerCalc, SmaCalc, is_peak, is_valley
from .orders import Direction

HIGHER_VALUE_NAMES: tuple[str, ...] = (
    "Sma",
    "Atr",
    "KeltnerUpper",
    "KeltnerMidline",
    "KeltnerLower",
    "DtoscSK",
    "DtoscSD",
    "Close",
)


def _iso_week(time_ns: int) -> tuple[int, int]:
    iso = datetime.fromtimestamp(int(time_ns) // 1_000_000_000, tz=timezone.utc).isocalendar()
    return (int(iso[0]), int(iso[1]))


def _closes_group(time_ns: np.ndarray, index: int, count: int, daily: bool, bars_per_group: int) -> bool:
    if index + 1 >= time_ns.size:
        return True
    if daily:
        return _iso_week(int(time_ns[index + 1])) != _iso_week(int(time_ns[index]))
    return count >= bars_per_group


def aggregate_higher_bars(
    time_ns: np.ndarray,
    open: np.ndarray,
    high: np.ndarray,
    low: np.ndarray,
    close: np.ndarray,
    volume: np.ndarray,
    data_type: str,
    bars_per_group: int = 5,
) -> list[Bar]:
    """Group lower bars into weekly (daily data) or N-bar (intraday) bars.

    Each aggregate takes the date of its last bar. The trailing partial group is kept.
    """
    if bars_per_group <= 0:
        raise ValueError("bars_per_group must be positive")
    daily = normalize_data_type(data_type) == "daily"
    bars: list[Bar] = []
    group: list[int] = []
    for i in range(int(time_ns.size)):
        group.append(i)
        if _closes_group(time_ns, i, len(group), daily, bars_per_group):
            bars.append(
                Bar(
                    time_ns=int(time_ns[i]),
                    open=float(open[group[0]]),
                    high=float(max(high[j] for j in group)),
                    low=float(min(low[j] for j in group)),
                    close=float(close[i]),
                    volume=float(sum(volume[j] for j in group)),
                )
            )
            group = []
    return bars


@dataclass
class _HigherCalculators:
    sma: SmaCalc = field(default_factory=lambda: SmaCalc(35))
    atr: AtrCalc = field(default_factory=lambda: AtrCalc(14))
    keltner: KeltnerCalc = field(default_factory=lambda: KeltnerCalc(10, 1.5))
    dtosc: DtoscCalc = field(default_factory=lambda: DtoscCalc(13, 8, 5, 3))

    def update(self, bar: Bar) -> dict[str, float]:
        (sma,) = self.sma.update(bar)
        (atr,) = self.atr.update(bar)
        upper, midline, lower = self.keltner.update(bar)
        sk, sd = self.dtosc.update(bar)
        return {
            "Sma": sma,
            "Atr": atr,
            "KeltnerUpper": upper,
            "KeltnerMidline": midline,
            "KeltnerLower": lower,
            "DtoscSK": sk,
            "DtoscSD": sd,
            "Close": bar.close,
        }


def derive_higher_timeframe(
    time_ns: np.ndarray,
    open: np.ndarray,
    high: np.ndarray,
    low: np.ndarray,
    close: np.ndarray,
    volume: np.ndarray,
    data_type: str,
    bars_per_group: int = 5,
) -> tuple[np.ndarray, dict[str, np.ndarray]]:
    """Per lower bar, the higher-timeframe state and values as of that bar.

    Completed groups are fed once into the calculators; the in-progress group is
    evaluated on a copy, which matches recomputing the whole prefix.
    """
    if bars_per_group <= 0:
        raise ValueError("bars_per_group must be positive")
    daily = normalize_data_type(data_type) == "daily"
    rows = int(time_ns.size)

    committed = _HigherCalculators()
    committed_sk: list[float] = []
    state = Direction.LONG
    states = np.empty(rows, dtype=np.float64)
    values = {name: np.empty(rows, dtype=np.float64) for name in HIGHER_VALUE_NAMES}

    group_open = group_high = group_low = group_volume = 0.0
    group_count = 0
    for i in range(rows):
        if group_count == 0:
            group_open = float(open[i])
            group_high = float(high[i])
            group_low = float(low[i])
            group_volume = 0.0
        group_high = max(group_high, float(high[i]))
        group_low = min(group_low, float(low[i]))
        group_volume += float(volume[i])
        group_count += 1

        partial = Bar(
            time_ns=int(time_ns[i]),
            open=group_open,
            high=group_high,
            low=group_low,
            close=float(close[i]),
            volume=group_volume,
        )
        peek = copy.deepcopy(committed)
        current = peek.update(partial)

        sk_series = [*committed_sk, current["DtoscSK"]]
        higher_index = len(sk_series) - 1
        if higher_index > 2:
            if is_valley(sk_series, higher_index):
                state = Direction.LONG
            elif is_peak(sk_series, higher_index):
                state = Direction.SHORT

        states[i] = float(state.value)
        for name in HIGHER_VALUE_NAMES:
            values[name][i] = current[name]

        if _closes_group(time_ns, i, group_count, daily, bars_per_group):
            committed = peek
            committed_sk.append(current["DtoscSK"])
            group_count = 0

    return states, values


def higher_timeframe_frame(series) -> pd.DataFrame:
    """Higher-timeframe columns of a series as a table for export."""
    frame = pd.DataFrame({"date": pd.to_datetime(series.time_ns, utc=True)})
    frame["higher_state"] = series.higher_state if series.has_higher_timeframe else np.nan
    for name in HIGHER_VALUE_NAMES:
        column = series.higher_values.get(name)
        frame[name] = column if column is not None else np.nan
    return frame
