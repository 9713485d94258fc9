from __future__ import annotations

import numpy as np
import pytest

from conftest import business_days, wave_bars
from stocksim.bars import coerce_time_ns
from stocksim.higher_timeframe import HIGHER_VALUE_NAMES, aggregate_higher_bars, derive_higher_timeframe
from stocksim.indicators import DtoscCalc, SmaCalc


def _columns(times: list[int], closes: list[float]) -> dict[str, np.ndarray]:
    closes_array = np.asarray(closes, dtype=np.float64)
    return {
        "time_ns": np.asarray(times, dtype=np.int64),
        "open": closes_array - 0.5,
        "high": closes_array + 1.0,
        "low": closes_array - 1.0,
        "close": closes_array,
        "volume": np.full(closes_array.size, 10.0),
    }


def test_daily_bars_group_by_iso_week_and_keep_partial_week() -> None:
    times = business_days("2020-01-06", 8)  # Mon..Fri, then Mon..Wed
    columns = _columns(times, [float(value) for value in range(1, 9)])

    bars = aggregate_higher_bars(**columns, data_type="daily")

    assert len(bars) == 2
    week, partial = bars
    assert week.time_ns == coerce_time_ns("2020-01-10")
    assert week.open == 0.5
    assert week.high == 6.0
    assert week.low == 0.0
    assert week.close == 5.0
    assert week.volume == 50.0
    assert partial.time_ns == coerce_time_ns("2020-01-15")
    assert partial.close == 8.0


def test_iso_week_spans_year_boundary() -> None:
    times = [coerce_time_ns(day) for day in ("2020-12-30", "2020-12-31", "2021-01-01", "2021-01-04")]
    columns = _columns(times, [1.0, 2.0, 3.0, 4.0])

    bars = aggregate_higher_bars(**columns, data_type="daily")

    assert [bar.time_ns for bar in bars] == [coerce_time_ns("2021-01-01"), coerce_time_ns("2021-01-04")]


def test_intraday_bars_group_by_count() -> None:
    start = coerce_time_ns("2020-01-06T14:30:00")
    times = [start + i * 60_000_000_000 for i in range(7)]
    columns = _columns(times, [float(value) for value in range(1, 8)])

    bars = aggregate_higher_bars(**columns, data_type="minute", bars_per_group=3)

    assert [bar.close for bar in bars] == [3.0, 6.0, 7.0]
    assert bars[0].volume == 30.0
    assert bars[2].volume == 10.0


def test_aggregate_rejects_non_positive_group() -> None:
    columns = _columns(business_days("2020-01-06", 3), [1.0, 2.0, 3.0])

    with pytest.raises(ValueError):
        aggregate_higher_bars(**columns, data_type="minute", bars_per_group=0)


def test_derived_values_match_recomputing_each_prefix() -> None:
    lower = wave_bars(140)
    columns = {
        "time_ns": np.asarray([bar.time_ns for bar in lower], dtype=np.int64),
        "open": np.asarray([bar.open for bar in lower]),
        "high": np.asarray([bar.high for bar in lower]),
        "low": np.asarray([bar.low for bar in lower]),
        "close": np.asarray([bar.close for bar in lower]),
        "volume": np.asarray([bar.volume for bar in lower]),
    }

    states, values = derive_higher_timeframe(**columns, data_type="daily")

    assert states.shape == (140,)
    assert set(np.unique(states)).issubset({1.0, -1.0})
    assert set(values) == set(HIGHER_VALUE_NAMES)
    assert np.allclose(values["Close"], columns["close"])

    for i in (0, 4, 17, 63, 139):
        prefix = {name: array[: i + 1] for name, array in columns.items()}
        higher = aggregate_higher_bars(**prefix, data_type="daily")
        sma = SmaCalc(35)
        dtosc = DtoscCalc(13, 8, 5, 3)
        for bar in higher:
            (sma_value,) = sma.update(bar)
            sk, sd = dtosc.update(bar)
        assert values["Sma"][i] == pytest.approx(sma_value)
        assert values["DtoscSK"][i] == pytest.approx(sk)
        assert values["DtoscSD"][i] == pytest.approx(sd)


def test_state_starts_long() -> None:
    lower = wave_bars(10)
    states, _ = derive_higher_timeframe(
        np.asarray([bar.time_ns for bar in lower], dtype=np.int64),
        np.asarray([bar.open for bar in lower]),
        np.asarray([bar.high for bar in lower]),
        np.asarray([bar.low for bar in lower]),
        np.asarray([bar.close for bar in lower]),
        np.asarray([bar.volume for bar in lower]),
        "daily",
    )

    assert states[0] == 1.0
