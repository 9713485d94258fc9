from __future__ import annotations

import copy

import pytest

from stocksim.bars import Bar
from stocksim.indicators import (
    AtrCalc,
    BollingerCalc,
    CciCalc,
    DtoscCalc,
    EmaCalc,
    MacdCalc,
    MomentumCalc,
    RsiCalc,
    SmaCalc,
    StochasticsFastCalc,
    WilliamsRCalc,
    crossed_above,
    crossed_below,
    is_above,
    is_below,
    is_peak,
    is_valley,
)


def _bar(close: float, high: float | None = None, low: float | None = None, time_ns: int = 0) -> Bar:
    return Bar(
        time_ns=time_ns,
        open=close,
        high=close if high is None else high,
        low=close if low is None else low,
        close=close,
        volume=100.0,
    )


def _feed(calc, closes: list[float]) -> list[tuple[float, ...]]:
    return [calc.update(_bar(close, time_ns=i)) for i, close in enumerate(closes)]


def test_sma_averages_available_values_during_warm_up() -> None:
    values = [row[0] for row in _feed(SmaCalc(3), [1.0, 2.0, 3.0, 4.0, 5.0])]

    assert values == pytest.approx([1.0, 1.5, 2.0, 3.0, 4.0])


def test_ema_seeds_with_first_value() -> None:
    values = [row[0] for row in _feed(EmaCalc(3), [1.0, 2.0, 3.0])]

    assert values == pytest.approx([1.0, 1.5, 2.25])


def test_rsi_is_100_on_strictly_rising_closes() -> None:
    values = [row[0] for row in _feed(RsiCalc(14), [float(value) for value in range(1, 20)])]

    assert values[0] == 50.0
    assert all(value == 100.0 for value in values[1:])


def test_rsi_balanced_moves_are_50() -> None:
    values = [row[0] for row in _feed(RsiCalc(2), [10.0, 11.0, 10.0])]

    assert values[-1] == pytest.approx(50.0)


def test_atr_on_constant_range() -> None:
    calc = AtrCalc(5)
    values = [calc.update(_bar(10.0, high=11.0, low=9.0))[0] for _ in range(8)]

    assert values == pytest.approx([2.0] * 8)


def test_momentum_uses_close_period_bars_back() -> None:
    values = [row[0] for row in _feed(MomentumCalc(2), [1.0, 2.0, 4.0, 7.0])]

    assert values == [0.0, 1.0, 3.0, 5.0]


def test_flat_prices_give_neutral_oscillators() -> None:
    closes = [10.0] * 20

    assert _feed(MacdCalc(), closes)[-1] == pytest.approx((0.0, 0.0, 0.0))
    upper, middle, lower = _feed(BollingerCalc(5, 2.0), closes)[-1]
    assert upper == pytest.approx(middle) and lower == pytest.approx(middle)
    assert _feed(StochasticsFastCalc(), closes)[-1] == (50.0, 50.0)
    assert _feed(WilliamsRCalc(), closes)[-1] == (-50.0,)
    assert _feed(CciCalc(), closes)[-1] == (0.0,)


def test_williams_r_at_range_extremes() -> None:
    calc = WilliamsRCalc(3)
    calc.update(_bar(5.0, high=10.0, low=0.0))

    assert calc.update(_bar(10.0, high=10.0, low=5.0))[0] == pytest.approx(0.0)
    assert calc.update(_bar(0.0, high=5.0, low=0.0))[0] == pytest.approx(-100.0)


def test_dtosc_stays_in_range() -> None:
    closes = [10.0 + ((i * 7) % 5) - ((i * 3) % 4) for i in range(60)]
    for sk, sd in _feed(DtoscCalc(), closes):
        assert 0.0 <= sk <= 100.0
        assert 0.0 <= sd <= 100.0


def test_calculator_copy_is_independent() -> None:
    calc = SmaCalc(3)
    _feed(calc, [1.0, 2.0])
    peek = copy.deepcopy(calc)

    assert peek.update(_bar(30.0))[0] == pytest.approx(11.0)
    assert calc.update(_bar(3.0))[0] == pytest.approx(2.0)


def test_peak_and_valley_need_two_prior_values() -> None:
    values = [5.0, 3.0, 4.0, 2.0, 6.0, 1.0]

    assert not is_valley(values, 1)
    assert is_valley(values, 2)
    assert is_peak(values, 3)
    assert is_valley(values, 4)
    assert is_peak(values, 5)
    assert not is_peak(values, 10)


def test_crossings_against_series_and_levels() -> None:
    fast = [1.0, 2.0, 4.0, 3.0]
    slow = [2.0, 2.0, 3.0, 3.5]

    assert not crossed_above(fast, slow, 0)
    assert not crossed_above(fast, slow, 1)
    assert crossed_above(fast, slow, 2)
    assert crossed_below(fast, slow, 3)
    assert crossed_above([25.0, 31.0], 30.0, 1)
    assert crossed_below([71.0, 69.0], 70.0, 1)


def test_is_below_and_is_above_look_back() -> None:
    values = [10.0, 25.0, 40.0, 60.0]

    assert is_below(values, 20.0, 3, 4)
    assert not is_below(values, 20.0, 3, 3)
    assert is_above(values, 50.0, 3, 1)
    assert not is_above(values, 50.0, 2, 3)
