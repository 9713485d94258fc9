from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from conftest import FakeSource, wave_bars
from stocksim.bars import TickerIdentity, coerce_time_ns
from stocksim.errors import DataUnavailable, MalformedCache
from stocksim.ticker_store import TickerStore, read_cache_file, write_cache_file

AAA = TickerIdentity("AAA", "NASDAQ")


class _SlowSource(FakeSource):
    def fetch(self, ticker, data_type, start_ns, end_ns):
        time.sleep(0.05)
        return super().fetch(ticker, data_type, start_ns, end_ns)


def test_remote_then_memory_hit(tmp_path) -> None:
    source = FakeSource({"AAA:NASDAQ": wave_bars(60)})
    store = TickerStore(tmp_path, source=source)

    first = store.get(AAA, "2019-01-10", "2019-02-28")
    second = store.get(AAA, "2019-01-15", "2019-02-20")

    assert source.calls == ["AAA-NASDAQ"]
    assert first.rows > second.rows > 0
    assert int(second.time_ns[0]) >= coerce_time_ns("2019-01-15")
    assert int(second.time_ns[-1]) <= coerce_time_ns("2019-02-20")
    assert store.cache_path(AAA).exists()


def test_disk_cache_hit_skips_remote(tmp_path) -> None:
    warm = TickerStore(tmp_path, source=FakeSource({"AAA:NASDAQ": wave_bars(60)}))
    warm.get(AAA, "2019-01-01", "2019-03-01")

    cold_source = FakeSource({}, failing={"AAA:NASDAQ"})
    cold = TickerStore(tmp_path, source=cold_source)
    series = cold.get(AAA, "2019-01-10", "2019-02-01")

    assert cold_source.calls == []
    assert series.rows > 0
    assert series.has_higher_timeframe


def test_wider_request_refetches_and_covers_both_ranges(tmp_path) -> None:
    source = FakeSource({"AAA:NASDAQ": wave_bars(80)})
    store = TickerStore(tmp_path, source=source)

    store.get(AAA, "2019-02-01", "2019-03-01")
    wider = store.get(AAA, "2019-01-01", "2019-03-01")
    again = store.get(AAA, "2019-02-01", "2019-03-01")

    assert len(source.calls) == 2
    assert int(wider.time_ns[0]) == coerce_time_ns("2019-01-01")
    assert again.rows > 0
    assert len(source.calls) == 2


def test_malformed_cache_falls_back_to_remote(tmp_path) -> None:
    source = FakeSource({"AAA:NASDAQ": wave_bars(30)})
    store = TickerStore(tmp_path, source=source)
    path = store.cache_path(AAA)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("garbage\nnot,a,cache\n", encoding="utf-8")

    series = store.get(AAA, "2019-01-01", "2019-02-01")

    assert source.calls == ["AAA-NASDAQ"]
    assert series.rows > 0
    assert read_cache_file(path, AAA, "daily").rows == series.rows


def test_read_cache_file_rejects_bad_rows(tmp_path) -> None:
    path = tmp_path / "bad.csv"
    path.write_text("0,100,\nDate,Open\n1,2\n", encoding="utf-8")

    with pytest.raises(MalformedCache):
        read_cache_file(path, AAA, "daily")


def test_failing_ticker_does_not_affect_others(tmp_path) -> None:
    source = FakeSource({"AAA:NASDAQ": wave_bars(30)}, failing={"BAD:NASDAQ"})
    store = TickerStore(tmp_path, source=source)

    with pytest.raises(DataUnavailable):
        store.get("BAD:NASDAQ", "2019-01-01", "2019-02-01")
    assert store.get(AAA, "2019-01-01", "2019-02-01").rows > 0
    assert store.loaded_tickers() == [AAA]


def test_empty_source_result_is_data_unavailable(tmp_path) -> None:
    store = TickerStore(tmp_path, source=FakeSource({"AAA:NASDAQ": []}))

    with pytest.raises(DataUnavailable):
        store.get(AAA, "2019-01-01", "2019-02-01")


def test_no_source_and_no_cache_is_data_unavailable(tmp_path) -> None:
    with pytest.raises(DataUnavailable):
        TickerStore(tmp_path).get(AAA, "2019-01-01", "2019-02-01")


def test_concurrent_gets_share_one_load(tmp_path) -> None:
    source = _SlowSource({"AAA:NASDAQ": wave_bars(40)})
    store = TickerStore(tmp_path, source=source)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: store.get(AAA, "2019-01-01", "2019-02-15"), range(8)))

    assert source.calls == ["AAA-NASDAQ"]
    assert all(np.array_equal(result.close, results[0].close) for result in results)


def test_cache_file_round_trip_keeps_requested_range(tmp_path) -> None:
    store = TickerStore(tmp_path, source=FakeSource({"AAA:NASDAQ": wave_bars(25)}))
    series = store.get(AAA, "2019-01-01", "2019-02-05")
    path = tmp_path / "copy.csv"

    write_cache_file(path, series)
    loaded = read_cache_file(path, AAA, "daily")

    assert np.array_equal(loaded.time_ns, series.time_ns)
    assert np.allclose(loaded.close, series.close)
    assert np.allclose(loaded.typical, series.typical)
    assert np.array_equal(loaded.higher_state, series.higher_state)
    assert loaded.requested_start_ns == series.requested_start_ns
    assert loaded.requested_end_ns == series.requested_end_ns


def test_trading_dates_and_clear_cache(tmp_path) -> None:
    source = FakeSource({"AAA:NASDAQ": wave_bars(10), "BBB:NYSE": wave_bars(12)})
    store = TickerStore(tmp_path, source=source)
    store.get(AAA, "2019-01-01", "2019-01-31")
    store.get("BBB:NYSE", "2019-01-01", "2019-01-31")

    dates = store.trading_dates()
    assert dates.size == 12
    assert bool(np.all(np.diff(dates) > 0))
    assert store.trading_dates(end="2019-01-04").size == 4

    store.clear_cache()
    assert store.loaded_tickers() == []
    assert not store.cache_folder.exists()
