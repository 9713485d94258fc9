from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from stocksim.bars import TickerIdentity
from stocksim.config import DEFAULT_MAIN_STRATEGY_DEPENDENTS, SimulatorConfig
from stocksim.orders import EntryMode


def test_defaults() -> None:
    config = SimulatorConfig()

    assert config.data_type == "daily"
    assert config.start == datetime(2010, 1, 4, tzinfo=timezone.utc)
    assert config.max_lookback_bars == 500
    assert config.min_required_orders == 5
    assert config.percent_for_buy == 50.0
    assert config.num_bars_to_delay_start == 250
    assert config.main_strategy == "BestOfStrategies"
    assert config.main_strategy_dependents == list(DEFAULT_MAIN_STRATEGY_DEPENDENTS)
    assert config.entry_mode is EntryMode.NEXT_OPEN
    assert config.lookback_kwargs() == {"lookback_bars": 500}


def test_save_and_load_round_trip(tmp_path) -> None:
    config = SimulatorConfig(
        instruments=["AAPL-NASDAQ"],
        start=datetime(2018, 1, 2, tzinfo=timezone.utc),
        end=datetime(2019, 6, 28, tzinfo=timezone.utc),
        lookback_mode="count",
        entry_mode=EntryMode.LIMIT,
        strategy_overrides={"BullSmaCrossover": {"profit_target": 0.08}},
    )
    path = config.save(tmp_path / "nested" / "config.json")

    loaded = SimulatorConfig.from_dict(json.loads(path.read_text(encoding="utf-8")))

    assert loaded == config
    assert loaded.lookback_kwargs() == {"lookback_count": 10}


def test_from_path_resolves_relative_folders(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"cache_dir": "data", "output_folder": "out"}), encoding="utf-8")

    config = SimulatorConfig.from_path(path)

    assert config.cache_dir == (tmp_path / "data").resolve()
    assert config.output_folder == (tmp_path / "out").resolve()
    assert config.config_path == path


@pytest.mark.parametrize(
    "payload",
    [
        {"start": "2015-01-01", "end": "2014-01-01"},
        {"data_type": "weekly"},
        {"lookback_mode": "forever"},
        {"profit_target": -0.1},
        {"percent_for_buy": 150},
        {"max_workers": 0},
        {"entry_mode": "market"},
        {"instruments": "AAPL:NASDAQ"},
        {"strategy_overrides": {"BullSmaCrossover": {"commission": 1}}},
        {"start": "not a date"},
    ],
)
def test_invalid_values_are_rejected(payload) -> None:
    with pytest.raises(ValueError):
        SimulatorConfig.from_dict(payload)


def test_invalid_json_is_value_error(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ValueError):
        SimulatorConfig.from_path(path)


def test_use_todays_date_overrides_end() -> None:
    config = SimulatorConfig.from_dict({"use_todays_date": True, "end": "2011-01-01"})

    assert config.end.date() == datetime.now(timezone.utc).date()


def test_with_flags_only_changes_given_values() -> None:
    config = SimulatorConfig(auto_run=False, close_after_run=True)

    updated = config.with_flags(auto_run=True, config_path="run.json")

    assert updated.auto_run is True
    assert updated.close_after_run is True
    assert str(updated.config_path) == "run.json"
    assert config.auto_run is False


def test_order_settings_apply_strategy_overrides() -> None:
    config = SimulatorConfig(strategy_overrides={"BullBressertDss": {"stop_target": 0.02}})

    assert config.order_settings("BullBressertDss,10").stop_target == 0.02
    assert config.order_settings("BullSmaCrossover").stop_target == 0.05
    assert config.order_settings().commission == 4.95


def test_tickers_merge_instruments_and_list_file(tmp_path) -> None:
    list_file = tmp_path / "tickers.csv"
    list_file.write_text("Symbol,Exchange\nAAPL,NASDAQ\nmsft,nas\n,NYSE\n", encoding="utf-8")
    config = SimulatorConfig(instruments=["AAPL:NASDAQ", "IBM:NYSE"], instrument_list_file=list_file)

    assert config.tickers() == [
        TickerIdentity("AAPL", "NASDAQ"),
        TickerIdentity("IBM", "NYSE"),
        TickerIdentity("MSFT", "NASDAQ"),
    ]


def test_missing_list_file_is_value_error(tmp_path) -> None:
    config = SimulatorConfig(instrument_list_file=tmp_path / "missing.csv")

    with pytest.raises(ValueError):
        config.tickers()
