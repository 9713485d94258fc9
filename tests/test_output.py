from __future__ import annotations

import json
from datetime import datetime, timezone

import pandas as pd
import pytest

from stocksim.config import SimulatorConfig
from stocksim.orders import EntryMode, OrderStatus
from stocksim.output import open_dashboard, safe_name, write_run_output
from stocksim.simulator import Simulator

ORDER_FIELDS = {
    "id",
    "ticker",
    "strategyName",
    "orderType",
    "orderStatus",
    "buyPrice",
    "sellPrice",
    "buyDate",
    "sellDate",
    "numShares",
    "gain",
    "accountValue",
}


@pytest.fixture
def run_output(tmp_path, wave_source):
    def _run(**overrides):
        values = dict(
            instruments=["AAA:NASDAQ", "BBB:NYSE"],
            start=datetime(2019, 1, 1, tzinfo=timezone.utc),
            end=datetime(2020, 3, 31, tzinfo=timezone.utc),
            cache_dir=tmp_path / "cache",
            output_folder=tmp_path / "output",
            num_bars_to_delay_start=30,
            min_required_orders=0,
            min_price_for_short=0.0,
            percent_for_buy=40.0,
            should_open_web_page=False,
        )
        values.update(overrides)
        config = SimulatorConfig(**values)
        result = Simulator(config, source=wave_source).run()
        return config, result, write_run_output(result, config)

    return _run


def test_overall_and_strategy_files(run_output) -> None:
    config, result, paths = run_output()

    overall = json.loads(paths["overall"].read_text(encoding="utf-8"))
    assert overall["outcome"] == "completed"
    assert overall["mainStrategy"] == "BestOfStrategies"
    assert "winPercent" in overall["statistics"]
    assert "maxDrawdown" in overall["statistics"]
    assert {item["ticker"] for item in overall["tickers"]} == {"AAA-NASDAQ", "BBB-NYSE"}

    strategy_files = sorted((config.output_folder / "strategies").glob("*.json"))
    assert len(strategy_files) == len(result.ledger.strategy_names())
    payload = json.loads(strategy_files[0].read_text(encoding="utf-8"))
    assert set(payload) == {"name", "statistics", "indicators", "orders"}
    assert set(payload["orders"][0]) == ORDER_FIELDS


def test_strategy_files_list_only_finished_orders(run_output) -> None:
    config, result, _ = run_output(entry_mode=EntryMode.LIMIT, max_bars_limit_order_fill=1)

    statuses: set[str] = set()
    for path in (config.output_folder / "strategies").glob("*.json"):
        statuses.update(order["orderStatus"] for order in json.loads(path.read_text(encoding="utf-8"))["orders"])

    assert any(order.status == OrderStatus.CANCELLED for order in result.ledger.all_orders())
    assert statuses <= {"ProfitTarget", "StopTarget", "LengthExceeded"}


def test_orders_csv_lists_every_order(run_output) -> None:
    _, result, paths = run_output()

    frame = pd.read_csv(paths["orders"])

    assert len(frame) == len(result.ledger)
    assert {"order_id", "strategy_name", "status", "gain", "account_value"}.issubset(frame.columns)


def test_abbreviated_output_drops_order_lists(run_output) -> None:
    config, _, _ = run_output(use_abbreviated_output=True)

    for path in (config.output_folder / "strategies").glob("*.json"):
        assert "orders" not in json.loads(path.read_text(encoding="utf-8"))


def test_snapshots_cover_order_window(run_output) -> None:
    config, result, _ = run_output(only_main_strategy_snapshots=False)

    finished = [order for order in result.ledger.all_orders() if order.is_finished()]
    snapshot_files = list((config.output_folder / "snapshots").glob("*.json"))
    assert len(snapshot_files) == len(finished)

    order = finished[0]
    snapshot = json.loads((config.output_folder / "snapshots" / f"{order.id}.json").read_text(encoding="utf-8"))
    expected_bars = order.sell_bar - max(0, order.buy_bar - 30) + 1
    assert snapshot["order"]["id"] == order.id
    assert len(snapshot["bars"]["close"]) == expected_bars
    for values in snapshot["indicators"].values():
        for series in values.values():
            assert len(series) == expected_bars


def test_higher_timeframe_export(run_output) -> None:
    config, _, paths = run_output(output_higher_timeframe_data=True)

    frame = pd.read_csv(paths["higher:AAA-NASDAQ"])

    assert {"date", "higher_state", "Sma", "DtoscSK", "Close"}.issubset(frame.columns)
    assert set(frame["higher_state"].unique()).issubset({1.0, -1.0})


def test_safe_name() -> None:
    assert safe_name("BullBressertDss,10") == "BullBressertDss_10"
    assert safe_name("///") == "unnamed"


def test_open_dashboard_respects_config(tmp_path, monkeypatch) -> None:
    opened: list[str] = []
    monkeypatch.setattr("webbrowser.open", lambda uri: opened.append(uri) or True)
    page = tmp_path / "overall.json"
    page.write_text("{}", encoding="utf-8")

    assert open_dashboard(page, SimulatorConfig(should_open_web_page=False)) is False
    assert opened == []
    assert open_dashboard(page) is True
    assert opened == [page.resolve().as_uri()]
