"""JSON and CSV output consumed by the results dashboard."""

from __future__ import annotations

import json
import logging
import re
import webbrowser
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from .bars import format_bar_date
from .config import SimulatorConfig
from .graph import IndicatorNode
from .higher_timeframe import higher_timeframe_frame
from .orders import Order
from .simulator import RunResult

logger = logging.getLogger(__name__)

SNAPSHOT_BARS_BEFORE = 30
_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def _json_default(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, datetime):
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, np.generic):
        return value.item()
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def _write_json(path: Path, payload: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, default=_json_default), encoding="utf-8")
    return path


def safe_name(name: str) -> str:
    """File-system safe version of a strategy or ticker name."""
    cleaned = _SAFE_NAME_RE.sub("_", str(name)).strip("_")
    return cleaned or "unnamed"


def _finite(values: Any) -> list[float | None]:
    return [None if value is None or not np.isfinite(value) else float(value) for value in values]


def build_overall(result: RunResult) -> dict[str, Any]:
    return {
        "outcome": result.outcome,
        "generatedAt": result.finished_at,
        "mainStrategy": result.main_strategy,
        "statistics": result.overall.to_dict(),
        "strategies": [stats.to_dict() for stats in result.strategy_stats],
        "tickers": [{"ticker": str(ticker), **stats.to_dict()} for ticker, stats in sorted(result.ticker_stats.items())],
        "skippedTickers": [str(ticker) for ticker in result.skipped_tickers],
        "failedTickers": [str(ticker) for ticker in result.failed_tickers],
    }


def build_strategy_payload(result: RunResult, name: str, include_orders: bool = True) -> dict[str, Any]:
    orders = [order for order in result.ledger.orders_for_strategy(name) if order.is_finished()]
    indicators: list[str] = []
    for order in orders:
        for indicator_name in order.dependent_indicator_names:
            if indicator_name not in indicators:
                indicators.append(indicator_name)
    payload: dict[str, Any] = {
        "name": name,
        "statistics": [stats.to_dict() for stats in result.strategy_stats if stats.name == name],
        "indicators": indicators,
    }
    if include_orders:
        payload["orders"] = [order.to_dict() for order in orders]
    return payload


def build_snapshot(result: RunResult, order: Order) -> dict[str, Any] | None:
    """Bars and indicator values around one order, from before the buy to the sell."""
    graph = result.graphs.get(order.ticker)
    series = result.series.get(order.ticker)
    if graph is None or series is None or order.buy_bar is None:
        return None
    start = max(0, order.buy_bar - SNAPSHOT_BARS_BEFORE)
    end = order.sell_bar if order.sell_bar is not None else min(series.rows - 1, graph.bars_processed - 1)
    window = series.slice_by_index(start, end + 1)

    indicators: dict[str, dict[str, list[float | None]]] = {}
    for name in order.dependent_indicator_names:
        node = graph.get(name)
        if isinstance(node, IndicatorNode):
            indicators[name] = {output: _finite(values) for output, values in node.window(start, end).items()}

    return {
        "order": order.to_dict(),
        "bars": {
            "dates": [format_bar_date(int(value), series.intraday) for value in window.time_ns],
            "open": _finite(window.open),
            "high": _finite(window.high),
            "low": _finite(window.low),
            "close": _finite(window.close),
        },
        "indicators": indicators,
    }


def write_run_output(result: RunResult, config: SimulatorConfig) -> dict[str, Path]:
    """Write overall, per-strategy, snapshot and optional higher-timeframe files."""
    out_dir = Path(config.output_folder)
    out_dir.mkdir(parents=True, exist_ok=True)
    written: dict[str, Path] = {}

    written["overall"] = _write_json(out_dir / "overall.json", build_overall(result))

    for name in result.ledger.strategy_names():
        payload = build_strategy_payload(result, name, include_orders=not config.use_abbreviated_output)
        written[f"strategy:{name}"] = _write_json(out_dir / "strategies" / f"{safe_name(name)}.json", payload)

    snapshot_count = 0
    for order in result.ledger.all_orders():
        if config.only_main_strategy_snapshots and order.strategy_name != result.main_strategy:
            continue
        if not order.is_finished():
            continue
        snapshot = build_snapshot(result, order)
        if snapshot is None:
            continue
        _write_json(out_dir / "snapshots" / f"{order.id}.json", snapshot)
        snapshot_count += 1

    orders_df = pd.DataFrame([order.to_record() for order in result.ledger.all_orders()])
    orders_path = out_dir / "orders.csv"
    orders_df.to_csv(orders_path, index=False)
    written["orders"] = orders_path

    if config.output_higher_timeframe_data:
        higher_dir = out_dir / "higher_timeframe"
        higher_dir.mkdir(parents=True, exist_ok=True)
        for ticker, series in sorted(result.series.items()):
            path = higher_dir / f"{ticker}.csv"
            higher_timeframe_frame(series).to_csv(path, index=False)
            written[f"higher:{ticker}"] = path

    logger.info(
        "Wrote output to %s (%s strategies, %s snapshots)",
        out_dir,
        len(result.ledger.strategy_names()),
        snapshot_count,
    )
    return written


def open_dashboard(path: str | Path, config: SimulatorConfig | None = None) -> bool:
    if config is not None and not config.should_open_web_page:
        return False
    target = Path(path).resolve()
    logger.info("Opening results at %s", target)
    return bool(webbrowser.open(target.as_uri()))
