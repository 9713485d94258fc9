"""Simulator run configuration loaded from and saved to JSON."""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from core.market_metadata import SUPPORTED_DATA_TYPES, normalize_data_type

from .bars import TickerIdentity
from .orders import EntryMode, OrderSettings
from .sources import DEFAULT_REMOTE_URL

logger = logging.getLogger(__name__)

LOOKBACK_MODES = ("bars", "count")

DEFAULT_MAIN_STRATEGY_DEPENDENTS: tuple[str, ...] = (
    "BullSmaCrossover",
    "BullMacdCrossover",
    "BearMacdCrossover",
    "BullRsiCrossover30",
    "BearRsiCrossover70",
    "BullMomentumCrossover",
    "BullCciCrossover",
    "BullStochasticsFastCrossover",
    "BullWilliamsRCrossover",
    "BullKeltnerCloseAbove",
    "BullBollingerExtended",
    "BullBressertDss,10",
    "BearBressertDss,10",
)

_OVERRIDE_KEYS = {"size_of_order", "profit_target", "stop_target", "max_bars_order_open"}


def _parse_date(value: Any, key: str) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raw = str(value or "").strip()
    if not raw:
        raise ValueError(f"{key} is required")
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"Invalid {key} date: {value}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _format_date(value: datetime) -> str:
    if (value.hour, value.minute, value.second, value.microsecond) == (0, 0, 0, 0):
        return value.strftime("%Y-%m-%d")
    return value.isoformat().replace("+00:00", "Z")


def _today_utc() -> datetime:
    today = datetime.now(timezone.utc).date()
    return datetime(today.year, today.month, today.day, tzinfo=timezone.utc)


def _positive(payload: dict[str, Any], key: str, default: float) -> float:
    try:
        value = float(payload.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} must be a number") from exc
    if value <= 0:
        raise ValueError(f"{key} must be positive, got {value}")
    return value


def _non_negative_int(payload: dict[str, Any], key: str, default: int) -> int:
    try:
        value = int(payload.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} must be an integer") from exc
    if value < 0:
        raise ValueError(f"{key} must not be negative, got {value}")
    return value


@dataclass
class SimulatorConfig:
    data_type: str = "daily"
    start: datetime = field(default_factory=lambda: datetime(2010, 1, 4, tzinfo=timezone.utc))
    end: datetime = field(default_factory=lambda: datetime(2015, 3, 31, tzinfo=timezone.utc))
    use_todays_date: bool = False
    instruments: list[str] = field(default_factory=list)
    instrument_list_file: Path | None = None
    cache_dir: Path = Path("cache")
    output_folder: Path = Path("output")
    remote_url: str = DEFAULT_REMOTE_URL
    request_timeout: float = 30.0
    trend_strength: int = 4
    num_bars_higher_timeframe: int = 5
    max_lookback_bars: int = 500
    max_lookback_orders: int = 10
    lookback_mode: str = "bars"
    min_required_orders: int = 5
    max_concurrent_orders: int = 1
    commission: float = 4.95
    size_of_order: float = 10_000.0
    profit_target: float = 0.05
    stop_target: float = 0.05
    max_bars_order_open: int = 5
    entry_mode: EntryMode = EntryMode.NEXT_OPEN
    max_bars_limit_order_fill: int = 2
    tick_size: float = 0.01
    percent_for_buy: float = 50.0
    min_price_for_order: float = 0.75
    min_price_for_short: float = 5.0
    num_bars_to_delay_start: int = 250
    initial_account_balance: float = 100_000.0
    main_strategy: str = "BestOfStrategies"
    main_strategy_dependents: list[str] = field(default_factory=lambda: list(DEFAULT_MAIN_STRATEGY_DEPENDENTS))
    strategy_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)
    max_workers: int = 4
    use_abbreviated_output: bool = False
    only_main_strategy_snapshots: bool = True
    output_higher_timeframe_data: bool = False
    should_open_web_page: bool = True
    auto_run: bool = False
    close_after_run: bool = False
    config_path: Path | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, config_path: Path | None = None) -> "SimulatorConfig":
        if not isinstance(payload, dict):
            raise ValueError("Simulator config must be a JSON object")

        defaults = cls()
        data_type = normalize_data_type(payload.get("data_type", defaults.data_type))
        if data_type not in SUPPORTED_DATA_TYPES:
            raise ValueError(f"Unsupported data_type: {data_type}")

        use_todays_date = bool(payload.get("use_todays_date", defaults.use_todays_date))
        start = _parse_date(payload.get("start", defaults.start), "start")
        end = _today_utc() if use_todays_date else _parse_date(payload.get("end", defaults.end), "end")
        if start >= end:
            raise ValueError(f"start ({_format_date(start)}) must be before end ({_format_date(end)})")

        lookback_mode = str(payload.get("lookback_mode", defaults.lookback_mode)).strip().lower()
        if lookback_mode not in LOOKBACK_MODES:
            raise ValueError(f"lookback_mode must be one of {LOOKBACK_MODES}, got {lookback_mode!r}")

        percent_for_buy = _positive(payload, "percent_for_buy", defaults.percent_for_buy)
        if percent_for_buy > 100:
            raise ValueError(f"percent_for_buy must be at most 100, got {percent_for_buy}")

        instruments_raw = payload.get("instruments") or []
        if not isinstance(instruments_raw, list):
            raise ValueError("instruments must be a list of SYMBOL:EXCHANGE strings")
        instruments = [str(TickerIdentity.from_raw(item)) for item in instruments_raw]

        dependents_raw = payload.get("main_strategy_dependents", defaults.main_strategy_dependents)
        if not isinstance(dependents_raw, list):
            raise ValueError("main_strategy_dependents must be a list")
        dependents = [str(name).strip() for name in dependents_raw if str(name).strip()]

        overrides_raw = payload.get("strategy_overrides") or {}
        if not isinstance(overrides_raw, dict):
            raise ValueError("strategy_overrides must be a mapping of strategy name to settings")
        overrides: dict[str, dict[str, Any]] = {}
        for name, values in overrides_raw.items():
            if not isinstance(values, dict):
                raise ValueError(f"strategy_overrides[{name}] must be a mapping")
            unknown = set(values) - _OVERRIDE_KEYS
            if unknown:
                raise ValueError(f"Unsupported override keys for {name}: {sorted(unknown)}")
            overrides[str(name)] = dict(values)

        max_workers = int(payload.get("max_workers", defaults.max_workers))
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")

        list_file = payload.get("instrument_list_file")
        return cls(
            data_type=data_type,
            start=start,
            end=end,
            use_todays_date=use_todays_date,
            instruments=instruments,
            instrument_list_file=Path(list_file) if list_file else None,
            cache_dir=Path(payload.get("cache_dir") or defaults.cache_dir),
            output_folder=Path(payload.get("output_folder") or defaults.output_folder),
            remote_url=str(payload.get("remote_url") or defaults.remote_url),
            request_timeout=_positive(payload, "request_timeout", defaults.request_timeout),
            trend_strength=_non_negative_int(payload, "trend_strength", defaults.trend_strength),
            num_bars_higher_timeframe=int(_positive(payload, "num_bars_higher_timeframe", defaults.num_bars_higher_timeframe)),
            max_lookback_bars=int(_positive(payload, "max_lookback_bars", defaults.max_lookback_bars)),
            max_lookback_orders=int(_positive(payload, "max_lookback_orders", defaults.max_lookback_orders)),
            lookback_mode=lookback_mode,
            min_required_orders=_non_negative_int(payload, "min_required_orders", defaults.min_required_orders),
            max_concurrent_orders=int(_positive(payload, "max_concurrent_orders", defaults.max_concurrent_orders)),
            commission=float(payload.get("commission", defaults.commission)),
            size_of_order=_positive(payload, "size_of_order", defaults.size_of_order),
            profit_target=_positive(payload, "profit_target", defaults.profit_target),
            stop_target=_positive(payload, "stop_target", defaults.stop_target),
            max_bars_order_open=_non_negative_int(payload, "max_bars_order_open", defaults.max_bars_order_open),
            entry_mode=EntryMode.from_value(payload.get("entry_mode", defaults.entry_mode.value)),
            max_bars_limit_order_fill=int(
                _positive(payload, "max_bars_limit_order_fill", defaults.max_bars_limit_order_fill)
            ),
            tick_size=_positive(payload, "tick_size", defaults.tick_size),
            percent_for_buy=percent_for_buy,
            min_price_for_order=float(payload.get("min_price_for_order", defaults.min_price_for_order)),
            min_price_for_short=float(payload.get("min_price_for_short", defaults.min_price_for_short)),
            num_bars_to_delay_start=_non_negative_int(payload, "num_bars_to_delay_start", defaults.num_bars_to_delay_start),
            initial_account_balance=float(payload.get("initial_account_balance", defaults.initial_account_balance)),
            main_strategy=str(payload.get("main_strategy") or defaults.main_strategy).strip(),
            main_strategy_dependents=dependents,
            strategy_overrides=overrides,
            max_workers=max_workers,
            use_abbreviated_output=bool(payload.get("use_abbreviated_output", defaults.use_abbreviated_output)),
            only_main_strategy_snapshots=bool(
                payload.get("only_main_strategy_snapshots", defaults.only_main_strategy_snapshots)
            ),
            output_higher_timeframe_data=bool(
                payload.get("output_higher_timeframe_data", defaults.output_higher_timeframe_data)
            ),
            should_open_web_page=bool(payload.get("should_open_web_page", defaults.should_open_web_page)),
            auto_run=bool(payload.get("auto_run", defaults.auto_run)),
            close_after_run=bool(payload.get("close_after_run", defaults.close_after_run)),
            config_path=config_path,
        )

    @classmethod
    def from_path(cls, path: str | Path) -> "SimulatorConfig":
        config_path = Path(path)
        try:
            payload = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Config file is not valid JSON: {config_path}: {exc}") from exc
        config = cls.from_dict(payload, config_path=config_path)
        base_dir = config_path.parent
        if not config.cache_dir.is_absolute():
            config.cache_dir = (base_dir / config.cache_dir).resolve()
        if not config.output_folder.is_absolute():
            config.output_folder = (base_dir / config.output_folder).resolve()
        if config.instrument_list_file is not None and not config.instrument_list_file.is_absolute():
            config.instrument_list_file = (base_dir / config.instrument_list_file).resolve()
        return config

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_type": self.data_type,
            "start": _format_date(self.start),
            "end": _format_date(self.end),
            "use_todays_date": self.use_todays_date,
            "instruments": list(self.instruments),
            "instrument_list_file": str(self.instrument_list_file) if self.instrument_list_file else None,
            "cache_dir": str(self.cache_dir),
            "output_folder": str(self.output_folder),
            "remote_url": self.remote_url,
            "request_timeout": self.request_timeout,
            "trend_strength": self.trend_strength,
            "num_bars_higher_timeframe": self.num_bars_higher_timeframe,
            "max_lookback_bars": self.max_lookback_bars,
            "max_lookback_orders": self.max_lookback_orders,
            "lookback_mode": self.lookback_mode,
            "min_required_orders": self.min_required_orders,
            "max_concurrent_orders": self.max_concurrent_orders,
            "commission": self.commission,
            "size_of_order": self.size_of_order,
            "profit_target": self.profit_target,
            "stop_target": self.stop_target,
            "max_bars_order_open": self.max_bars_order_open,
            "entry_mode": self.entry_mode.value,
            "max_bars_limit_order_fill": self.max_bars_limit_order_fill,
            "tick_size": self.tick_size,
            "percent_for_buy": self.percent_for_buy,
            "min_price_for_order": self.min_price_for_order,
            "min_price_for_short": self.min_price_for_short,
            "num_bars_to_delay_start": self.num_bars_to_delay_start,
            "initial_account_balance": self.initial_account_balance,
            "main_strategy": self.main_strategy,
            "main_strategy_dependents": list(self.main_strategy_dependents),
            "strategy_overrides": {name: dict(values) for name, values in self.strategy_overrides.items()},
            "max_workers": self.max_workers,
            "use_abbreviated_output": self.use_abbreviated_output,
            "only_main_strategy_snapshots": self.only_main_strategy_snapshots,
            "output_higher_timeframe_data": self.output_higher_timeframe_data,
            "should_open_web_page": self.should_open_web_page,
            "auto_run": self.auto_run,
            "close_after_run": self.close_after_run,
        }

    def save(self, path: str | Path) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return target

    def with_flags(
        self,
        auto_run: bool | None = None,
        close_after_run: bool | None = None,
        config_path: str | Path | None = None,
    ) -> "SimulatorConfig":
        return replace(
            self,
            auto_run=self.auto_run if auto_run is None else bool(auto_run),
            close_after_run=self.close_after_run if close_after_run is None else bool(close_after_run),
            config_path=self.config_path if config_path is None else Path(config_path),
        )

    def lookback_kwargs(self) -> dict[str, int]:
        if self.lookback_mode == "count":
            return {"lookback_count": self.max_lookback_orders}
        return {"lookback_bars": self.max_lookback_bars}

    def order_settings(self, strategy_name: str | None = None) -> OrderSettings:
        base = OrderSettings(
            size_of_order=self.size_of_order,
            profit_target=self.profit_target,
            stop_target=self.stop_target,
            max_bars_order_open=self.max_bars_order_open,
            entry_mode=self.entry_mode,
            max_bars_limit_order_fill=self.max_bars_limit_order_fill,
            tick_size=self.tick_size,
            commission=self.commission,
        )
        if strategy_name is None:
            return base
        overrides = self.strategy_overrides.get(strategy_name)
        if overrides is None:
            overrides = self.strategy_overrides.get(strategy_name.split(",", 1)[0].strip())
        return base.with_overrides(overrides)

    def tickers(self) -> list[TickerIdentity]:
        """Configured instruments followed by the instrument list file, deduped in order."""
        seen: set[TickerIdentity] = set()
        result: list[TickerIdentity] = []
        for raw in [*self.instruments, *self._list_file_tickers()]:
            ticker = TickerIdentity.from_raw(raw)
            if ticker not in seen:
                seen.add(ticker)
                result.append(ticker)
        return result

    def _list_file_tickers(self) -> list[TickerIdentity]:
        if self.instrument_list_file is None:
            return []
        path = Path(self.instrument_list_file)
        if not path.exists():
            raise ValueError(f"Instrument list file not found: {path}")
        tickers: list[TickerIdentity] = []
        with path.open("r", encoding="utf-8", newline="") as handle:
            reader = csv.DictReader(handle)
            fieldnames = [name.strip().lower() for name in reader.fieldnames or []]
            if "symbol" not in fieldnames or "exchange" not in fieldnames:
                raise ValueError(f"Instrument list file needs symbol,exchange columns: {path}")
            for row in reader:
                normalized = {str(key).strip().lower(): value for key, value in row.items() if key}
                symbol = str(normalized.get("symbol") or "").strip()
                if not symbol:
                    continue
                tickers.append(TickerIdentity(symbol=symbol, exchange=str(normalized.get("exchange") or "")))
        logger.debug("Read %s tickers from %s", len(tickers), path)
        return tickers
