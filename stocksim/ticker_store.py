"""Tiered bar store: memory, then disk cache, then remote source."""

from __future__ import annotations

import csv
import logging
import shutil
import threading
from pathlib import Path
from typing import Any

import numpy as np

from core.market_metadata import SUPPORTED_DATA_TYPES, normalize_data_type

from .bars import BarSeries, TickerIdentity, build_series, coerce_time_ns, series_from_bars
from .errors import DataUnavailable, MalformedCache
from .higher_timeframe import HIGHER_VALUE_NAMES, derive_higher_timeframe
from .sources import BarSource

logger = logging.getLogger(__name__)

EARLIEST_NS = 0
DATA_TYPE_FOLDERS: dict[str, str] = {data_type: data_type for data_type in SUPPORTED_DATA_TYPES}
CACHE_COLUMNS: tuple[str, ...] = (
    "Date",
    "Open",
    "High",
    "Low",
    "Close",
    "Volume",
    "Typical",
    "Median",
    "HigherState",
    *HIGHER_VALUE_NAMES,
)
_NS_PER_SECOND = 1_000_000_000


def _format_number(value: float) -> str:
    value = float(value)
    if np.isnan(value):
        return "nan"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def write_cache_file(path: str | Path, series: BarSeries) -> None:
    """Persist a series with its requested range on the first line."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    start_ns = series.requested_start_ns if series.requested_start_ns is not None else series.start_ns or 0
    end_ns = series.requested_end_ns if series.requested_end_ns is not None else series.end_ns or 0

    tmp_path = target.with_suffix(target.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8", newline="") as handle:
        handle.write(f"{start_ns // _NS_PER_SECOND},{end_ns // _NS_PER_SECOND},\n")
        writer = csv.writer(handle, lineterminator="\n")
        writer.writerow(CACHE_COLUMNS)
        higher = series.has_higher_timeframe
        for i in range(series.rows):
            row = [
                str(int(series.time_ns[i]) // _NS_PER_SECOND),
                _format_number(series.open[i]),
                _format_number(series.high[i]),
                _format_number(series.low[i]),
                _format_number(series.close[i]),
                _format_number(series.volume[i]),
                _format_number(series.typical[i]),
                _format_number(series.median[i]),
                _format_number(series.higher_state[i]) if higher else "nan",
            ]
            for name in HIGHER_VALUE_NAMES:
                values = series.higher_values.get(name)
                row.append(_format_number(values[i]) if values is not None else "nan")
            writer.writerow(row)
    tmp_path.replace(target)


def read_cache_file(path: str | Path, ticker: TickerIdentity, data_type: str) -> BarSeries:
    """Load a cache file written by `write_cache_file`; any inconsistency is MalformedCache."""
    source = Path(path)
    try:
        with source.open("r", encoding="utf-8", newline="") as handle:
            range_line = handle.readline().strip().split(",")
            if len(range_line) < 2:
                raise MalformedCache(source, "missing requested range line")
            requested_start_ns = int(range_line[0]) * _NS_PER_SECOND
            requested_end_ns = int(range_line[1]) * _NS_PER_SECOND

            reader = csv.reader(handle)
            header = next(reader, None)
            if header is None or tuple(column.strip() for column in header) != CACHE_COLUMNS:
                raise MalformedCache(source, f"unexpected header {header}")

            columns: list[list[float]] = [[] for _ in CACHE_COLUMNS]
            for line_number, row in enumerate(reader, start=3):
                if not row:
                    continue
                if len(row) != len(CACHE_COLUMNS):
                    raise MalformedCache(source, f"line {line_number} has {len(row)} fields")
                columns[0].append(int(row[0]) * _NS_PER_SECOND)
                for index in range(1, len(CACHE_COLUMNS)):
                    columns[index].append(float(row[index]))
    except MalformedCache:
        raise
    except (OSError, ValueError, csv.Error) as exc:
        raise MalformedCache(source, str(exc)) from exc

    if not columns[0]:
        raise MalformedCache(source, "no bars")

    by_name = dict(zip(CACHE_COLUMNS, columns))
    higher_state = np.asarray(by_name["HigherState"], dtype=np.float64)
    has_higher = not bool(np.isnan(higher_state).all())
    try:
        return build_series(
            ticker,
            data_type,
            time_ns=by_name["Date"],
            open=by_name["Open"],
            high=by_name["High"],
            low=by_name["Low"],
            close=by_name["Close"],
            volume=by_name["Volume"],
            typical=by_name["Typical"],
            median=by_name["Median"],
            higher_state=higher_state if has_higher else None,
            higher_values={name: by_name[name] for name in HIGHER_VALUE_NAMES} if has_higher else None,
            requested_start_ns=requested_start_ns,
            requested_end_ns=requested_end_ns,
        )
    except ValueError as exc:
        raise MalformedCache(source, str(exc)) from exc


class TickerStore:
    """Resolve bar series per ticker; concurrent callers for one ticker share a single load."""

    def __init__(
        self,
        cache_dir: str | Path,
        source: BarSource | None = None,
        data_type: str = "daily",
        num_bars_higher_timeframe: int = 5,
        derive_higher: bool = True,
    ):
        self.cache_dir = Path(cache_dir)
        self.source = source
        self.data_type = normalize_data_type(data_type)
        self.num_bars_higher_timeframe = int(num_bars_higher_timeframe)
        self.derive_higher = derive_higher
        self._series: dict[TickerIdentity, BarSeries] = {}
        self._loading_keys: set[TickerIdentity] = set()
        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)
        self._dates_lock = threading.Lock()
        self._trading_dates: set[int] = set()

    @property
    def cache_folder(self) -> Path:
        return self.cache_dir / DATA_TYPE_FOLDERS[self.data_type]

    def cache_path(self, ticker: Any) -> Path:
        return self.cache_folder / f"{TickerIdentity.from_raw(ticker)}.csv"

    def get(self, ticker: Any, start: Any | None = None, end: Any | None = None) -> BarSeries:
        key = TickerIdentity.from_raw(ticker)
        start_ns = coerce_time_ns(start)
        end_ns = coerce_time_ns(end)
        if start_ns is None:
            start_ns = EARLIEST_NS
        if end_ns is None:
            end_ns = np.iinfo(np.int64).max
        if start_ns > end_ns:
            raise ValueError(f"start must not be after end for {key}")

        with self._cv:
            while True:
                cached = self._series.get(key)
                if cached is not None and cached.covers(start_ns, end_ns):
                    logger.debug("[%s] Memory cache hit", key)
                    return cached.narrow(start_ns, end_ns)
                if key not in self._loading_keys:
                    break
                self._cv.wait()

            self._loading_keys.add(key)
            load_start, load_end = start_ns, end_ns
            if cached is not None:
                # Widen to the union so earlier callers' ranges stay covered.
                load_start = min(start_ns, cached.requested_start_ns if cached.requested_start_ns is not None else start_ns)
                load_end = max(end_ns, cached.requested_end_ns if cached.requested_end_ns is not None else end_ns)
                logger.debug("[%s] Memory cache too narrow, reloading wider range", key)

        try:
            series = self._load(key, load_start, load_end)
        except Exception:
            with self._cv:
                self._loading_keys.discard(key)
                self._cv.notify_all()
            raise

        with self._cv:
            self._series[key] = series
            self._loading_keys.discard(key)
            self._cv.notify_all()
        self._record_trading_dates(series)
        return series.narrow(start_ns, end_ns)

    def _load(self, ticker: TickerIdentity, start_ns: int, end_ns: int) -> BarSeries:
        path = self.cache_path(ticker)
        if path.exists():
            try:
                disk = read_cache_file(path, ticker, self.data_type)
            except MalformedCache as exc:
                logger.warning("[%s] %s; fetching from remote", ticker, exc)
            else:
                if disk.covers(start_ns, end_ns):
                    logger.debug("[%s] Disk cache hit %s", ticker, path)
                    return disk
                logger.debug("[%s] Disk cache does not cover request, refetching", ticker)

        series = self._fetch_remote(ticker, start_ns, end_ns)
        try:
            write_cache_file(path, series)
        except OSError as exc:
            logger.warning("[%s] Could not write cache file %s: %s", ticker, path, exc)
        return series

    def _fetch_remote(self, ticker: TickerIdentity, start_ns: int, end_ns: int) -> BarSeries:
        if self.source is None:
            raise DataUnavailable(ticker, "no remote source configured")

        logger.debug("[%s] Fetching %s history from remote", ticker, self.data_type)
        try:
            rows = self.source.fetch(ticker, self.data_type, EARLIEST_NS, end_ns)
        except DataUnavailable as exc:
            logger.error("[%s] Remote fetch failed: %s", ticker, exc.reason)
            raise
        except Exception as exc:
            # Sources are pluggable; whatever they raise is this ticker's problem only.
            logger.error("[%s] Remote fetch failed: %s", ticker, exc)
            raise DataUnavailable(ticker, str(exc)) from exc

        rows = [row for row in rows if row.time_ns <= end_ns]
        if not rows:
            raise DataUnavailable(ticker, "source returned no valid bars")

        series = series_from_bars(ticker, self.data_type, rows, start_ns, end_ns)
        if self.derive_higher:
            states, values = derive_higher_timeframe(
                series.time_ns,
                series.open,
                series.high,
                series.low,
                series.close,
                series.volume,
                self.data_type,
                self.num_bars_higher_timeframe,
            )
            series = build_series(
                ticker,
                self.data_type,
                time_ns=series.time_ns,
                open=series.open,
                high=series.high,
                low=series.low,
                close=series.close,
                volume=series.volume,
                typical=series.typical,
                median=series.median,
                higher_state=states,
                higher_values=values,
                requested_start_ns=start_ns,
                requested_end_ns=end_ns,
            )
        logger.info("[%s] Loaded %s bars from remote", ticker, series.rows)
        return series

    def _record_trading_dates(self, series: BarSeries) -> None:
        with self._dates_lock:
            self._trading_dates.update(int(value) for value in series.time_ns)

    def trading_dates(self, start: Any | None = None, end: Any | None = None) -> np.ndarray:
        with self._dates_lock:
            dates = np.asarray(sorted(self._trading_dates), dtype=np.int64)
        start_ns = coerce_time_ns(start)
        end_ns = coerce_time_ns(end)
        if start_ns is not None:
            dates = dates[dates >= start_ns]
        if end_ns is not None:
            dates = dates[dates <= end_ns]
        return dates

    def loaded_tickers(self) -> list[TickerIdentity]:
        with self._lock:
            return list(self._series)

    def evict(self, ticker: Any) -> bool:
        key = TickerIdentity.from_raw(ticker)
        with self._cv:
            removed = self._series.pop(key, None) is not None
            self._cv.notify_all()
        return removed

    def clear_cache(self) -> None:
        """Drop every in-memory series and the disk folder for this data type."""
        with self._cv:
            self._series.clear()
            self._cv.notify_all()
        with self._dates_lock:
            self._trading_dates.clear()
        folder = self.cache_folder
        if folder.exists():
            shutil.rmtree(folder)
            logger.info("Cleared cache folder %s", folder)
