"""Remote bar sources and the CSV-like wire format they return."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol

import requests

from core.market_metadata import DATA_TYPE_SECONDS, data_type_seconds

from .bars import Bar, TickerIdentity, coerce_time_ns, datetime_to_ns
from .errors import DataUnavailable

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_URL = "https://www.google.com/finance/getprices"
MIN_VALID_PRICE = 0.01
_NS_PER_SECOND = 1_000_000_000
_DATE_FORMATS = ("%d-%b-%y", "%Y-%m-%d", "%m/%d/%Y", "%b %d, %Y")
_DEFAULT_COLUMNS = ("DATE", "OPEN", "HIGH", "LOW", "CLOSE", "VOLUME")


class BarSource(Protocol):
    def fetch(self, ticker: TickerIdentity, data_type: str, start_ns: int, end_ns: int) -> list[Bar]: ...


def _is_valid_price(token: str) -> bool:
    token = token.strip()
    if not token or token == "-":
        return False
    try:
        return float(token) > MIN_VALID_PRICE
    except ValueError:
        return False


def _is_valid_volume(token: str) -> bool:
    token = token.strip()
    if not token or token == "-":
        return False
    try:
        return float(token) >= 0.0
    except ValueError:
        return False


def _parse_calendar_date(token: str) -> int | None:
    for fmt in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(token, fmt)
        except ValueError:
            continue
        return datetime_to_ns(parsed.replace(tzinfo=timezone.utc))
    try:
        return coerce_time_ns(token)
    except ValueError:
        return None


def parse_bar_rows(text: str, interval_seconds: int = DATA_TYPE_SECONDS["daily"]) -> list[Bar]:
    """Parse a date,OHLCV table into bars; invalid rows are skipped, not fatal.

    Supports epoch-second dates, calendar dates, and the compact `a<epoch>` form where
    following rows carry an offset counted in `interval_seconds` from the last anchor.
    A `COLUMNS=` line or a named header row reorders the price columns.
    """
    columns = _DEFAULT_COLUMNS
    anchor_seconds: int | None = None
    bars: list[Bar] = []
    skipped = 0

    for raw_line in (text or "").splitlines():
        line = raw_line.strip().lstrip("﻿")
        if not line:
            continue
        upper = line.upper()
        if upper.startswith("COLUMNS="):
            columns = tuple(name.strip() for name in upper.split("=", 1)[1].split(","))
            continue
        if "=" in line:
            # Metadata such as EXCHANGE%3DNASDAQ or INTERVAL=60.
            continue

        parts = [part.strip() for part in line.split(",")]
        first = parts[0].upper()
        if first in ("DATE", "TIME", "TIMESTAMP"):
            columns = tuple(part.upper() for part in parts)
            continue
        if len(parts) < 6:
            skipped += 1
            continue

        field_map = dict(zip(columns, parts))
        prices = [field_map.get(name, "") for name in ("OPEN", "HIGH", "LOW", "CLOSE")]
        volume = field_map.get("VOLUME", "")

        date_token = parts[0]
        time_ns: int | None
        if date_token[:1] in ("a", "A") and date_token[1:].isdigit():
            anchor_seconds = int(date_token[1:])
            time_ns = anchor_seconds * _NS_PER_SECOND
        elif date_token.isdigit():
            value = int(date_token)
            if anchor_seconds is not None and value < 1_000_000:
                time_ns = (anchor_seconds + value * interval_seconds) * _NS_PER_SECOND
            else:
                time_ns = value * _NS_PER_SECOND
        else:
            time_ns = _parse_calendar_date(date_token)

        if time_ns is None or not all(_is_valid_price(token) for token in prices) or not _is_valid_volume(volume):
            skipped += 1
            continue

        open_, high, low, close = (float(token) for token in prices)
        bars.append(Bar(time_ns=time_ns, open=open_, high=high, low=low, close=close, volume=float(volume)))

    if skipped:
        logger.debug("Skipped %s invalid rows while parsing bar data", skipped)
    return bars


class HttpBarSource:
    """Fetches bar tables over HTTP GET."""

    def __init__(
        self,
        base_url: str = DEFAULT_REMOTE_URL,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    def build_params(self, ticker: TickerIdentity, data_type: str, start_ns: int, end_ns: int) -> dict[str, str]:
        start = datetime.fromtimestamp(start_ns / _NS_PER_SECOND, tz=timezone.utc)
        end = datetime.fromtimestamp(end_ns / _NS_PER_SECOND, tz=timezone.utc)
        return {
            "q": ticker.symbol,
            "x": ticker.exchange,
            "i": str(data_type_seconds(data_type)),
            "startdate": start.strftime("%b %d, %Y"),
            "enddate": end.strftime("%b %d, %Y"),
            "output": "csv",
        }

    def fetch(self, ticker: TickerIdentity, data_type: str, start_ns: int, end_ns: int) -> list[Bar]:
        params = self.build_params(ticker, data_type, start_ns, end_ns)
        logger.debug("Requesting %s bars for %s from %s", data_type, ticker, self.base_url)
        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise DataUnavailable(ticker, f"request failed: {exc}") from exc

        try:
            return parse_bar_rows(response.text, data_type_seconds(data_type))
        except ValueError as exc:
            raise DataUnavailable(ticker, f"unparseable response: {exc}") from exc
