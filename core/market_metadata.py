"""Shared ticker metadata and normalization helpers."""

from __future__ import annotations

import re

# User-facing aliases for exchange names.
EXCHANGE_ALIASES: dict[str, str] = {
    "NAS": "NASDAQ",
    "NSDQ": "NASDAQ",
    "NYS": "NYSE",
    "NEWYORK": "NYSE",
    "AMEX": "NYSEAMERICAN",
    "NYSEMKT": "NYSEAMERICAN",
    "ARCA": "NYSEARCA",
}

# Canonical data type aliases used across the store and the remote source.
DATA_TYPE_ALIASES: dict[str, str] = {
    "d": "daily",
    "1d": "daily",
    "day": "daily",
    "1m": "minute",
    "m1": "minute",
    "min": "minute",
    "2m": "twominute",
    "m2": "twominute",
    "3m": "threeminute",
    "m3": "threeminute",
    "5m": "fiveminute",
    "m5": "fiveminute",
}

SUPPORTED_DATA_TYPES = ("daily", "minute", "twominute", "threeminute", "fiveminute")

# Bar interval for each data type, in seconds.
DATA_TYPE_SECONDS: dict[str, int] = {
    "daily": 86_400,
    "minute": 60,
    "twominute": 120,
    "threeminute": 180,
    "fiveminute": 300,
}

_SYMBOL_RE = re.compile(r"^[A-Z0-9][A-Z0-9.\-]{0,14}$")
_EXCHANGE_RE = re.compile(r"^[A-Z][A-Z0-9]{1,15}$")

PRICE_PRECISION = 2


def normalize_symbol(raw: str) -> str:
    """Normalize a ticker symbol (e.g. ` aapl ` -> `AAPL`, `brk/b` -> `BRK.B`)."""
    if not raw or not str(raw).strip():
        raise ValueError("Symbol is required.")

    normalized = str(raw).strip().upper().replace("/", ".").replace(" ", "")
    if not _SYMBOL_RE.match(normalized):
        raise ValueError(f"Invalid symbol format: {raw}")
    return normalized


def normalize_exchange(raw: str) -> str:
    """Normalize an exchange code, resolving common aliases."""
    if not raw or not str(raw).strip():
        raise ValueError("Exchange is required.")

    normalized = str(raw).strip().upper().replace(" ", "").replace("-", "")
    normalized = EXCHANGE_ALIASES.get(normalized, normalized)
    if not _EXCHANGE_RE.match(normalized):
        raise ValueError(f"Invalid exchange format: {raw}")
    return normalized


def normalize_data_type(raw: str) -> str:
    """Normalize data type aliases to canonical form (daily/minute/twominute/threeminute/fiveminute)."""
    if not raw or not str(raw).strip():
        raise ValueError("Data type is required.")

    key = str(raw).strip().lower()
    if key in DATA_TYPE_ALIASES:
        return DATA_TYPE_ALIASES[key]
    if key in SUPPORTED_DATA_TYPES:
        return key

    raise ValueError(
        f"Unsupported data type: {raw}. "
        f"Supported values: {', '.join(SUPPORTED_DATA_TYPES)} (aliases 1d, 1m, 2m, 3m, 5m)."
    )


def is_intraday(data_type: str) -> bool:
    return normalize_data_type(data_type) != "daily"


def data_type_seconds(data_type: str) -> int:
    return DATA_TYPE_SECONDS[normalize_data_type(data_type)]


def round_price(value: float, precision: int = PRICE_PRECISION) -> float:
    """Round a price or money amount for output."""
    return round(float(value), precision)
