"""Core utilities shared by the simulator engine and CLI."""

from .logging_setup import setup_logging, teardown_logging
from .market_metadata import (
    DATA_TYPE_ALIASES,
    DATA_TYPE_SECONDS,
    EXCHANGE_ALIASES,
    SUPPORTED_DATA_TYPES,
    data_type_seconds,
    is_intraday,
    normalize_data_type,
    normalize_exchange,
    normalize_symbol,
    round_price,
)

__all__ = [
    "setup_logging",
    "teardown_logging",
    "EXCHANGE_ALIASES",
    "DATA_TYPE_ALIASES",
    "DATA_TYPE_SECONDS",
    "SUPPORTED_DATA_TYPES",
    "normalize_symbol",
    "normalize_exchange",
    "normalize_data_type",
    "is_intraday",
    "data_type_seconds",
    "round_price",
]
