"""Typed errors raised by the simulation engine."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence


class SimulatorError(Exception):
    """Base class for simulator errors."""


class DataUnavailable(SimulatorError):
    """Raised when bars for one ticker cannot be fetched or parsed."""

    def __init__(self, ticker: Any, reason: str):
        self.ticker = ticker
        self.reason = reason
        super().__init__(f"No data available for {ticker}: {reason}")


class MalformedCache(SimulatorError):
    """Raised when a disk cache file exists but cannot be trusted."""

    def __init__(self, path: str | Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Malformed cache file {self.path}: {reason}")


class UnknownRunnable(SimulatorError):
    """Raised when an indicator or strategy name is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown runnable: {name}")


class DuplicateOrderId(SimulatorError):
    """Raised when the ledger receives an order id it already holds."""

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Duplicate order id: {order_id}")


class CyclicDependency(SimulatorError):
    """Raised when runnable dependencies form a cycle."""

    def __init__(self, path: Sequence[str]):
        self.path = tuple(path)
        super().__init__("Cyclic runnable dependency: " + " -> ".join(self.path))
