"""CLI for running the stock strategy simulator from a JSON config."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

_HERE = Path(__file__).parent
if str(_HERE) not in sys.path:
    sys.path.insert(0, str(_HERE))

from core.logging_setup import setup_logging  # noqa: E402
from stocksim import (  # noqa: E402
    CyclicDependency,
    DuplicateOrderId,
    SimulatorConfig,
    UnknownRunnable,
    open_dashboard,
    run_simulation,
    write_run_output,
)

EXIT_OK = 0
EXIT_CANCELLED = 1
EXIT_MISSING_CONFIG = 2
EXIT_INVALID_CONFIG = 3
EXIT_FATAL = 4


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stock strategy simulator")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--config", help="Path to the simulator JSON config (defaults apply when omitted)")
    parser.add_argument("--run", action="store_true", help="Start the simulation immediately")
    parser.add_argument("--close-after-run", action="store_true", help="Do not open the results page after the run")
    parser.add_argument("--write-default-config", metavar="PATH", help="Write a config with default values and exit")
    return parser.parse_args(argv)


def _load_config(args: argparse.Namespace) -> SimulatorConfig | int:
    logger = logging.getLogger(__name__)
    if not args.config:
        return SimulatorConfig()

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("config does not exist: %s", config_path)
        return EXIT_MISSING_CONFIG
    try:
        return SimulatorConfig.from_path(config_path)
    except ValueError as exc:
        logger.error("Invalid config %s: %s", config_path, exc)
        return EXIT_INVALID_CONFIG


def _run(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)

    if args.write_default_config:
        path = SimulatorConfig().save(args.write_default_config)
        logger.info("Wrote default config to %s", path)
        return EXIT_OK

    loaded = _load_config(args)
    if isinstance(loaded, int):
        return loaded
    config = loaded.with_flags(
        auto_run=True if args.run else None,
        close_after_run=True if args.close_after_run else None,
        config_path=args.config,
    )

    if not config.auto_run:
        logger.info("Loaded config (use --run to start): %s", config.to_dict())
        return EXIT_OK

    try:
        result = run_simulation(config)
    except ValueError as exc:
        logger.error("Invalid config: %s", exc)
        return EXIT_INVALID_CONFIG
    except (DuplicateOrderId, CyclicDependency, UnknownRunnable) as exc:
        logger.error("Run aborted: %s", exc)
        return EXIT_FATAL

    paths = write_run_output(result, config)
    logger.info("Overall: %s", result.overall.to_dict())
    if not config.close_after_run:
        open_dashboard(paths["overall"], config)
    return EXIT_CANCELLED if result.cancelled else EXIT_OK


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    setup_logging(log_level=args.log_level)
    raise SystemExit(_run(args))


if __name__ == "__main__":
    main()
