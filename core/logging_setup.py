"""Logging for simulator runs: rotating file log plus console progress."""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

LOG_FILE_NAME = 'simulator.log'

# HTTP client chatter drowns per-ticker progress at INFO.
QUIET_LOGGERS = ('urllib3', 'requests')


def teardown_logging(logger: Optional[logging.Logger] = None) -> None:
    """Flush, detach, and close all handlers from the provided logger."""
    target = logger or logging.getLogger()
    for handler in list(target.handlers):
        target.removeHandler(handler)
        try:
            handler.flush()
            handler.close()
        except (OSError, ValueError):
            # Handlers on a closed stream; nothing left to release.
            pass


def setup_logging(
    log_level: str = 'INFO',
    logs_dir: Optional[Path] = None,
    console_output: bool = True
) -> logging.Logger:
    """
    Route simulator logs to `logs/simulator.log` and, optionally, stdout.

    The file keeps DEBUG detail (per-order and cache decisions); the console only
    shows INFO progress such as state changes and completed ticker counts. Ticker
    pipelines run on a thread pool, so each record carries its thread name.

    Args:
        log_level: Root level (DEBUG, INFO, WARNING, ERROR)
        logs_dir: Directory for the log file, defaults to `logs/` under the cwd
        console_output: Whether to stream progress messages to stdout

    Returns:
        Configured root logger
    """
    logs_dir = Path(logs_dir) if logs_dir is not None else Path.cwd() / 'logs'
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Release handlers from a previous run so repeated runs do not duplicate output.
    teardown_logging(logger)

    file_formatter = logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_formatter = logging.Formatter('%(asctime)s | %(levelname)-8s | %(message)s', datefmt='%H:%M:%S')

    log_file = logs_dir / LOG_FILE_NAME
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5 MB
        backupCount=3,
        encoding='utf-8',
        delay=True
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)
    logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging initialized at %s level, file %s", log_level, log_file)
    return logger
