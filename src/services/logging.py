"""Logging setup for the drawdown API server and the billing run CLI.

Both processes log to stdout and to a file. The level comes from the
validated AppConfig.log_level when given, else from the LOG_LEVEL env var
(default INFO). Billing runs log through a per-run adapter so every line of
one run can be picked out of the shared file.
"""

import logging
import os
import sys
from collections.abc import Iterable, MutableMapping
from pathlib import Path
from typing import Any

LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

LOG_FORMAT = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty at INFO: SQL echo and one line per HTTP request
QUIET_LOGGERS = ("sqlalchemy.engine", "uvicorn.access")


def get_log_level(level: str | None = None) -> int:
    """Resolve a level name (or LOG_LEVEL when None) to a logging constant.

    Unknown names resolve to INFO.
    """
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    return LOG_LEVEL_MAP.get(name, logging.INFO)


def setup_server_logging(
    log_file: str = "logs/server.log",
    level: str | None = None,
    quiet: Iterable[str] = QUIET_LOGGERS,
) -> None:
    """Install stdout and file handlers on the root logger.

    Args:
        log_file: Path of the log file; missing directories are created
        level: Level name; falls back to LOG_LEVEL
        quiet: Loggers held at WARNING unless the level is DEBUG

    Calling it again replaces the handlers instead of adding duplicates.
    """
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    log_level = get_log_level(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    for handler in (logging.StreamHandler(sys.stdout), logging.FileHandler(log_path)):
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING)


class BillingRunLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with the billing run id and scope."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[run {self.extra['run_id']} {self.extra['scope']}] {msg}", kwargs


def billing_run_logger(logger: logging.Logger, run_id: int, scope: str) -> BillingRunLogAdapter:
    return BillingRunLogAdapter(logger, {"run_id": run_id, "scope": scope})


__all__ = [
    "BillingRunLogAdapter",
    "LOG_LEVEL_MAP",
    "QUIET_LOGGERS",
    "billing_run_logger",
    "get_log_level",
    "setup_server_logging",
]
