"""FabLab inventory ledger.

Importing the package configures the shared ``fablab_ledger`` logger that the
data layer, the ledger rules and the CLI write to. Two environment variables
adjust it without touching code:

* ``FABLAB_LEDGER_LOG_DIR``: folder for ``fablab_ledger.log`` (default
  ``<project>/.logs``);
* ``FABLAB_LEDGER_LOG_LEVEL``: level name such as ``DEBUG`` (default ``INFO``).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "FABLAB_LEDGER_LOG_DIR"
LOG_LEVEL_ENV = "FABLAB_LEDGER_LOG_LEVEL"
LOG_FILE_NAME = "fablab_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _coerce_level(raw_level: object) -> int:
    """Map a level name to its ``logging`` constant; unknown names mean INFO."""

    if isinstance(raw_level, str):
        candidate = getattr(logging, raw_level.strip().upper(), None)
        if isinstance(candidate, int):
            return candidate
    return logging.INFO


def resolve_log_settings(environ: Mapping[str, str] = os.environ) -> tuple[Path, int]:
    """Return the log file path and level selected by the environment."""

    log_dir = environ.get(LOG_DIR_ENV) or PROJECT_ROOT / ".logs"
    return Path(log_dir).expanduser() / LOG_FILE_NAME, _coerce_level(environ.get(LOG_LEVEL_ENV))


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    log_file, level = resolve_log_settings()
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(f"Warning: ledger log file '{log_file}' unavailable, logging to stderr only: {exc}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Ledger logging ready (level=%s)", logging.getLevelName(log.level))
