"""PMR ledger: bucket inventory, production stock and cash accounts kept in an Excel workbook.

Importing the package configures the shared :data:`log` used by every module.
Records go to a rotating file under ``.logs`` (or ``$PMR_LEDGER_LOG_DIR``) and
to stderr. ``$PMR_LEDGER_LOG_LEVEL`` overrides the default ``INFO`` level.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("PMR_LEDGER_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "pmr_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUPS = 5


def _log_level() -> int:
    name = os.environ.get("PMR_LEDGER_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
    except OSError as exc:
        # A read-only install still gets stderr logging.
        print(f"pmr_ledger: file logging disabled ({LOG_FILE}): {exc}", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach the file and stderr handlers once per process."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _log_level()
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [_file_handler(formatter), logging.StreamHandler(sys.stderr)]
    for handler in handlers:
        if handler is None:
            continue
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


log = _configure_logging()
log.debug("Logging to %s at level %s", LOG_FILE, logging.getLevelName(log.level))
