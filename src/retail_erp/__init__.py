"""Retail ERP sale-transaction core.

Importing the package wires the shared ``retail_erp`` logger that every
submodule reuses through ``from . import log``. Records go to a rotating
file under ``.logs/`` and to stderr. Because sales may be processed from
several threads, each record carries the thread name.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "retail_erp.log"
LOG_LEVEL_ENV = "RETAIL_ERP_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(threadName)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_level() -> int:
    """Return the level named by ``RETAIL_ERP_LOG_LEVEL``, or INFO."""

    name = os.environ.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _file_handler() -> Optional[logging.Handler]:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        sys.stderr.write(f"retail_erp: file logging disabled, cannot open '{LOG_FILE}': {exc}\n")
        return None
    return handler


def _build_logger() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        # Already wired, e.g. on module reload.
        return logger

    level = _resolve_level()
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = [_file_handler(), logging.StreamHandler(sys.stderr)]
    for handler in handlers:
        if handler is None:
            continue
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


log = _build_logger()
log.debug("retail_erp %s logging ready (level %s)", __version__, logging.getLevelName(log.level))
