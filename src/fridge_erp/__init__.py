"""Fridge ERP: sale, return and credit settlement over an Excel workbook.

The package logger is configured on import. Log files go to
``$FRIDGE_ERP_LOG_DIR`` when set, otherwise to ``.logs`` under the current
working directory. ``FRIDGE_ERP_LOG_LEVEL`` overrides the default ``INFO``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping


LOG_DIR_ENV = "FRIDGE_ERP_LOG_DIR"
LOG_LEVEL_ENV = "FRIDGE_ERP_LOG_LEVEL"
LOG_FILE_NAME = "fridge_erp.log"


def resolve_log_dir(environ: Mapping[str, str] = os.environ) -> Path:
    """Return the directory the rotating log file is written to."""

    configured = environ.get(LOG_DIR_ENV, "").strip()
    if configured:
        return Path(configured).expanduser()
    return Path.cwd() / ".logs"


def resolve_log_level(environ: Mapping[str, str] = os.environ) -> int:
    """Return the logging level named by ``FRIDGE_ERP_LOG_LEVEL``, or ``INFO``."""

    name = environ.get(LOG_LEVEL_ENV, "").strip().upper()
    level = logging.getLevelName(name) if name else logging.INFO
    return level if isinstance(level, int) else logging.INFO


def _configure_logging() -> logging.Logger:
    """Attach a rotating file handler and a stderr handler to the package logger."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = resolve_log_level()
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log_file = resolve_log_dir() / LOG_FILE_NAME
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to initialize log file at '{log_file}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'fridge_erp' package.")

# Submodules import ``log`` from here, so the public API is bound after it.
from .core_logic import RuntimeContext, load_runtime_context  # noqa: E402
from .credit import CreditAccountManager, CreditUpdate  # noqa: E402
from .errors import (  # noqa: E402
    BundleDefinitionError,
    BusinessRuleViolation,
    CreditBlockedError,
    CreditLimitExceededError,
    GiftCardUnavailableError,
    InsufficientStockError,
    InvalidTransitionError,
    MissingReferenceError,
    OverdraftError,
    PersistenceCommitError,
    ReturnQuantityError,
)
from .gateway import PersistenceGateway, UnitOfWork  # noqa: E402
from .settlement import OptimisticView, SaleRequest, SettlementCoordinator, SettlementResult  # noqa: E402


__all__ = [
    "log",
    "resolve_log_dir",
    "resolve_log_level",
    "RuntimeContext",
    "load_runtime_context",
    "PersistenceGateway",
    "UnitOfWork",
    "SettlementCoordinator",
    "SaleRequest",
    "SettlementResult",
    "OptimisticView",
    "CreditAccountManager",
    "CreditUpdate",
    "BusinessRuleViolation",
    "MissingReferenceError",
    "BundleDefinitionError",
    "InsufficientStockError",
    "GiftCardUnavailableError",
    "OverdraftError",
    "CreditBlockedError",
    "CreditLimitExceededError",
    "InvalidTransitionError",
    "ReturnQuantityError",
    "PersistenceCommitError",
]
