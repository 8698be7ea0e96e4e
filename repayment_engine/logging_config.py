"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for ledger operations. Library
modules only obtain loggers under the "repayment_engine" namespace; handlers
are attached by the hosting process through setup_logging().
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

ROOT_LOGGER_NAME = "repayment_engine"

_STRUCTURED_FIELDS = ("loan_id", "installment_number", "action", "correlation_id", "extra")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module if hasattr(record, 'module') else record.name,
            "message": record.getMessage(),
        }
        for name in _STRUCTURED_FIELDS:
            log_entry[name] = getattr(record, name, None)

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    logger_name: str = ROOT_LOGGER_NAME
) -> logging.Logger:
    """
    Setup structured logging for the engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for JSONFormatter, anything else for plain text
        log_file: Path of a log file; stdout/stderr when None
        logger_name: Name of the logger

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler: logging.Handler
    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        ))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def setup_logging_from_config(config) -> logging.Logger:
    """Setup logging from an EngineConfig"""
    return setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """Get logger instance under the engine namespace"""
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               loan_id: Optional[str] = None, installment_number: Optional[int] = None,
               action: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a ledger action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        loan_id: Loan the action applies to
        installment_number: Installment the action applies to
        action: Action being performed
        correlation_id: Correlation ID for request tracing
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno,
        __name__, 0, message, (), None
    )

    if loan_id:
        record.loan_id = loan_id
    if installment_number is not None:
        record.installment_number = installment_number
    if action:
        record.action = action
    if correlation_id:
        record.correlation_id = correlation_id
    if extra:
        record.extra = extra

    logger.handle(record)
