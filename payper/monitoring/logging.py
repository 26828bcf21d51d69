"""
Structured logging for payper.

Every log line is a JSON object. Request, submission and transaction
identifiers travel in structlog context variables so that a payment can be
followed from the HTTP request through the ledger and the processor calls.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payper.config import get_settings

# Loggers of libraries that are chatty at INFO.
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "stripe": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
}


def add_service_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp each event with the service name and environment."""
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("env", settings.app_env)
    return event_dict


def _processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_fields,
        structlog.processors.JSONRenderer(),
    ]


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging(level: Optional[str] = None) -> None:
    """
    Route structlog and stdlib logging to one JSON stream on stdout.

    Args:
        level: Root level (defaults to the LOG_LEVEL setting)
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()

    structlog.configure(
        processors=_processors(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(_json_handler())

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=level, app_env=settings.app_env
    )


@contextmanager
def log_context(**ids: Optional[str]) -> Iterator[None]:
    """
    Bind payment identifiers to every log line emitted inside the block.

    Identifiers that are None are skipped; the previous bindings are restored
    on exit, so nested blocks add to the outer context.

    Example:
        with log_context(submission_id=sid, transaction_id=tx.id):
            logger.info("merchant_payment_completed")
    """
    bound = {key: value for key, value in ids.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield
