"""
Logging configuration.

Console logging with an optional JSON formatter. Billing flows bind the
identifiers they operate on (checkout session, Stripe event, subscription) to a
context variable so every log line emitted while handling them carries the
same correlation keys.
"""

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from coachpay.config.config import Config

logger = logging.getLogger(__name__)

_billing_context: ContextVar[dict[str, Any]] = ContextVar("billing_context", default={})  # noqa: B039


@contextmanager
def billing_log_context(**fields: Any) -> Iterator[None]:
    """Bind correlation fields (session_id, event_id, ...) for the enclosed block."""
    merged = {**_billing_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _billing_context.set(merged)
    try:
        yield
    finally:
        _billing_context.reset(token)


class BillingContextFilter(logging.Filter):
    """
    Logging filter that adds the bound billing context to log records.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = _billing_context.get()
        record.billing_context = dict(context)
        record.context_suffix = (
            " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]" if context else ""
        )
        return True


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "billing_context", None)
        if context:
            log_data.update(context)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging() -> None:
    """
    Configure application logging.

    Sets up a single stdout handler on the root logger, plain text in
    development and JSON elsewhere unless LOG_FORMAT overrides it.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, str(Config.LOG_LEVEL).upper(), logging.INFO))

    # Clear existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.addFilter(BillingContextFilter())

    use_json = Config.LOG_FORMAT == "json" or (
        Config.LOG_FORMAT != "plain" and not Config.IS_DEVELOPMENT
    )
    if use_json:
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s%(context_suffix)s")
        )

    root_logger.addHandler(console_handler)

    # Set log levels for noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logger.info("Console logging configured (format=%s)", "json" if use_json else "plain")
