"""Utility modules for the proxy fulfillment service."""

from .logging import (
    configure_logging,
    create_contextual_logger,
    get_logger,
    log_exception,
    set_correlation_id,
    get_correlation_id,
    clear_correlation_id,
)
from .timeutils import Clock, from_epoch, from_iso, to_epoch, to_iso, utc_now

__all__ = [
    "configure_logging",
    "create_contextual_logger",
    "get_logger",
    "log_exception",
    "set_correlation_id",
    "get_correlation_id",
    "clear_correlation_id",
    "Clock",
    "from_epoch",
    "from_iso",
    "to_epoch",
    "to_iso",
    "utc_now",
]
