"""Observability module for structured logging.

This module provides structlog-based logging with correlation IDs that tie
log events to a single authentication attempt.
"""

from credbroker.observability.logging import (
    clear_correlation_id,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "set_correlation_id",
    "get_correlation_id",
    "clear_correlation_id",
]
