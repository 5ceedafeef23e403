"""Observability module for kisbroker - logging and metrics."""

from kisbroker.observability.logging_config import setup_logging, get_logger
from kisbroker.observability.metrics import (
    render_metrics,
    broker_requests_total,
    broker_retries_total,
    token_refreshes_total,
    feed_reconnects_total,
    feed_ticks_dropped_total,
    order_transitions_total,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "render_metrics",
    "broker_requests_total",
    "broker_retries_total",
    "token_refreshes_total",
    "feed_reconnects_total",
    "feed_ticks_dropped_total",
    "order_transitions_total",
]
