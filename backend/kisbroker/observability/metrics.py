"""
Prometheus metrics collection for kisbroker.

Provides:
- REST request metrics (count by operation/outcome, retries)
- Authentication metrics (token refreshes)
- Quota metrics (rate limiter wait time)
- Realtime feed metrics (state, reconnects, ticks)
- Order lifecycle metrics (transitions by status)
"""

from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, REGISTRY, CONTENT_TYPE_LATEST,
)


# ============================================================================
# Metrics Definitions
# ============================================================================

# REST Metrics
broker_requests_total = Counter(
    'kisbroker_broker_requests_total',
    'Total broker REST operations',
    ['operation', 'outcome']
)

broker_retries_total = Counter(
    'kisbroker_broker_retries_total',
    'Total broker REST retries',
    ['operation', 'reason']
)

token_refreshes_total = Counter(
    'kisbroker_token_refreshes_total',
    'Access token refresh attempts',
    ['outcome']
)

rate_limiter_wait_seconds = Histogram(
    'kisbroker_rate_limiter_wait_seconds',
    'Time spent waiting for REST quota admission',
    buckets=(0.001, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

# Feed Metrics
FEED_STATE_CODES = {
    "DISCONNECTED": 0,
    "CONNECTING": 1,
    "CONNECTED": 2,
    "RECONNECTING": 3,
    "FAILED": 4,
}

feed_state = Gauge(
    'kisbroker_feed_state',
    'Realtime feed connection state (0=disconnected, 1=connecting, 2=connected, 3=reconnecting, 4=failed)'
)

feed_reconnects_total = Counter(
    'kisbroker_feed_reconnects_total',
    'Realtime feed reconnect attempts'
)

feed_ticks_total = Counter(
    'kisbroker_feed_ticks_total',
    'Realtime ticks delivered to channels'
)

feed_ticks_dropped_total = Counter(
    'kisbroker_feed_ticks_dropped_total',
    'Realtime events discarded',
    ['reason']
)

# Order Metrics
order_transitions_total = Counter(
    'kisbroker_order_transitions_total',
    'Order status transitions applied',
    ['status']
)

order_validation_failures_total = Counter(
    'kisbroker_order_validation_failures_total',
    'Orders refused before submission',
    ['kind']
)


def set_feed_state(state: str) -> None:
    """Publish the feed state as its numeric code."""
    feed_state.set(FEED_STATE_CODES.get(state, -1))


def render_metrics() -> tuple[bytes, str]:
    """
    Render metrics in Prometheus exposition format.

    Returns:
        (payload, content_type)
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
