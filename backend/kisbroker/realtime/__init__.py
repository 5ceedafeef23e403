"""Realtime market data over the KIS WebSocket."""

from kisbroker.realtime.feed import (
    FeedChannel,
    FeedEvent,
    FeedState,
    FeedStatusEvent,
    RealtimeFeedClient,
)

__all__ = [
    "FeedChannel",
    "FeedEvent",
    "FeedState",
    "FeedStatusEvent",
    "RealtimeFeedClient",
]
