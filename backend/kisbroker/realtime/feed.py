"""
Realtime execution feed over the KIS WebSocket.

One connection serves every subscriber. Subscriptions are grouped into
named channels, each with its own bounded buffer, so a slow consumer only
loses its own events. The read loop never awaits consumers: when a
channel's buffer is full the oldest event is discarded and counted.

Connection states:

    DISCONNECTED -> CONNECTING -> CONNECTED <-> RECONNECTING -> FAILED

FAILED is reached when the consecutive reconnect budget is spent. It is
left only through reset().
"""

import asyncio
import enum
import logging
import time
from collections import deque
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple, Union
from zoneinfo import ZoneInfo

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from kisbroker.broker.auth import KisAuthApi
from kisbroker.config import Settings
from kisbroker.core.exceptions import BrokerError
from kisbroker.models import TickEvent
from kisbroker.observability.metrics import (
    feed_reconnects_total,
    feed_ticks_dropped_total,
    feed_ticks_total,
    set_feed_state,
)
from kisbroker.realtime.protocol import (
    build_subscription_message,
    is_data_frame,
    parse_control,
    parse_ticks,
)

logger = logging.getLogger(__name__)


class FeedState(str, enum.Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    FAILED = "FAILED"


class FeedStatusEvent(BaseModel):
    """Connection status notification delivered in-band to channels."""
    model_config = ConfigDict(frozen=True)

    state: FeedState
    reason: Optional[str] = None
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


FeedEvent = Union[TickEvent, FeedStatusEvent]
TickListener = Callable[[TickEvent], None]


class FeedChannel:
    """
    Bounded, drop-oldest event buffer for one consumer group.

    Iterate with ``async for event in channel``; iteration ends after
    close().
    """

    def __init__(self, name: str, maxsize: int = 1000):
        self.name = name
        self.maxsize = maxsize
        self.instruments: Set[str] = set()
        self.dropped = 0
        self._buffer: Deque[FeedEvent] = deque()
        self._ready = asyncio.Event()
        self._closed = False

    def __len__(self) -> int:
        return len(self._buffer)

    def put(self, event: FeedEvent) -> bool:
        """Append an event. Returns True when an older event was discarded to make room."""
        overflowed = False
        if len(self._buffer) >= self.maxsize:
            self._buffer.popleft()
            self.dropped += 1
            overflowed = True
        self._buffer.append(event)
        self._ready.set()
        return overflowed

    def get_nowait(self) -> Optional[FeedEvent]:
        return self._buffer.popleft() if self._buffer else None

    def drain(self) -> List[FeedEvent]:
        """Remove and return everything buffered."""
        events = list(self._buffer)
        self._buffer.clear()
        return events

    async def get(self) -> FeedEvent:
        while not self._buffer:
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> FeedEvent:
        return await self.get()


class RealtimeFeedClient:
    """
    Streams realtime executions for subscribed instruments.

    Usage:
        feed = RealtimeFeedClient(settings, auth_api)
        await feed.subscribe("005930", channel="momentum")
        await feed.start()
        async for event in feed.events("momentum"):
            ...
    """

    def __init__(
        self,
        settings: Settings,
        auth_api: KisAuthApi,
        tick_listeners: Optional[Iterable[TickListener]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self._auth = auth_api
        self._url = settings.realtime_url
        self._zone = ZoneInfo(settings.market_timezone)
        self._connect_timeout = settings.ws_connect_timeout_seconds
        self._reconnect_delay = settings.ws_reconnect_delay_seconds
        self._max_attempts = settings.ws_max_reconnect_attempts
        self._stable_after = settings.ws_stable_seconds
        self._buffer_size = settings.feed_buffer_size
        self._clock = clock
        self._sleep = sleep

        self._state = FeedState.DISCONNECTED
        self._state_changed = asyncio.Event()
        self._channels: Dict[str, FeedChannel] = {}
        self._tick_listeners: List[TickListener] = list(tick_listeners or ())
        self._approval_key: Optional[SecretStr] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        self._wire: Set[str] = set()
        self._last_sequence: Dict[str, Tuple[date, int]] = {}

        self._reconnect_attempts = 0
        self._connected_at: Optional[float] = None
        self._delivered_since_connect = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def subscribed_instruments(self) -> Set[str]:
        """Instruments at least one channel wants."""
        wanted: Set[str] = set()
        for channel in self._channels.values():
            wanted |= channel.instruments
        return wanted

    def _set_state(self, state: FeedState, reason: Optional[str] = None) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        set_feed_state(state.value)
        logger.info(f"Feed {previous.value} -> {state.value}" + (f" ({reason})" if reason else ""))

        if state == FeedState.FAILED:
            event = FeedStatusEvent(state=state, reason=reason)
            for channel in self._channels.values():
                channel.put(event)

        changed, self._state_changed = self._state_changed, asyncio.Event()
        changed.set()

    async def wait_for_state(self, *states: FeedState) -> FeedState:
        """Block until the feed is in one of `states`."""
        while self._state not in states:
            await self._state_changed.wait()
        return self._state

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def channel(self, name: str = "default") -> FeedChannel:
        """Get or create a channel."""
        channel = self._channels.get(name)
        if channel is None:
            channel = FeedChannel(name, self._buffer_size)
            self._channels[name] = channel
        return channel

    def events(self, channel: str = "default") -> FeedChannel:
        """Async iterator of TickEvent and FeedStatusEvent for a channel."""
        return self.channel(channel)

    def add_tick_listener(self, listener: TickListener) -> None:
        """Register a synchronous callback invoked for every delivered tick."""
        self._tick_listeners.append(listener)

    async def subscribe(self, instrument: str, channel: str = "default") -> None:
        """Deliver `instrument` ticks to `channel`. Subscribing twice is a no-op."""
        target = self.channel(channel)
        if instrument in target.instruments:
            return
        target.instruments.add(instrument)
        logger.info(f"Channel '{channel}' subscribed to {instrument}", extra={"instrument": instrument})
        await self._apply_live(instrument, register=True)

    async def unsubscribe(self, instrument: str, channel: str = "default") -> None:
        """Stop delivering `instrument` to `channel`; released on the wire once no channel wants it."""
        target = self._channels.get(channel)
        if target is None or instrument not in target.instruments:
            return
        target.instruments.discard(instrument)
        logger.info(f"Channel '{channel}' unsubscribed from {instrument}", extra={"instrument": instrument})
        if instrument not in self.subscribed_instruments:
            await self._apply_live(instrument, register=False)

    async def _apply_live(self, instrument: str, register: bool) -> None:
        ws = self._ws
        if ws is None or ws.closed or self._state != FeedState.CONNECTED:
            return  # applied on the next (re)connect
        try:
            await self._apply(ws, instrument, register)
        except (aiohttp.ClientError, ConnectionError) as exc:
            logger.warning(
                f"Could not update subscription for {instrument}: {exc!r}",
                extra={"instrument": instrument},
            )

    async def _apply(self, ws, instrument: str, register: bool) -> None:
        async with self._send_lock:
            if register == (instrument in self._wire):
                return
            message = build_subscription_message(
                self._approval_key or SecretStr(""),
                instrument,
                register=register,
                customer_type=self.settings.kis_customer_type,
            )
            await ws.send_str(message)
            if register:
                self._wire.add(instrument)
            else:
                self._wire.discard(instrument)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the connection task. No-op while it is already running."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="kis-realtime-feed")
        self._task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Feed task crashed: {exc!r}", exc_info=exc)
            self._set_state(FeedState.FAILED, f"internal error: {exc!r}")

    async def stop(self) -> None:
        """Close the connection and stop reconnecting."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._set_state(FeedState.DISCONNECTED)

    async def reset(self) -> None:
        """Leave FAILED (or any state): clear the reconnect budget and approval key, then connect again."""
        await self.stop()
        self._reconnect_attempts = 0
        self._last_sequence.clear()
        self._approval_key = None
        logger.info("Feed reset")
        await self.start()

    async def close(self) -> None:
        """Stop the feed and end iteration on every channel."""
        await self.stop()
        for channel in self._channels.values():
            channel.close()

    async def _ensure_approval_key(self) -> SecretStr:
        if self._approval_key is None:
            self._approval_key = await self._auth.issue_approval_key()
        return self._approval_key

    async def _open_connection(self):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await asyncio.wait_for(self._session.ws_connect(self._url), timeout=self._connect_timeout)

    async def _run(self) -> None:
        self._set_state(FeedState.CONNECTING)
        while True:
            reason = await self._serve_connection()
            if not await self._prepare_reconnect(reason):
                return

    async def _serve_connection(self) -> str:
        """Connect once and pump messages until the connection ends. Returns why it ended."""
        try:
            await self._ensure_approval_key()
            ws = await self._open_connection()
        except (aiohttp.ClientError, asyncio.TimeoutError, BrokerError) as exc:
            return f"connect failed: {exc!r}"

        self._ws = ws
        self._wire.clear()
        self._connected_at = self._clock()
        self._delivered_since_connect = False
        self._set_state(FeedState.CONNECTED)
        try:
            for instrument in sorted(self.subscribed_instruments):
                await self._apply(ws, instrument, register=True)
            return await self._read_loop(ws)
        except (aiohttp.ClientError, ConnectionError) as exc:
            return f"connection error: {exc!r}"
        finally:
            self._ws = None
            self._wire.clear()
            if not ws.closed:
                await ws.close()

    async def _prepare_reconnect(self, reason: str) -> bool:
        """Spend one unit of the reconnect budget. False once it is exhausted."""
        if self._connected_at is not None:
            uptime = self._clock() - self._connected_at
            if self._delivered_since_connect or uptime >= self._stable_after:
                self._reconnect_attempts = 0
        self._connected_at = None

        if self._reconnect_attempts >= self._max_attempts:
            logger.error(f"Feed giving up after {self._reconnect_attempts} reconnect attempts: {reason}")
            self._set_state(FeedState.FAILED, reason)
            return False

        self._reconnect_attempts += 1
        feed_reconnects_total.inc()
        logger.warning(
            f"Feed connection lost ({reason}); reconnect attempt "
            f"{self._reconnect_attempts}/{self._max_attempts} in {self._reconnect_delay}s"
        )
        self._set_state(FeedState.RECONNECTING, reason)
        await self._sleep(self._reconnect_delay)
        return True

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _read_loop(self, ws) -> str:
        while True:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                ended = await self._handle_text(ws, msg.data)
            elif msg.type == aiohttp.WSMsgType.BINARY:
                ended = await self._handle_text(ws, msg.data.decode("utf-8", errors="replace"))
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                return "closed by server"
            elif msg.type == aiohttp.WSMsgType.ERROR:
                return f"socket error: {ws.exception()!r}"
            else:
                continue
            if ended:
                return ended

    async def _handle_text(self, ws, raw: str) -> Optional[str]:
        """Handle one frame. Returns a reason when the connection has to end."""
        if is_data_frame(raw):
            try:
                ticks = parse_ticks(raw, self._trade_date(), self._zone)
            except ValueError as exc:
                feed_ticks_dropped_total.labels("malformed").inc()
                logger.warning(f"Discarding realtime frame: {exc}")
                return None
            for tick in ticks:
                self._dispatch(tick)
            return None

        try:
            control = parse_control(raw)
        except ValueError as exc:
            logger.warning(f"Discarding control frame: {exc}")
            return None

        if control.is_pingpong:
            await ws.send_str(raw)
        elif control.is_error:
            logger.error(
                f"Subscription request for {control.tr_key or control.tr_id} refused: "
                f"{control.msg_cd} {control.msg1}",
                extra={"tr_id": control.tr_id},
            )
            if control.is_approval_error:
                self._approval_key = None
                return f"approval key refused: {control.msg_cd} {control.msg1}"
        else:
            logger.debug(f"Control frame {control.tr_id}/{control.tr_key}: {control.msg1}")
        return None

    def _trade_date(self) -> date:
        return datetime.now(self._zone).date()

    def _dispatch(self, tick: TickEvent) -> None:
        if tick.sequence is not None:
            last = self._last_sequence.get(tick.instrument)
            if last is not None and last[0] == tick.trade_date and tick.sequence <= last[1]:
                feed_ticks_dropped_total.labels("duplicate").inc()
                logger.debug(f"Dropping stale tick for {tick.instrument} (sequence {tick.sequence})")
                return
            self._last_sequence[tick.instrument] = (tick.trade_date, tick.sequence)

        self._delivered_since_connect = True
        feed_ticks_total.inc()
        for listener in self._tick_listeners:
            try:
                listener(tick)
            except Exception:
                logger.exception(f"Tick listener failed for {tick.instrument}")

        for channel in self._channels.values():
            if tick.instrument not in channel.instruments:
                continue
            if channel.put(tick):
                feed_ticks_dropped_total.labels("overflow").inc()
                if channel.dropped == 1 or channel.dropped % 100 == 0:
                    logger.warning(
                        f"Channel '{channel.name}' buffer full; {channel.dropped} events dropped so far",
                        extra={"instrument": tick.instrument},
                    )
