"""
Order Lifecycle Coordinator - the only path from a strategy's intent to the broker.

This module implements:
1. Pre-submission validation (quantity, market session, funds)
2. Order state machine enforcement
3. Reconciliation of ambiguous submissions by status query
4. Local expiry of orders that outlive the configured duration
5. Notification of every transition to registered listeners

Every mutation of an order happens under that order's lock. Callers only
ever receive copies.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from kisbroker.broker.rest_client import BrokerRestClient
from kisbroker.config import Settings
from kisbroker.core.exceptions import (
    AmbiguousOutcomeError,
    BrokerError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from kisbroker.core.token_manager import utc_now
from kisbroker.models import (
    BrokerOrderStatus,
    Order,
    OrderRequest,
    OrderStatus,
    StatusChange,
    can_transition,
)
from kisbroker.observability.metrics import order_transitions_total
from kisbroker.risk.validator import OrderValidator

logger = logging.getLogger(__name__)

OrderListener = Callable[[Order, Optional[OrderStatus]], Awaitable[None]]


class OrderLifecycleCoordinator:
    """
    Owns every order from creation to a terminal state.

    Usage:
        coordinator = OrderLifecycleCoordinator(client, validator, settings)
        coordinator.add_listener(audit_sink)
        order = await coordinator.place_order(OrderRequest(...))
    """

    def __init__(
        self,
        client: BrokerRestClient,
        validator: OrderValidator,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            client: Broker REST client
            validator: Pre-submission rule checks
            settings: Source of the maximum order duration
            clock: Source of the current UTC time
        """
        self.client = client
        self.validator = validator
        self.max_duration = timedelta(minutes=settings.max_order_duration_minutes)
        self._clock = clock
        self._orders: Dict[str, Order] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._listeners: List[OrderListener] = []

    # ------------------------------------------------------------------
    # Queries and listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: OrderListener) -> None:
        """Register `async listener(order, previous_status)`, called after every transition."""
        self._listeners.append(listener)

    def get_order(self, order_id: str) -> Order:
        """
        Current snapshot of an order.

        Raises:
            NotFoundError: Unknown order id
        """
        return self._require(order_id).model_copy(deep=True)

    def list_orders(self, active_only: bool = False) -> List[Order]:
        return [
            order.model_copy(deep=True)
            for order in self._orders.values()
            if not (active_only and order.status.is_terminal)
        ]

    def prune_terminal(self) -> List[Order]:
        """Forget orders in a terminal state and return what was removed."""
        removed = []
        for order_id, order in list(self._orders.items()):
            lock = self._locks.get(order_id)
            if order.status.is_terminal and not (lock and lock.locked()):
                removed.append(order)
                del self._orders[order_id]
                self._locks.pop(order_id, None)
        return removed

    def _require(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFoundError.resource("Order", "id", order_id)
        return order

    def _lock_for(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    async def place_order(self, request: OrderRequest, timeout: Optional[float] = None) -> Order:
        """
        Validate, create and submit an order.

        A request that fails validation never becomes an Order and never
        reaches the broker.

        Args:
            request: What to trade
            timeout: Caller deadline for the submission call

        Returns:
            Snapshot of the order: ACCEPTED, REJECTED by the broker, or the
            state established by reconciliation

        Raises:
            BusinessRuleError: Pre-submission check failed
            ValidationError: Request could not be sized for validation
            ExternalApiError: The order never reached the broker (order REJECTED)
            AuthenticationError: No usable access token (order REJECTED)
            AmbiguousOutcomeError: Outcome unknown and the status query failed;
                the order stays SUBMITTED and is flagged for reconciliation
        """
        now = self._clock()
        await self.validator.validate(request, now)

        order = Order.from_request(request, now)
        self._orders[order.id] = order
        logger.info(
            f"Order {order.id} created: {order.direction.value} {order.instrument} x{order.quantity}",
            extra={"order_id": order.id, "instrument": order.instrument},
        )
        await self._notify(order, None)

        async with self._lock_for(order.id):
            order.submitted_at = self._clock()
            await self._transition(order, OrderStatus.SUBMITTED)

            try:
                result = await self.client.submit_order(request, timeout=timeout)
            except ValidationError as exc:
                await self._transition(order, OrderStatus.REJECTED, reason=f"{exc.code}: {exc.message}")
                return order.model_copy(deep=True)
            except BrokerError as exc:
                await self._transition(order, OrderStatus.REJECTED, reason=f"not delivered: {exc.message}")
                exc.details.setdefault("order_id", order.id)
                raise

            if result.is_ambiguous:
                order.needs_reconciliation = True
                logger.warning(
                    f"Order {order.id} submission outcome unknown ({result.message}); reconciling",
                    extra={"order_id": order.id, "instrument": order.instrument},
                )
                await self._reconcile_locked(order)
            else:
                order.broker_order_id = result.broker_order_id
                order.broker_branch_code = result.branch_code
                await self._transition(order, OrderStatus.ACCEPTED)

            return order.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, order_id: str) -> Order:
        """
        Resolve an order whose submission outcome is unknown.

        Raises:
            AmbiguousOutcomeError: The status query failed again
        """
        order = self._require(order_id)
        async with self._lock_for(order_id):
            if order.needs_reconciliation:
                await self._reconcile_locked(order)
            return order.model_copy(deep=True)

    async def reconcile_all(self) -> List[Order]:
        """Attempt reconciliation of every flagged order; failures stay flagged."""
        resolved = []
        for order_id in [o.id for o in self._orders.values() if o.needs_reconciliation]:
            try:
                resolved.append(await self.reconcile(order_id))
            except AmbiguousOutcomeError as exc:
                logger.warning(f"Order {order_id} still unresolved: {exc.message}", extra={"order_id": order_id})
        return resolved

    async def _reconcile_locked(self, order: Order) -> None:
        try:
            if order.broker_order_id:
                status = await self.client.get_order_status(order.broker_order_id)
            else:
                known = {o.broker_order_id for o in self._orders.values() if o.broker_order_id}
                status = await self.client.find_order(
                    self._request_of(order),
                    since=order.submitted_at or order.created_at,
                    exclude=known,
                )
        except NotFoundError:
            status = None
        except BrokerError as exc:
            logger.error(
                f"Order {order.id} status query failed: {exc.message}",
                extra={"order_id": order.id},
            )
            raise AmbiguousOutcomeError(
                f"Order {order.id} outcome unknown; status query failed: {exc.message}",
                details={"order_id": order.id},
            ) from exc

        order.needs_reconciliation = False
        if status is None:
            await self._transition(order, OrderStatus.REJECTED, reason="broker has no record of the order")
            return

        order.broker_order_id = status.broker_order_id
        order.broker_branch_code = status.branch_code or order.broker_branch_code
        await self._apply_broker_status(order, status)

    @staticmethod
    def _request_of(order: Order) -> OrderRequest:
        return OrderRequest(
            instrument=order.instrument,
            direction=order.direction,
            order_type=order.order_type,
            quantity=order.quantity,
            price=order.price,
            strategy_id=order.strategy_id,
        )

    async def refresh_order(self, order_id: str) -> Order:
        """Pull the broker's view of a live order and apply it."""
        order = self._require(order_id)
        async with self._lock_for(order_id):
            if order.needs_reconciliation:
                await self._reconcile_locked(order)
            elif order.broker_order_id and not order.status.is_terminal:
                status = await self.client.get_order_status(order.broker_order_id)
                await self._apply_broker_status(order, status)
            return order.model_copy(deep=True)

    async def _apply_broker_status(self, order: Order, status: BrokerOrderStatus) -> None:
        if order.status.is_terminal:
            return
        if status.filled_quantity < order.filled_quantity:
            logger.warning(
                f"Ignoring stale broker status for order {order.id}: "
                f"{status.filled_quantity} filled < {order.filled_quantity} known",
                extra={"order_id": order.id},
            )
            return

        target = status.status
        fills_changed = status.filled_quantity != order.filled_quantity
        if status.filled_quantity > order.quantity:
            logger.error(
                f"Broker reports {status.filled_quantity} filled for order {order.id} of {order.quantity}",
                extra={"order_id": order.id},
            )
        order.filled_quantity = min(status.filled_quantity, order.quantity)
        if status.average_fill_price is not None:
            order.average_fill_price = status.average_fill_price

        if target == order.status and not (target == OrderStatus.PARTIALLY_FILLED and fills_changed):
            return
        path = [target]
        if order.status == OrderStatus.SUBMITTED and target in (OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED):
            path = [OrderStatus.ACCEPTED, target]
        if not can_transition(order.status, path[0]):
            logger.warning(
                f"Broker reports {target.value} for order {order.id} in {order.status.value}; ignored",
                extra={"order_id": order.id},
            )
            return
        for step in path:
            await self._transition(order, step)

    # ------------------------------------------------------------------
    # Cancellation and expiry
    # ------------------------------------------------------------------

    async def cancel_order(self, order_id: str, timeout: Optional[float] = None) -> Order:
        """
        Cancel a live order at the broker.

        Raises:
            InvalidTransitionError: The order is terminal or has no broker order id yet
            AmbiguousOutcomeError: Cancel outcome unknown and the status query failed
        """
        order = self._require(order_id)
        async with self._lock_for(order_id):
            if not order.status.is_cancellable:
                raise InvalidTransitionError(
                    f"Order {order_id} is {order.status.value} and cannot be cancelled",
                    details={"order_id": order_id, "status": order.status.value},
                )
            if not order.broker_order_id:
                raise InvalidTransitionError(
                    f"Order {order_id} has no broker order id yet; reconcile it first",
                    details={"order_id": order_id, "status": order.status.value},
                )

            result = await self.client.cancel_order(
                order.broker_order_id, order.broker_branch_code, timeout=timeout
            )
            if result.is_ambiguous:
                logger.warning(f"Cancel of order {order_id} outcome unknown; querying status", extra={"order_id": order_id})
                try:
                    status = await self.client.get_order_status(order.broker_order_id)
                except BrokerError as exc:
                    raise AmbiguousOutcomeError(
                        f"Cancel of order {order_id} outcome unknown: {exc.message}",
                        details={"order_id": order_id},
                    ) from exc
                await self._apply_broker_status(order, status)
            else:
                await self._transition(order, OrderStatus.CANCELLED, reason="cancelled on request")
            return order.model_copy(deep=True)

    async def expire_stale_orders(self, now: Optional[datetime] = None) -> List[Order]:
        """
        Cancel and expire live orders older than the maximum order duration.

        Orders still awaiting reconciliation are skipped. Failures are
        logged per order and do not stop the sweep.

        Returns:
            Snapshots of the orders that were expired
        """
        now = now or self._clock()
        expired = []
        for order in list(self._orders.values()):
            if order.status.is_terminal or order.status == OrderStatus.CREATED:
                continue
            if now - order.created_at < self.max_duration:
                continue
            async with self._lock_for(order.id):
                if order.status.is_terminal or not order.broker_order_id:
                    continue
                try:
                    result = await self.client.cancel_order(order.broker_order_id, order.broker_branch_code)
                except BrokerError as exc:
                    logger.error(
                        f"Could not cancel stale order {order.id}: {exc.code} - {exc.message}",
                        extra={"order_id": order.id},
                    )
                    continue
                if result.is_ambiguous:
                    logger.warning(f"Cancel of stale order {order.id} outcome unknown", extra={"order_id": order.id})
                    continue
                minutes = int(self.max_duration.total_seconds() // 60)
                await self._transition(order, OrderStatus.EXPIRED, reason=f"open longer than {minutes} minutes")
                expired.append(order.model_copy(deep=True))
        return expired

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _transition(self, order: Order, target: OrderStatus, reason: Optional[str] = None) -> None:
        previous = order.status
        if not can_transition(previous, target):
            raise InvalidTransitionError(
                f"Order {order.id} cannot move from {previous.value} to {target.value}",
                details={"order_id": order.id, "from": previous.value, "to": target.value},
            )
        now = self._clock()
        order.status = target
        order.last_updated_at = now
        order.history.append(StatusChange(status=target, at=now, reason=reason))
        if reason and target in (OrderStatus.REJECTED, OrderStatus.EXPIRED):
            order.error_message = reason

        order_transitions_total.labels(target.value).inc()
        logger.info(
            f"Order {order.id}: {previous.value} -> {target.value}" + (f" ({reason})" if reason else ""),
            extra={"order_id": order.id, "instrument": order.instrument},
        )
        await self._notify(order, previous)

    async def _notify(self, order: Order, previous: Optional[OrderStatus]) -> None:
        snapshot = order.model_copy(deep=True)
        for listener in self._listeners:
            try:
                await listener(snapshot, previous)
            except Exception:
                # A failing listener never blocks a transition.
                logger.exception(f"Order listener failed for {order.id}", extra={"order_id": order.id})
