"""Order lifecycle management."""

from kisbroker.execution.coordinator import OrderLifecycleCoordinator, OrderListener

__all__ = ["OrderLifecycleCoordinator", "OrderListener"]
